"""Watch controller: long-lived subscription to schedulable pods."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from podsched.cluster import ClusterGateway
from podsched.config import SchedulerConfig
from podsched.errors import ClusterAPIError, CursorExpired
from podsched.orchestrator import AssignmentOrchestrator
from podsched.state import (
	EVENT_ADDED,
	EVENT_DELETED,
	EVENT_MODIFIED,
	PodRef,
	WatchCursor,
	WatchEvent,
	WatchState,
)

logger = logging.getLogger(__name__)


class WatchController:
	"""
	Drives the pod watch through Connecting -> Streaming -> (Interrupted |
	Invalidated) -> Connecting until stopped.

	- Connecting: opens the watch from the cursor (None on first start)
	- Streaming: ADDED + schedulable -> dispatch; DELETED, or MODIFIED to
	  unschedulable, drops the pod from the orchestrator; every event
	  advances the cursor
	- Interrupted: stream ended or failed; reconnect from the cursor, backing
	  off exponentially after errors
	- Invalidated: cursor expired; relist, reset the cursor to the list's
	  resource version, dispatch schedulable pods, then resume
	"""

	def __init__(
		self,
		gateway: ClusterGateway,
		orchestrator: AssignmentOrchestrator,
		config: SchedulerConfig,
		cursor: Optional[WatchCursor] = None,
	) -> None:
		self.gateway = gateway
		self.orchestrator = orchestrator
		self.config = config
		self.cursor = cursor or WatchCursor()

		self.state = WatchState.STOPPED
		self._stop_event = threading.Event()
		self._thread: Optional[threading.Thread] = None
		self._consecutive_errors = 0

		# Called as on_transition(old_state, new_state, reason)
		self.on_transition: Optional[Callable[[WatchState, WatchState, str], None]] = None

	# -------- lifecycle --------

	def start(self) -> None:
		"""Run the watch loop on a background thread."""
		if self._thread and self._thread.is_alive():
			logger.warning("WatchController already running")
			return
		self._stop_event.clear()
		self._thread = threading.Thread(target=self.run, name="podsched-watch", daemon=True)
		self._thread.start()

	def request_stop(self) -> None:
		"""Signal the loop to exit between iterations without waiting."""
		self._stop_event.set()
		self.gateway.stop_watch()

	def join(self, timeout: Optional[float] = None) -> bool:
		"""
		Wait for the watch thread to exit.

		An idle watch only notices the stop at its next event or server-side
		timeout; the thread is a daemon, so leaving it behind does not block exit.

		Returns:
			True if the thread has exited (or never started)
		"""
		if self._thread and self._thread is not threading.current_thread():
			self._thread.join(timeout=timeout)
			if self._thread.is_alive():
				logger.warning("Watch thread did not exit in time")
				return False
		return True

	def stop(self, timeout: Optional[float] = None) -> bool:
		"""Signal the loop to exit and wait for it."""
		self.request_stop()
		return self.join(timeout)

	def run(self) -> None:
		"""Blocking watch loop; returns once stop() has been called."""
		logger.info(
			f"Watching pods with '{self.config.pod_field_selector}' "
			f"for scheduler {self.config.scheduler_name}"
		)
		while not self._stop_event.is_set():
			# Reconnects after a clean server-side timeout are routine
			quiet = self.state == WatchState.INTERRUPTED and not self._consecutive_errors
			self._transition(
				WatchState.CONNECTING,
				f"from cursor {self.cursor.value or 'now'}",
				level=logging.DEBUG if quiet else logging.INFO,
			)
			try:
				self._stream_once()
			except CursorExpired as e:
				self._transition(WatchState.INVALIDATED, str(e), level=logging.WARNING)
				self._resync()
				continue
			except ClusterAPIError as e:
				self._consecutive_errors += 1
				self._transition(WatchState.INTERRUPTED, str(e), level=logging.WARNING)
				self._backoff()
				continue
			except Exception as e:
				# Anything unexpected is still a broken stream, never fatal
				logger.exception("Unexpected error in pod watch")
				self._consecutive_errors += 1
				self._transition(WatchState.INTERRUPTED, f"{type(e).__name__}: {e}", level=logging.WARNING)
				self._backoff()
				continue

			if not self._stop_event.is_set():
				self._transition(WatchState.INTERRUPTED, "stream closed by server", level=logging.DEBUG)

		self._transition(WatchState.STOPPED, "shutdown requested")

	# -------- states --------

	def _stream_once(self) -> None:
		stream = self.gateway.watch_pods(
			self.config.pod_field_selector,
			resource_version=self.cursor.value,
			timeout_seconds=self.config.watch_timeout_seconds,
		)
		streaming = False
		try:
			for event in stream:
				if not streaming:
					self._transition(WatchState.STREAMING, "first event received")
					streaming = True
				self._consecutive_errors = 0
				self.handle_event(event)
				if self._stop_event.is_set():
					break
		finally:
			close = getattr(stream, "close", None)
			if close is not None:
				close()

	def handle_event(self, event: WatchEvent) -> None:
		if event.type == EVENT_ADDED and event.pod is not None:
			self._maybe_dispatch(event.pod, source="watch")
		elif event.type == EVENT_DELETED and event.pod is not None:
			self.orchestrator.forget(event.pod.key, "pod deleted")
		elif (
			event.type == EVENT_MODIFIED
			and event.pod is not None
			and not event.pod.is_schedulable(self.config.scheduler_name)
		):
			# Bound elsewhere, being deleted, or handed to another scheduler
			self.orchestrator.forget(event.pod.key, "pod no longer schedulable")
		else:
			logger.debug(
				f"Ignoring {event.type} event"
				+ (f" for {event.pod.key}" if event.pod else "")
			)
		self.cursor.advance(event.resource_version)

	def _resync(self) -> None:
		"""Relist schedulable pods after the cursor expired."""
		while not self._stop_event.is_set():
			try:
				pods, resource_version = self.gateway.list_pods(self.config.pod_field_selector)
			except ClusterAPIError as e:
				self._consecutive_errors += 1
				logger.warning(f"Relist after cursor expiry failed: {e}")
				self._backoff()
				continue

			self.cursor.reset(resource_version)
			dispatched = 0
			for pod in pods:
				if self._maybe_dispatch(pod, source="resync"):
					dispatched += 1
			self._consecutive_errors = 0
			logger.info(
				f"Resynced {len(pods)} pending pod(s), dispatched {dispatched}, "
				f"cursor reset to {resource_version}"
			)
			return

	def _maybe_dispatch(self, pod: PodRef, source: str) -> bool:
		if not pod.is_schedulable(self.config.scheduler_name):
			logger.debug(f"Skipping {pod.key} from {source}: not schedulable by this scheduler")
			return False
		return self.orchestrator.dispatch(pod)

	def _backoff(self) -> None:
		delay = self.config.watch_backoff.delay(self._consecutive_errors)
		logger.info(f"Reconnecting pod watch in {delay:.2f}s")
		self._stop_event.wait(delay)

	def _transition(self, new_state: WatchState, reason: str, level: int = logging.INFO) -> None:
		old_state = self.state
		self.state = new_state
		logger.log(
			level,
			f"Watch state {old_state.value} -> {new_state.value}: {reason}",
			extra={"watch_state": {"from": old_state.value, "to": new_state.value, "reason": reason}},
		)
		if self.on_transition:
			try:
				self.on_transition(old_state, new_state, reason)
			except Exception as e:
				logger.error(f"Error in watch transition callback: {e}")
