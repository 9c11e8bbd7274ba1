"""Assignment orchestrator: candidates -> policy -> binding, per pod."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from podsched.binder import BindingExecutor
from podsched.candidates import NodeCandidateProvider
from podsched.config import SchedulerConfig
from podsched.errors import ClusterAPIError
from podsched.policy.base import SelectionPolicy
from podsched.state import AssignmentOutcome, AssignmentStatus, PodKey, PodRef

logger = logging.getLogger(__name__)


@dataclass
class _Ticket:
    """One pod's progress through the pipeline while it is in flight."""
    pod: PodRef
    dispatched_at: float
    attempts: int = 0
    failures: int = 0
    deferrals: int = 0
    timer: Optional[threading.Timer] = None
    forgotten: bool = False


class AssignmentOrchestrator:
    """
    Runs assignment attempts for dispatched pods.

    - At most one attempt in flight per pod key; repeat dispatches coalesce.
    - Attempts run on a bounded thread pool (admission control on the API).
    - Retryable failures back off exponentially up to max_attempts.
    - "No candidates" defers the pod on a fixed timer.
    - Bound, AlreadyBound and PermanentFailure end the pod's attempt.
    """

    def __init__(
        self,
        provider: NodeCandidateProvider,
        policy: SelectionPolicy,
        binder: BindingExecutor,
        config: SchedulerConfig,
    ) -> None:
        self.provider = provider
        self.policy = policy
        self.binder = binder
        self.config = config

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._inflight: Dict[PodKey, _Ticket] = {}
        self._timers: Dict[PodKey, _Ticket] = {}
        self._futures: Dict[Future, _Ticket] = {}
        self._accepting = True

        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrency,
            thread_name_prefix="podsched-assign",
        )

        self._recent: Deque[AssignmentOutcome] = deque(maxlen=max(1, config.recent_outcomes))
        self._counters: Counter = Counter()

        # Called with every outcome, including deferrals and retries
        self.on_outcome: Optional[Callable[[AssignmentOutcome], None]] = None

    # -------- dispatch --------

    def dispatch(self, pod: PodRef) -> bool:
        """
        Start an assignment for a pod unless one is already in flight.

        Returns:
            True if a new attempt was started, False if coalesced or shutting down
        """
        with self._lock:
            if not self._accepting:
                logger.debug(f"Not accepting {pod.key}: orchestrator is shutting down")
                return False
            if pod.key in self._inflight:
                logger.debug(f"Assignment for {pod.key} already in flight, coalescing")
                return False
            ticket = _Ticket(pod=pod, dispatched_at=time.monotonic())
            self._inflight[pod.key] = ticket

        logger.info(f"Dispatching assignment for pod {pod.key}")
        self._submit(ticket)
        return True

    def forget(self, key: PodKey, reason: str) -> bool:
        """
        Drop a pod that no longer needs a node (deleted, or bound elsewhere).

        A pending retry or deferral is cancelled and the key released at once.
        An attempt already running finishes, but is not retried or deferred.

        Returns:
            True if the pod was in flight
        """
        with self._lock:
            ticket = self._inflight.get(key)
            if ticket is None:
                return False
            ticket.forgotten = True
            if self._timers.get(key) is ticket:
                del self._timers[key]
                if ticket.timer is not None:
                    ticket.timer.cancel()
            self._release_locked(ticket)
        logger.info(f"Dropped assignment for {key}: {reason}")
        return True

    def is_inflight(self, key: PodKey) -> bool:
        with self._lock:
            return key in self._inflight

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def _submit(self, ticket: _Ticket) -> None:
        with self._lock:
            if ticket.forgotten:
                return
            if not self._accepting:
                self._release_locked(ticket)
                logger.warning(f"Abandoning assignment for {ticket.pod.key}: shutting down")
                return
            future = self._executor.submit(self._run_attempt, ticket)
            self._futures[future] = ticket
        future.add_done_callback(self._discard_future)

    def _discard_future(self, future: Future) -> None:
        with self._lock:
            self._futures.pop(future, None)

    # -------- one attempt --------

    def _run_attempt(self, ticket: _Ticket) -> None:
        if ticket.forgotten:
            return
        ticket.attempts += 1
        try:
            outcome = self._attempt(ticket.pod)
        except Exception as e:
            # A broken policy or unexpected client error must not stop other pods
            logger.exception(f"Unexpected error assigning {ticket.pod.key}")
            outcome = AssignmentOutcome(
                pod=ticket.pod.key,
                node_name=None,
                status=AssignmentStatus.PERMANENT_FAILURE,
                detail=f"{type(e).__name__}: {e}",
            )
        self._handle(ticket, outcome)

    def _attempt(self, pod: PodRef) -> AssignmentOutcome:
        try:
            candidates = self.provider.candidates()
        except ClusterAPIError as e:
            status = (
                AssignmentStatus.RETRYABLE_FAILURE if e.retriable
                else AssignmentStatus.PERMANENT_FAILURE
            )
            return AssignmentOutcome(pod=pod.key, node_name=None, status=status, detail=str(e))

        node_name = self.policy.select(candidates, pod)
        if node_name is None:
            return AssignmentOutcome(
                pod=pod.key,
                node_name=None,
                status=AssignmentStatus.NO_CANDIDATES,
                detail=f"no node matches selector '{self.provider.label_selector}'",
            )
        return self.binder.bind(pod, node_name)

    # -------- outcome handling --------

    def _handle(self, ticket: _Ticket, outcome: AssignmentOutcome) -> None:
        outcome.attempts = ticket.attempts
        outcome.latency_ms = (time.monotonic() - ticket.dispatched_at) * 1000.0
        key = ticket.pod.key

        if outcome.status == AssignmentStatus.RETRYABLE_FAILURE:
            ticket.failures += 1
            if ticket.failures >= self.config.max_attempts:
                outcome.abandoned = True
                outcome.detail = f"abandoned after {ticket.failures} attempt(s): {outcome.detail}"
                self._finish(ticket, outcome)
                return
            self._emit(outcome)
            self._schedule(ticket, self.config.retry_backoff.delay(ticket.failures), "retry")
            return

        if outcome.status == AssignmentStatus.NO_CANDIDATES:
            ticket.deferrals += 1
            limit = self.config.max_deferrals
            if limit is not None and ticket.deferrals > limit:
                outcome.abandoned = True
                outcome.detail = f"abandoned after {limit} deferral(s): {outcome.detail}"
                self._finish(ticket, outcome)
                return
            self._emit(outcome)
            self._schedule(ticket, self.config.defer_delay_seconds, "deferral")
            return

        self._finish(ticket, outcome)
        logger.debug(f"Assignment for {key} finished with {outcome.status.value}")

    def _finish(self, ticket: _Ticket, outcome: AssignmentOutcome) -> None:
        self._emit(outcome)
        with self._lock:
            self._release_locked(ticket)

    def _release_locked(self, ticket: _Ticket) -> None:
        # A forgotten ticket's key may already belong to a newer dispatch
        key = ticket.pod.key
        if self._inflight.get(key) is ticket:
            del self._inflight[key]
        self._idle.notify_all()

    def _schedule(self, ticket: _Ticket, delay: float, reason: str) -> None:
        key = ticket.pod.key
        with self._lock:
            if ticket.forgotten:
                logger.debug(f"Not scheduling {reason} for {key}: dropped")
                return
            if not self._accepting:
                self._release_locked(ticket)
                logger.warning(f"Abandoning {reason} for {key}: shutting down")
                return
            timer = threading.Timer(delay, self._fire, args=(ticket,))
            timer.daemon = True
            ticket.timer = timer
            self._timers[key] = ticket
            timer.start()
        logger.info(f"Scheduled {reason} for {key} in {delay:.2f}s")

    def _fire(self, ticket: _Ticket) -> None:
        with self._lock:
            if self._timers.get(ticket.pod.key) is ticket:
                del self._timers[ticket.pod.key]
            ticket.timer = None
        self._submit(ticket)

    def _emit(self, outcome: AssignmentOutcome) -> None:
        with self._lock:
            self._recent.append(outcome)
            self._counters[outcome.status.value] += 1
            if outcome.abandoned:
                self._counters["Abandoned"] += 1

        if outcome.abandoned:
            level = logging.WARNING
        elif outcome.status == AssignmentStatus.PERMANENT_FAILURE:
            level = logging.ERROR
        else:
            level = logging.INFO
        logger.log(
            level,
            f"Assignment outcome pod={outcome.pod} node={outcome.node_name or '-'} "
            f"status={outcome.status.value} attempts={outcome.attempts} "
            f"latency_ms={outcome.latency_ms:.1f} detail={outcome.detail or '-'}",
            extra={"assignment": outcome.to_dict()},
        )

        if self.on_outcome:
            try:
                self.on_outcome(outcome)
            except Exception as e:
                logger.error(f"Error in outcome callback: {e}")

    # -------- introspection --------

    def recent_outcomes(self, limit: Optional[int] = None) -> List[AssignmentOutcome]:
        with self._lock:
            items = list(self._recent)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no pod is in flight. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._inflight, timeout=timeout)

    # -------- shutdown --------

    def shutdown(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Stop accepting pods, drop pending retries and wait for running attempts.

        Args:
            grace_seconds: How long to wait for running attempts
                (defaults to config.shutdown_grace_seconds)

        Returns:
            True if every running attempt finished within the grace period
        """
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        with self._lock:
            if not self._accepting:
                return not self._futures
            self._accepting = False
            timers = list(self._timers.items())
            self._timers.clear()
            futures = list(self._futures.items())

        for key, ticket in timers:
            if ticket.timer is not None:
                ticket.timer.cancel()
            with self._lock:
                self._release_locked(ticket)
            logger.warning(f"Abandoning pending attempt for {key}: shutting down")

        running = []
        for future, ticket in futures:
            if future.cancel():
                with self._lock:
                    self._release_locked(ticket)
                logger.warning(f"Abandoning queued attempt for {ticket.pod.key}: shutting down")
            else:
                running.append(future)

        self._executor.shutdown(wait=False)
        done, not_done = wait(running, timeout=grace)
        if not_done:
            logger.warning(f"{len(not_done)} assignment attempt(s) still running after {grace:.1f}s grace")
        else:
            logger.info("Assignment orchestrator stopped")
        return not not_done
