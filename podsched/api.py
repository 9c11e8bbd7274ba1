from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from podsched.scheduler import Scheduler
from podsched.state import WatchState

logger = logging.getLogger(__name__)


def create_app(scheduler: Scheduler) -> Flask:
	app = Flask(__name__)
	app.config['scheduler'] = scheduler

	@app.get("/healthz")
	def healthz() -> Any:
		sched = app.config['scheduler']
		state = sched.watcher.state
		healthy = state in (WatchState.CONNECTING, WatchState.STREAMING, WatchState.INTERRUPTED, WatchState.INVALIDATED)
		body = {"status": "ok" if healthy else "stopped", "watch_state": state.value}
		return jsonify(body), (200 if healthy else 503)

	@app.get("/status")
	def status() -> Any:
		return jsonify(app.config['scheduler'].status())

	@app.get("/outcomes")
	def outcomes() -> Any:
		sched = app.config['scheduler']
		raw_limit = request.args.get("limit", "50")
		try:
			limit = int(raw_limit)
		except ValueError:
			return jsonify({"error": f"invalid limit: {raw_limit}"}), 400
		if limit < 0:
			return jsonify({"error": "limit must be >= 0"}), 400
		items = sched.orchestrator.recent_outcomes(limit=limit)
		return jsonify({"outcomes": [o.to_dict() for o in items]})

	return app


class StatusServer:
	"""Serves the status app on a daemon thread."""

	def __init__(self, scheduler: Scheduler, host: str = "0.0.0.0", port: int = 8080) -> None:
		self.app = create_app(scheduler)
		self._server = make_server(host, port, self.app, threaded=True)
		self._thread: Optional[threading.Thread] = None

	@property
	def port(self) -> int:
		return self._server.server_port

	def start(self) -> None:
		self._thread = threading.Thread(target=self._server.serve_forever, name="podsched-status", daemon=True)
		self._thread.start()
		logger.info(f"Status API listening on port {self.port}")

	def stop(self) -> None:
		self._server.shutdown()
		if self._thread:
			self._thread.join(timeout=5.0)
