"""Wires gateway, candidate provider, policy, binder, orchestrator and watch."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Dict, Optional

from podsched.binder import BindingExecutor
from podsched.candidates import NodeCandidateProvider
from podsched.cluster import ClusterGateway
from podsched.config import SchedulerConfig
from podsched.orchestrator import AssignmentOrchestrator
from podsched.policy import SelectionPolicy, get_policy
from podsched.watcher import WatchController

logger = logging.getLogger(__name__)


class Scheduler:
    """The assignment pipeline for one scheduler name."""

    def __init__(
        self,
        config: SchedulerConfig,
        gateway: ClusterGateway,
        policy: Optional[SelectionPolicy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Args:
            config: Validated scheduler configuration
            gateway: Cluster API adapter
            policy: Selection policy; built from config.policy when omitted
            rng: Random source handed to the policy (tests pass a seeded one)
        """
        self.config = config
        self.gateway = gateway
        self.policy = policy or get_policy(config.policy, rng=rng)
        self.provider = NodeCandidateProvider(gateway, config.node_selector)
        self.binder = BindingExecutor(gateway)
        self.orchestrator = AssignmentOrchestrator(self.provider, self.policy, self.binder, config)
        self.watcher = WatchController(gateway, self.orchestrator, config)

        self._stopped = threading.Event()
        self.started_at: Optional[float] = None

        logger.info(
            f"Scheduler '{config.scheduler_name}' initialized: selector='{config.node_selector}', "
            f"policy={self.policy.name}, max_concurrency={config.max_concurrency}"
        )

    def start(self) -> None:
        self.started_at = time.time()
        self._stopped.clear()
        self.watcher.start()

    def stop(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Stop watching, then let in-flight attempts finish within the grace period.

        Returns:
            True if every running attempt finished in time
        """
        if self._stopped.is_set():
            return True
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + grace
        logger.info(f"Stopping scheduler '{self.config.scheduler_name}' (grace {grace:.1f}s)")
        # One deadline covers the watch and the running attempts
        self.watcher.request_stop()
        clean = self.orchestrator.shutdown(grace_seconds=grace)
        self.watcher.join(timeout=max(0.0, deadline - time.monotonic()))
        self._stopped.set()
        return clean

    def status(self) -> Dict[str, Any]:
        return {
            "scheduler_name": self.config.scheduler_name,
            "node_selector": self.config.node_selector,
            "policy": self.policy.name,
            "config": self.config.to_dict(),
            "watch_state": self.watcher.state.value,
            "cursor": self.watcher.cursor.value,
            "inflight": self.orchestrator.inflight_count(),
            "counters": self.orchestrator.counters(),
            "started_at": self.started_at,
        }
