import sys
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from podsched.config import BackoffPolicy, SchedulerConfig
from podsched.errors import ClusterAPIError, ErrorKind
from podsched.state import BindingCommand, NodeInfo, PodKey, PodRef, WatchEvent

SCHEDULER = "my-scheduler"


def make_pod(name: str = "p1", namespace: str = "default", **kwargs) -> PodRef:
    kwargs.setdefault("scheduler_name", SCHEDULER)
    return PodRef(namespace=namespace, name=name, **kwargs)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeGateway:
    """
    In-memory cluster API. Bindings use optimistic concurrency: the first
    binding for a pod wins, later ones get a 409.
    """

    def __init__(self, nodes: Optional[List[str]] = None) -> None:
        self._lock = threading.Lock()
        self.node_names: List[str] = list(nodes or [])
        # Scripted list_nodes replies; the last entry sticks
        self.node_replies: deque = deque()
        self.list_nodes_calls = 0

        self.bindings: Dict[PodKey, str] = {}
        self.bind_calls: List[BindingCommand] = []
        self.bind_errors: deque = deque()
        self.bind_delay = 0.0
        self.deleted_pods: set = set()

        self.watch_scripts: deque = deque()
        self.watch_calls: List[Optional[str]] = []
        self.list_pods_reply = ([], "0")
        self.list_pods_calls = 0
        self.list_pods_errors: deque = deque()

    # -------- nodes --------

    def list_nodes(self, label_selector: str) -> List[NodeInfo]:
        with self._lock:
            self.list_nodes_calls += 1
            if self.node_replies:
                reply = self.node_replies[0]
                if len(self.node_replies) > 1:
                    self.node_replies.popleft()
                if isinstance(reply, Exception):
                    raise reply
                names = reply
            else:
                names = self.node_names
        return [NodeInfo(name=n, labels={"my-sheduler-node": "test-1"}) for n in names]

    # -------- pods --------

    def list_pods(self, field_selector: str):
        with self._lock:
            self.list_pods_calls += 1
            if self.list_pods_errors:
                raise self.list_pods_errors.popleft()
            return self.list_pods_reply

    def watch_pods(self, field_selector: str, resource_version=None, timeout_seconds: int = 60):
        with self._lock:
            self.watch_calls.append(resource_version)
            script = self.watch_scripts.popleft() if self.watch_scripts else None
        if script is None:
            # Idle stream: behave like a quiet server-side timeout
            time.sleep(0.02)
            return
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    def stop_watch(self) -> None:
        pass

    # -------- binding --------

    def create_binding(self, command: BindingCommand) -> None:
        if self.bind_delay:
            time.sleep(self.bind_delay)
        with self._lock:
            self.bind_calls.append(command)
            if self.bind_errors:
                raise self.bind_errors.popleft()
            if command.pod in self.deleted_pods:
                raise ClusterAPIError("pods not found", ErrorKind.NOT_FOUND, status=404)
            if command.pod in self.bindings:
                raise ClusterAPIError("pod already assigned", ErrorKind.CONFLICT, status=409)
            self.bindings[command.pod] = command.node_name


def added(pod: PodRef, rv: str) -> WatchEvent:
    return WatchEvent(type="ADDED", pod=pod, resource_version=rv)


def server_error(status: int = 503) -> ClusterAPIError:
    return ClusterAPIError("service unavailable", ErrorKind.SERVER, status=status, retriable=True)


@pytest.fixture
def gateway():
    return FakeGateway(nodes=["n1"])


@pytest.fixture
def fast_config():
    return SchedulerConfig(
        scheduler_name=SCHEDULER,
        node_selector="my-sheduler-node=test-1",
        max_concurrency=4,
        max_attempts=3,
        retry_backoff=BackoffPolicy(initial_seconds=0.01, maximum_seconds=0.05),
        defer_delay_seconds=0.02,
        watch_timeout_seconds=1,
        watch_backoff=BackoffPolicy(initial_seconds=0.01, maximum_seconds=0.05),
        shutdown_grace_seconds=2.0,
    ).validate()
