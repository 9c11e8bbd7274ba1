from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, NamedTuple, Optional
import threading
import time

from kubernetes.client import V1Binding, V1Node, V1ObjectMeta, V1ObjectReference, V1Pod


PHASE_PENDING = "Pending"


# ----------------------------- identities -----------------------------

class PodKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


CandidateSet = FrozenSet[str]


# ----------------------------- cluster objects -----------------------------

@dataclass(frozen=True)
class PodRef:
    """Read-only view of a pod, as much as the scheduler needs."""
    namespace: str
    name: str
    phase: Optional[str] = PHASE_PENDING
    scheduler_name: Optional[str] = None
    node_name: Optional[str] = None
    resource_version: Optional[str] = None
    deleting: bool = False

    @property
    def key(self) -> PodKey:
        return PodKey(self.namespace, self.name)

    def is_schedulable(self, scheduler_name: str) -> bool:
        """Pending, asks for this scheduler, not yet bound and not being deleted."""
        if self.deleting or self.node_name:
            return False
        if self.scheduler_name != scheduler_name:
            return False
        return self.phase is None or self.phase == PHASE_PENDING

    @classmethod
    def from_v1(cls, pod: V1Pod) -> "PodRef":
        meta = pod.metadata
        spec = pod.spec
        status = pod.status
        return cls(
            namespace=meta.namespace or "default",
            name=meta.name,
            phase=status.phase if status else None,
            scheduler_name=spec.scheduler_name if spec else None,
            node_name=spec.node_name if spec else None,
            resource_version=meta.resource_version,
            deleting=meta.deletion_timestamp is not None,
        )


@dataclass(frozen=True)
class NodeInfo:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    ready: bool = True

    @classmethod
    def from_v1(cls, node: V1Node) -> "NodeInfo":
        ready = False
        conditions = node.status.conditions if node.status else None
        for condition in conditions or []:
            if condition.type == "Ready":
                ready = condition.status == "True"
                break
        return cls(
            name=node.metadata.name,
            labels=dict(node.metadata.labels or {}),
            ready=ready,
        )


@dataclass(frozen=True)
class BindingCommand:
    pod: PodKey
    node_name: str

    def to_v1(self) -> V1Binding:
        return V1Binding(
            metadata=V1ObjectMeta(name=self.pod.name, namespace=self.pod.namespace),
            target=V1ObjectReference(api_version="v1", kind="Node", name=self.node_name),
        )


# ----------------------------- outcomes -----------------------------

class AssignmentStatus(Enum):
    BOUND = "Bound"
    ALREADY_BOUND = "AlreadyBound"
    NO_CANDIDATES = "NoCandidates"
    RETRYABLE_FAILURE = "RetryableFailure"
    PERMANENT_FAILURE = "PermanentFailure"


TERMINAL_STATUSES = frozenset({
    AssignmentStatus.BOUND,
    AssignmentStatus.ALREADY_BOUND,
    AssignmentStatus.PERMANENT_FAILURE,
})


@dataclass
class AssignmentOutcome:
    """Result of one assignment attempt for one pod."""
    pod: PodKey
    node_name: Optional[str]
    status: AssignmentStatus
    detail: str = ""
    attempts: int = 1
    latency_ms: float = 0.0
    abandoned: bool = False
    finished_at: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.abandoned or self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["pod"] = str(self.pod)
        data["status"] = self.status.value
        return data


# ----------------------------- watch -----------------------------

class WatchState(Enum):
    CONNECTING = "Connecting"
    STREAMING = "Streaming"
    INTERRUPTED = "Interrupted"
    INVALIDATED = "Invalidated"
    STOPPED = "Stopped"


EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"
EVENT_BOOKMARK = "BOOKMARK"


@dataclass(frozen=True)
class WatchEvent:
    type: str
    pod: Optional[PodRef]
    resource_version: Optional[str] = None


class WatchCursor:
    """Last resource version seen on the pod watch. None means "from now"."""

    def __init__(self, resource_version: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._rv = resource_version

    @property
    def value(self) -> Optional[str]:
        with self._lock:
            return self._rv

    def advance(self, resource_version: Optional[str]) -> None:
        # Resource versions are opaque; the latest delivered one wins.
        if not resource_version:
            return
        with self._lock:
            self._rv = resource_version

    def reset(self, resource_version: Optional[str] = None) -> None:
        with self._lock:
            self._rv = resource_version
