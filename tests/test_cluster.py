from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client import (
    V1Node,
    V1NodeCondition,
    V1NodeStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodList,
    V1ListMeta,
    V1NodeList,
    V1PodSpec,
    V1PodStatus,
)
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import ProtocolError

import podsched.cluster as cluster_module
from podsched.cluster import ClusterGateway
from podsched.errors import ClusterAPIError, CursorExpired, ErrorKind, classify_exception
from podsched.state import BindingCommand, PodKey, PodRef


def v1_pod(name="p1", namespace="default", node_name=None, phase="Pending", rv="7", deleting=False):
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            resource_version=rv,
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        spec=V1PodSpec(containers=[], scheduler_name="my-scheduler", node_name=node_name),
        status=V1PodStatus(phase=phase),
    )


def v1_node(name, ready="True", labels=None):
    return V1Node(
        metadata=V1ObjectMeta(name=name, labels=labels or {"my-sheduler-node": "test-1"}),
        status=V1NodeStatus(conditions=[V1NodeCondition(type="Ready", status=ready)]),
    )


@pytest.fixture
def core():
    return MagicMock()


@pytest.fixture
def gateway(core):
    return ClusterGateway(core_api=core)


# -------- error classification --------

@pytest.mark.parametrize(
    "status,kind,retriable",
    [
        (409, ErrorKind.CONFLICT, False),
        (404, ErrorKind.NOT_FOUND, False),
        (500, ErrorKind.SERVER, True),
        (503, ErrorKind.SERVER, True),
        (429, ErrorKind.SERVER, True),
        (400, ErrorKind.CLIENT, False),
        (403, ErrorKind.CLIENT, False),
        (0, ErrorKind.TRANSPORT, True),
    ],
)
def test_classify_api_exception(status, kind, retriable):
    error = classify_exception(ApiException(status=status, reason="x"))
    assert error.kind == kind
    assert error.retriable is retriable


def test_classify_gone_is_cursor_expired():
    assert isinstance(classify_exception(ApiException(status=410, reason="Gone")), CursorExpired)


@pytest.mark.parametrize("exc", [ProtocolError("reset"), ConnectionResetError(), TimeoutError()])
def test_classify_transport_errors(exc):
    error = classify_exception(exc, "bind")
    assert error.kind == ErrorKind.TRANSPORT
    assert error.retriable


def test_classify_passes_cluster_errors_through():
    original = ClusterAPIError("x", ErrorKind.CONFLICT, status=409)
    assert classify_exception(original) is original


# -------- nodes / pods --------

def test_list_nodes_uses_label_selector(gateway, core):
    core.list_node.return_value = V1NodeList(items=[v1_node("n1"), v1_node("n2", ready="False")])

    nodes = gateway.list_nodes("my-sheduler-node=test-1")

    core.list_node.assert_called_once_with(label_selector="my-sheduler-node=test-1")
    assert [(n.name, n.ready) for n in nodes] == [("n1", True), ("n2", False)]
    assert nodes[0].labels == {"my-sheduler-node": "test-1"}


def test_list_nodes_translates_errors(gateway, core):
    core.list_node.side_effect = ApiException(status=503, reason="Service Unavailable")
    with pytest.raises(ClusterAPIError) as excinfo:
        gateway.list_nodes("a=b")
    assert excinfo.value.retriable


def test_list_pods_returns_resource_version(gateway, core):
    core.list_pod_for_all_namespaces.return_value = V1PodList(
        items=[v1_pod("p1"), v1_pod("p2", node_name="n1")],
        metadata=V1ListMeta(resource_version="900"),
    )

    pods, rv = gateway.list_pods("status.phase=Pending")

    assert rv == "900"
    assert [p.name for p in pods] == ["p1", "p2"]
    assert pods[1].node_name == "n1"


def test_pod_ref_from_v1():
    pod = PodRef.from_v1(v1_pod("p1", namespace="team-a", deleting=True))
    assert pod.key == PodKey("team-a", "p1")
    assert pod.deleting
    assert not pod.is_schedulable("my-scheduler")
    assert PodRef.from_v1(v1_pod("p2")).is_schedulable("my-scheduler")


# -------- watch --------

class FakeWatch:
    events = []
    raise_after = None
    kwargs = None

    def __init__(self):
        self.stopped = False

    def stream(self, func, **kwargs):
        FakeWatch.kwargs = kwargs
        for event in FakeWatch.events:
            yield event
        if FakeWatch.raise_after is not None:
            raise FakeWatch.raise_after

    def stop(self):
        self.stopped = True


@pytest.fixture
def fake_watch(monkeypatch):
    FakeWatch.events = []
    FakeWatch.raise_after = None
    FakeWatch.kwargs = None
    monkeypatch.setattr(cluster_module, "watch", SimpleNamespace(Watch=FakeWatch))
    return FakeWatch


def test_watch_pods_parses_events(gateway, fake_watch):
    bookmark = V1Pod(metadata=V1ObjectMeta(resource_version="12"))
    fake_watch.events = [
        {"type": "ADDED", "object": v1_pod("p1", rv="10"), "raw_object": {}},
        {"type": "MODIFIED", "object": v1_pod("p1", rv="11", node_name="n1"), "raw_object": {}},
        {"type": "BOOKMARK", "object": bookmark, "raw_object": {}},
    ]

    events = list(gateway.watch_pods("status.phase=Pending", resource_version="9", timeout_seconds=30))

    assert [(e.type, e.resource_version) for e in events] == [
        ("ADDED", "10"),
        ("MODIFIED", "11"),
        ("BOOKMARK", "12"),
    ]
    assert events[0].pod.name == "p1"
    assert events[2].pod is None
    assert fake_watch.kwargs["resource_version"] == "9"
    assert fake_watch.kwargs["timeout_seconds"] == 30
    assert fake_watch.kwargs["allow_watch_bookmarks"] is True


def test_watch_from_now_omits_resource_version(gateway, fake_watch):
    list(gateway.watch_pods("status.phase=Pending"))
    assert "resource_version" not in fake_watch.kwargs


def test_watch_error_event_410_raises_cursor_expired(gateway, fake_watch):
    fake_watch.events = [
        {"type": "ERROR", "object": None, "raw_object": {"code": 410, "reason": "Expired", "message": "too old"}},
    ]
    with pytest.raises(CursorExpired):
        list(gateway.watch_pods("f", resource_version="1"))


def test_watch_api_exception_410_raises_cursor_expired(gateway, fake_watch):
    fake_watch.raise_after = ApiException(status=410, reason="Expired: too old resource version")
    with pytest.raises(CursorExpired):
        list(gateway.watch_pods("f", resource_version="1"))


def test_watch_transport_failure_is_retriable(gateway, fake_watch):
    fake_watch.raise_after = ProtocolError("Connection broken")
    with pytest.raises(ClusterAPIError) as excinfo:
        list(gateway.watch_pods("f"))
    assert excinfo.value.kind == ErrorKind.TRANSPORT
    assert excinfo.value.retriable


# -------- binding --------

def test_create_binding_posts_binding_body(gateway, core):
    gateway.create_binding(BindingCommand(pod=PodKey("default", "p1"), node_name="n1"))

    _, kwargs = core.create_namespaced_pod_binding.call_args
    assert kwargs["name"] == "p1"
    assert kwargs["namespace"] == "default"
    body = kwargs["body"]
    assert body.metadata.name == "p1"
    assert body.target.kind == "Node"
    assert body.target.name == "n1"


def test_create_binding_conflict(gateway, core):
    core.create_namespaced_pod_binding.side_effect = ApiException(status=409, reason="Conflict")
    with pytest.raises(ClusterAPIError) as excinfo:
        gateway.create_binding(BindingCommand(pod=PodKey("default", "p1"), node_name="n1"))
    assert excinfo.value.kind == ErrorKind.CONFLICT
    assert not excinfo.value.retriable
