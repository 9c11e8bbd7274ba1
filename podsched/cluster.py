"""Thin adapter over the kubernetes client for pods, nodes and bindings."""

from __future__ import annotations

import logging
import threading
from typing import Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client import ApiClient

from podsched.errors import ClusterAPIError, CursorExpired, ErrorKind, classify_exception
from podsched.state import (
    EVENT_BOOKMARK,
    BindingCommand,
    NodeInfo,
    PodRef,
    WatchEvent,
)

logger = logging.getLogger(__name__)


def load_cluster_config(kubeconfig: Optional[str] = None) -> ApiClient:
    """
    Load Kubernetes client configuration.

    Uses the explicit kubeconfig when given, otherwise the in-cluster service
    account, otherwise the default kubeconfig.

    Raises:
        config.ConfigException: If no configuration could be loaded
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info(f"Loaded kubeconfig from {kubeconfig}")
    else:
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
    return ApiClient()


class ClusterGateway:
    """Pod/node list and watch, and the pod binding sub-resource."""

    def __init__(self, core_api: Optional[client.CoreV1Api] = None) -> None:
        self.core = core_api or client.CoreV1Api()
        self._watch_lock = threading.Lock()
        self._active_watch: Optional[watch.Watch] = None

    # -------- nodes --------

    def list_nodes(self, label_selector: str) -> List[NodeInfo]:
        try:
            nodes = self.core.list_node(label_selector=label_selector)
        except Exception as e:
            raise classify_exception(e, f"list nodes ({label_selector})") from e
        return [NodeInfo.from_v1(node) for node in nodes.items]

    # -------- pods --------

    def list_pods(self, field_selector: str) -> Tuple[List[PodRef], Optional[str]]:
        """
        List pods across namespaces.

        Returns:
            (pods, resource version of the list)
        """
        try:
            pods = self.core.list_pod_for_all_namespaces(field_selector=field_selector)
        except Exception as e:
            raise classify_exception(e, f"list pods ({field_selector})") from e
        return [PodRef.from_v1(p) for p in pods.items], pods.metadata.resource_version

    def watch_pods(
        self,
        field_selector: str,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 60,
    ) -> Iterator[WatchEvent]:
        """
        Stream pod events until the server closes the request.

        Args:
            field_selector: Server-side filter
            resource_version: Resume point; None starts from now and replays
                current matches as ADDED events
            timeout_seconds: Server-side watch timeout

        Raises:
            CursorExpired: The resource version has been compacted away
            ClusterAPIError: Any other failure
        """
        kwargs = {
            "field_selector": field_selector,
            "timeout_seconds": timeout_seconds,
            "allow_watch_bookmarks": True,
            "_request_timeout": timeout_seconds + 10,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version

        w = watch.Watch()
        with self._watch_lock:
            self._active_watch = w
        try:
            for event in w.stream(self.core.list_pod_for_all_namespaces, **kwargs):
                parsed = self._parse_event(event)
                if parsed is not None:
                    yield parsed
        except ClusterAPIError:
            raise
        except Exception as e:
            raise classify_exception(e, "watch pods") from e
        finally:
            with self._watch_lock:
                if self._active_watch is w:
                    self._active_watch = None

    def stop_watch(self) -> None:
        """Ask the active watch to end after its next event."""
        with self._watch_lock:
            if self._active_watch is not None:
                self._active_watch.stop()

    @staticmethod
    def _parse_event(event: dict) -> Optional[WatchEvent]:
        etype = event.get("type")
        if etype == "ERROR":
            raw = event.get("raw_object") or {}
            code = raw.get("code") if isinstance(raw, dict) else None
            if code == 410:
                raise CursorExpired(f"watch pods: {raw.get('message', 'resource version too old')}")
            message = raw.get("message", "watch error") if isinstance(raw, dict) else str(raw)
            raise ClusterAPIError(f"watch pods: {message}", ErrorKind.SERVER, status=code, retriable=True)

        obj = event.get("object")
        if obj is None or getattr(obj, "metadata", None) is None:
            return None
        rv = obj.metadata.resource_version
        if etype == EVENT_BOOKMARK:
            return WatchEvent(type=etype, pod=None, resource_version=rv)
        return WatchEvent(type=etype, pod=PodRef.from_v1(obj), resource_version=rv)

    # -------- binding --------

    def create_binding(self, command: BindingCommand) -> None:
        """Create the pod's binding sub-resource. One request, no retries."""
        try:
            # The generated client chokes deserializing the binding Status reply
            self.core.create_namespaced_pod_binding(
                name=command.pod.name,
                namespace=command.pod.namespace,
                body=command.to_v1(),
                _preload_content=False,
            )
        except Exception as e:
            raise classify_exception(
                e, f"bind {command.pod} -> {command.node_name}"
            ) from e
