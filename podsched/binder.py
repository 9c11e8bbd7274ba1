"""Binding executor: commits a pod-to-node choice and classifies the result."""

from __future__ import annotations

import logging
import time

from podsched.cluster import ClusterGateway
from podsched.errors import ClusterAPIError, ErrorKind
from podsched.state import AssignmentOutcome, AssignmentStatus, BindingCommand, PodRef

logger = logging.getLogger(__name__)

DETAIL_POD_GONE = "pod not found"
DETAIL_ALREADY_BOUND = "pod already bound"


def status_for_error(error: ClusterAPIError) -> AssignmentStatus:
    """Map a cluster API error onto an assignment status."""
    if error.kind in (ErrorKind.CONFLICT, ErrorKind.NOT_FOUND):
        return AssignmentStatus.ALREADY_BOUND
    if error.retriable or error.kind in (ErrorKind.TRANSPORT, ErrorKind.SERVER):
        return AssignmentStatus.RETRYABLE_FAILURE
    return AssignmentStatus.PERMANENT_FAILURE


class BindingExecutor:
    """Performs exactly one binding request per call; never retries."""

    def __init__(self, gateway: ClusterGateway) -> None:
        self.gateway = gateway

    def bind(self, pod: PodRef, node_name: str) -> AssignmentOutcome:
        """
        Bind a pod to a node.

        Args:
            pod: Pod to bind
            node_name: Chosen node

        Returns:
            AssignmentOutcome with status Bound, AlreadyBound,
            RetryableFailure or PermanentFailure
        """
        command = BindingCommand(pod=pod.key, node_name=node_name)
        started = time.monotonic()
        try:
            self.gateway.create_binding(command)
        except ClusterAPIError as e:
            status = status_for_error(e)
            outcome = AssignmentOutcome(
                pod=pod.key,
                node_name=node_name,
                status=status,
                detail=_detail_for(e),
                latency_ms=(time.monotonic() - started) * 1000.0,
            )
            if status == AssignmentStatus.ALREADY_BOUND:
                logger.info(f"Pod {pod.key} not bound to {node_name}: {outcome.detail}")
            elif status == AssignmentStatus.RETRYABLE_FAILURE:
                logger.warning(f"Transient failure binding {pod.key} to {node_name}: {e}")
            else:
                logger.error(f"Failed to bind {pod.key} to {node_name}: {e}")
            return outcome

        logger.info(f"Bound pod {pod.key} to node {node_name}")
        return AssignmentOutcome(
            pod=pod.key,
            node_name=node_name,
            status=AssignmentStatus.BOUND,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )


def _detail_for(error: ClusterAPIError) -> str:
    if error.kind == ErrorKind.NOT_FOUND:
        return DETAIL_POD_GONE
    if error.kind == ErrorKind.CONFLICT:
        return DETAIL_ALREADY_BOUND
    return str(error)
