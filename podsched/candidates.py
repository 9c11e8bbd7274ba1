"""Node candidate discovery by label selector."""

from __future__ import annotations

import logging
from typing import List

from podsched.cluster import ClusterGateway
from podsched.state import CandidateSet, NodeInfo

logger = logging.getLogger(__name__)


class NodeCandidateProvider:
    """
    Resolves the nodes currently matching a label selector.

    Results are never cached: every assignment attempt sees a fresh list.
    Gateway errors propagate unchanged; retrying is the orchestrator's job.
    """

    def __init__(self, gateway: ClusterGateway, label_selector: str) -> None:
        self.gateway = gateway
        self.label_selector = label_selector

    def nodes(self) -> List[NodeInfo]:
        return self.gateway.list_nodes(self.label_selector)

    def candidates(self) -> CandidateSet:
        names = frozenset(node.name for node in self.nodes())
        logger.debug(f"{len(names)} node(s) match selector '{self.label_selector}'")
        return names
