"""
Round-robin node selection.

Rotates over the sorted candidate list. The counter is shared across pods, so
consecutive assignments spread over the matching nodes even as the set
changes between calls.
"""

from __future__ import annotations

import threading
from typing import Optional

from podsched.policy.base import SelectionPolicy
from podsched.state import CandidateSet, PodRef


class RoundRobinPolicy(SelectionPolicy):
	name = "round-robin"

	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._next = 0

	def select(self, candidates: CandidateSet, pod: PodRef) -> Optional[str]:
		if not candidates:
			return None
		ordered = sorted(candidates)
		with self._lock:
			index = self._next % len(ordered)
			self._next += 1
		return ordered[index]
