from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from podsched.state import CandidateSet, PodRef


class SelectionPolicy(ABC):
	"""Picks one node for a pod. No I/O; an empty candidate set yields None."""

	name = "base"

	@abstractmethod
	def select(self, candidates: CandidateSet, pod: PodRef) -> Optional[str]:
		raise NotImplementedError
