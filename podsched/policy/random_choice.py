from __future__ import annotations

import random
from typing import Optional

from podsched.policy.base import SelectionPolicy
from podsched.state import CandidateSet, PodRef


class RandomPolicy(SelectionPolicy):
	"""Uniform random choice over the candidates."""

	name = "random"

	def __init__(self, rng: Optional[random.Random] = None) -> None:
		# Module-level random is the process-wide source
		self.rng = rng if rng is not None else random

	def select(self, candidates: CandidateSet, pod: PodRef) -> Optional[str]:
		if not candidates:
			return None
		# Sort so a seeded rng gives the same pick for the same set
		return self.rng.choice(sorted(candidates))
