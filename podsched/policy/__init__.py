"""Node selection policies."""

from __future__ import annotations

import random
from typing import Optional

from podsched.policy.base import SelectionPolicy
from podsched.policy.random_choice import RandomPolicy
from podsched.policy.round_robin import RoundRobinPolicy

POLICIES = {
	RandomPolicy.name: RandomPolicy,
	RoundRobinPolicy.name: RoundRobinPolicy,
}


def get_policy(name: str, rng: Optional[random.Random] = None) -> SelectionPolicy:
	name = (name or RandomPolicy.name).lower()
	if name == RandomPolicy.name:
		return RandomPolicy(rng=rng)
	if name == RoundRobinPolicy.name:
		return RoundRobinPolicy()
	raise ValueError(f"Unknown selection policy '{name}' (choose from {', '.join(sorted(POLICIES))})")


__all__ = ['SelectionPolicy', 'RandomPolicy', 'RoundRobinPolicy', 'POLICIES', 'get_policy']
