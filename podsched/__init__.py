"""
Custom Kubernetes pod scheduler.

Modules:
- state: pod/node views, binding commands, outcomes, watch cursor
- cluster: kubernetes client adapter (list/watch/bind)
- candidates: nodes matching the label selector
- policy: node selection policies (random, round-robin)
- binder: binding executor and outcome classification
- orchestrator: per-pod single-flight assignment with retry/defer
- watcher: pod watch with resume and relist-on-expiry
- api: status REST surface
"""

__version__ = "0.1.0"
