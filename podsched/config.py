"""Scheduler configuration: defaults, YAML file, environment overrides."""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from podsched.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PODSCHED_"
CONFIG_ENV = "PODSCHED_CONFIG"


@dataclass
class BackoffPolicy:
    """Exponential backoff: initial * multiplier**(attempt-1), capped at maximum."""
    initial_seconds: float = 0.5
    maximum_seconds: float = 30.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """
        Delay before the next try, after `attempt` failed tries.

        Args:
            attempt: Number of failed tries so far (1-based)

        Returns:
            Seconds to wait
        """
        attempt = max(1, attempt)
        value = self.initial_seconds * (self.multiplier ** (attempt - 1))
        return min(value, self.maximum_seconds)

    def validate(self, name: str) -> None:
        if self.initial_seconds < 0 or self.maximum_seconds < 0:
            raise ConfigError(f"{name}: backoff delays must be >= 0")
        if self.multiplier < 1.0:
            raise ConfigError(f"{name}: backoff multiplier must be >= 1.0")


@dataclass
class SchedulerConfig:
    scheduler_name: str = "my-scheduler"
    node_selector: str = "my-sheduler-node=test-1"
    policy: str = "random"

    max_concurrency: int = 8
    max_attempts: int = 5
    retry_backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    defer_delay_seconds: float = 5.0
    max_deferrals: Optional[int] = None  # None: keep deferring

    watch_timeout_seconds: int = 60
    watch_backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(initial_seconds=1.0, maximum_seconds=60.0)
    )

    shutdown_grace_seconds: float = 10.0
    status_port: Optional[int] = None
    recent_outcomes: int = 256

    @property
    def pod_field_selector(self) -> str:
        return f"status.phase=Pending,spec.schedulerName={self.scheduler_name}"

    def validate(self) -> "SchedulerConfig":
        if not self.scheduler_name:
            raise ConfigError("scheduler_name must not be empty")
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be >= 1")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be >= 1")
        if self.defer_delay_seconds < 0:
            raise ConfigError("defer_delay_seconds must be >= 0")
        if self.max_deferrals is not None and self.max_deferrals < 0:
            raise ConfigError("max_deferrals must be >= 0")
        if self.watch_timeout_seconds < 1:
            raise ConfigError("watch_timeout_seconds must be >= 1")
        if self.shutdown_grace_seconds < 0:
            raise ConfigError("shutdown_grace_seconds must be >= 0")
        if self.status_port is not None and not (0 <= self.status_port <= 65535):
            raise ConfigError(f"status_port out of range: {self.status_port}")
        self.retry_backoff.validate("retry_backoff")
        self.watch_backoff.validate("watch_backoff")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    # -------- loading --------

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "SchedulerConfig":
        """
        Build a config from defaults, an optional YAML file, the environment,
        and explicit overrides (highest precedence).

        Args:
            path: YAML file path; falls back to $PODSCHED_CONFIG
            environ: Environment mapping (defaults to os.environ)
            overrides: Values set explicitly, e.g. from CLI flags; None values are ignored

        Returns:
            Validated SchedulerConfig

        Raises:
            ConfigError: If the file cannot be read or a value is invalid
        """
        environ = os.environ if environ is None else environ
        cfg = cls()

        path = path or environ.get(CONFIG_ENV)
        if path:
            cfg._apply(_read_yaml(Path(path)), source=str(path))

        cfg._apply(_from_env(environ), source="environment")

        if overrides:
            cfg._apply({k: v for k, v in overrides.items() if v is not None}, source="overrides")

        return cfg.validate()

    def _apply(self, data: Dict[str, Any], source: str) -> None:
        known = {f.name for f in fields(self)}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}' from {source}")
                continue
            if key in ("retry_backoff", "watch_backoff"):
                current: BackoffPolicy = getattr(self, key)
                setattr(self, key, _merge_backoff(current, value, key))
                continue
            setattr(self, key, _coerce(key, value, getattr(self, key)))


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info(f"Loaded scheduler config from {path}")
    return data


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    backoff: Dict[str, Dict[str, str]] = {"retry_backoff": {}, "watch_backoff": {}}
    for raw_key, value in environ.items():
        if not raw_key.startswith(ENV_PREFIX) or raw_key == CONFIG_ENV:
            continue
        key = raw_key[len(ENV_PREFIX):].lower()
        for group in backoff:
            if key.startswith(group + "_"):
                backoff[group][key[len(group) + 1:]] = value
                break
        else:
            data[key] = value
    for group, values in backoff.items():
        if values:
            data[group] = values
    return data


def _merge_backoff(current: BackoffPolicy, value: Any, name: str) -> BackoffPolicy:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    merged = asdict(current)
    for key, raw in value.items():
        if key not in merged:
            raise ConfigError(f"{name}: unknown key '{key}'")
        merged[key] = _coerce(f"{name}.{key}", raw, merged[key])
    return BackoffPolicy(**merged)


_OPTIONAL_INTS = ("max_deferrals", "status_port")


def _coerce(key: str, value: Any, current: Any) -> Any:
    if key.rsplit(".", 1)[-1] in _OPTIONAL_INTS:
        if value is None or str(value).strip().lower() in ("", "none", "null"):
            return None
        current = 0
    if isinstance(current, bool):
        return str(value).lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key}: expected an integer, got {value!r}") from e
    if isinstance(current, float):
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key}: expected a number, got {value!r}") from e
    return str(value)
