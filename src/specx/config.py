"""Load and validate engine configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from specx.errors import CONFIG_REASON_PARSE_ERROR, ConfigError
from specx.router.types import (
    DEFAULT_CONFIG_RELATIVE_PATH,
    DEFAULT_LOCK_RELATIVE_PATH,
    DEFAULT_SPECS_RELATIVE_PATH,
    DEFAULT_STATE_RELATIVE_PATH,
    Priority,
    RoutingWeights,
)

DEFAULT_WARNING_WEIGHTS: dict[str, float] = {
    "large_task": 0.1,
    "stale_recommendation": 0.2,
    "unregistered_agent": 0.15,
    "workload_near_limit": 0.1,
    "workload_override": 0.3,
}

# Keep this literal deterministic and sorted in write path.
ENGINE_CONFIG_TEMPLATE: dict[str, Any] = {
    "specs_dir": DEFAULT_SPECS_RELATIVE_PATH.as_posix(),
    "state_dir": DEFAULT_STATE_RELATIVE_PATH.as_posix(),
    "lock_dir": DEFAULT_LOCK_RELATIVE_PATH.as_posix(),
    "max_concurrent_tasks": 3,
    "lock_timeout_seconds": 5.0,
    "lock_stale_seconds": 10.0,
    "performance_target_seconds": 3.0,
    "max_alternatives": 3,
    "stale_recommendation_seconds": 300,
    "routing": {
        "weights": {
            "priority": {"P0": 40, "P1": 30, "P2": 20, "P3": 10},
            "exact_match": 15,
            "superset_match": 8,
            "no_requirements": 4,
            "fan_out_per_dependent": 5,
            "fan_out_cap": 25,
            "staleness_per_day": 1,
            "staleness_cap": 5,
        }
    },
    "validation": {
        "large_task_hours": 8,
        "warning_weights": dict(DEFAULT_WARNING_WEIGHTS),
    },
}


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine settings; paths are absolute."""

    repo_root: Path
    specs_dir: Path
    state_dir: Path
    lock_dir: Path
    max_concurrent_tasks: int = 3
    lock_timeout_seconds: float = 5.0
    lock_stale_seconds: float = 10.0
    performance_target_seconds: float = 3.0
    max_alternatives: int = 3
    stale_recommendation_seconds: float = 300.0
    large_task_hours: float = 8.0
    routing_weights: RoutingWeights = field(default_factory=RoutingWeights)
    warning_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WARNING_WEIGHTS))
    path: Path | None = None

    @property
    def store_path(self) -> Path:
        return self.state_dir / "tasks.json"

    @property
    def audit_path(self) -> Path:
        return self.state_dir / "audit.jsonl"

    def to_dict(self) -> dict[str, Any]:
        weights = self.routing_weights
        return {
            "specs_dir": str(self.specs_dir),
            "state_dir": str(self.state_dir),
            "lock_dir": str(self.lock_dir),
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "lock_stale_seconds": self.lock_stale_seconds,
            "performance_target_seconds": self.performance_target_seconds,
            "max_alternatives": self.max_alternatives,
            "stale_recommendation_seconds": self.stale_recommendation_seconds,
            "large_task_hours": self.large_task_hours,
            "routing_weights": {
                "priority": dict(sorted(weights.priority.items())),
                "exact_match": weights.exact_match,
                "superset_match": weights.superset_match,
                "no_requirements": weights.no_requirements,
                "fan_out_per_dependent": weights.fan_out_per_dependent,
                "fan_out_cap": weights.fan_out_cap,
                "staleness_per_day": weights.staleness_per_day,
                "staleness_cap": weights.staleness_cap,
            },
            "warning_weights": dict(sorted(self.warning_weights.items())),
        }


def config_path_for_repo(repo_root: Path) -> Path:
    """Return canonical config file path for a repository."""
    return repo_root.resolve() / DEFAULT_CONFIG_RELATIVE_PATH


def ensure_default_config(repo_root: Path, *, force: bool = False) -> Path:
    """Create default config YAML deterministically."""
    output_path = config_path_for_repo(repo_root)
    if output_path.exists() and not force:
        raise FileExistsError(f"Config file already exists: {output_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    rendered = yaml.safe_dump(ENGINE_CONFIG_TEMPLATE, sort_keys=True)
    output_path.write_text(rendered, encoding="utf-8")
    return output_path


def default_config(repo_root: Path) -> EngineConfig:
    """Return the built-in configuration rooted at `repo_root`."""
    return _normalize_config(repo_root.resolve(), {}, path=None)


def load_config(repo_root: Path) -> EngineConfig:
    """Load, normalize, and validate repository config; a missing file means defaults."""
    resolved_root = repo_root.resolve()
    path = config_path_for_repo(resolved_root)
    if not path.exists():
        return _normalize_config(resolved_root, {}, path=None)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"config.yaml parse error: {exc}", CONFIG_REASON_PARSE_ERROR) from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(
            "config.yaml parse error: expected mapping at top level",
            CONFIG_REASON_PARSE_ERROR,
        )
    return _normalize_config(resolved_root, raw, path=path)


def _normalize_config(repo_root: Path, raw: dict[str, Any], *, path: Path | None) -> EngineConfig:
    specs_dir = _resolve_dir(repo_root, raw.get("specs_dir"), DEFAULT_SPECS_RELATIVE_PATH, "specs_dir")
    state_dir = _resolve_dir(repo_root, raw.get("state_dir"), DEFAULT_STATE_RELATIVE_PATH, "state_dir")
    lock_dir = _resolve_dir(repo_root, raw.get("lock_dir"), DEFAULT_LOCK_RELATIVE_PATH, "lock_dir")

    max_concurrent = _positive_int(raw.get("max_concurrent_tasks", 3), "max_concurrent_tasks")
    max_alternatives = _non_negative_int(raw.get("max_alternatives", 3), "max_alternatives")
    lock_timeout = _positive_float(raw.get("lock_timeout_seconds", 5.0), "lock_timeout_seconds")
    lock_stale = _positive_float(raw.get("lock_stale_seconds", 10.0), "lock_stale_seconds")
    perf_target = _positive_float(raw.get("performance_target_seconds", 3.0), "performance_target_seconds")
    stale_reco = _positive_float(raw.get("stale_recommendation_seconds", 300), "stale_recommendation_seconds")

    if lock_stale <= perf_target:
        raise ConfigError(
            "lock_stale_seconds must exceed performance_target_seconds "
            f"({lock_stale} <= {perf_target})"
        )
    # A holder refreshes its lock before every wait, so one wait is the longest silent hold.
    if lock_stale <= lock_timeout:
        raise ConfigError(
            "lock_stale_seconds must exceed lock_timeout_seconds "
            f"({lock_stale} <= {lock_timeout})"
        )

    routing_raw = _optional_mapping(raw.get("routing"), "routing")
    weights = _normalize_weights(_optional_mapping(routing_raw.get("weights"), "routing.weights"))

    validation_raw = _optional_mapping(raw.get("validation"), "validation")
    large_task_hours = _positive_float(validation_raw.get("large_task_hours", 8), "validation.large_task_hours")
    warning_weights = dict(DEFAULT_WARNING_WEIGHTS)
    overrides = _optional_mapping(validation_raw.get("warning_weights"), "validation.warning_weights")
    for name in sorted(overrides):
        if name not in DEFAULT_WARNING_WEIGHTS:
            raise ConfigError(
                f"validation.warning_weights has unknown key `{name}`; "
                f"expected one of {sorted(DEFAULT_WARNING_WEIGHTS)}"
            )
        value = _non_negative_float(overrides[name], f"validation.warning_weights.{name}")
        if value > 1.0:
            raise ConfigError(f"validation.warning_weights.{name} must be <= 1.0")
        warning_weights[name] = value

    return EngineConfig(
        repo_root=repo_root,
        specs_dir=specs_dir,
        state_dir=state_dir,
        lock_dir=lock_dir,
        max_concurrent_tasks=max_concurrent,
        lock_timeout_seconds=lock_timeout,
        lock_stale_seconds=lock_stale,
        performance_target_seconds=perf_target,
        max_alternatives=max_alternatives,
        stale_recommendation_seconds=stale_reco,
        large_task_hours=large_task_hours,
        routing_weights=weights,
        warning_weights=warning_weights,
        path=path,
    )


def _normalize_weights(raw: dict[str, Any]) -> RoutingWeights:
    defaults = RoutingWeights()
    priority = dict(defaults.priority)
    priority_raw = _optional_mapping(raw.get("priority"), "routing.weights.priority")
    for key in sorted(priority_raw):
        try:
            tier = Priority(str(key).upper())
        except ValueError as exc:
            raise ConfigError(f"routing.weights.priority has unknown tier `{key}`") from exc
        priority[tier.value] = _non_negative_int(priority_raw[key], f"routing.weights.priority.{key}")

    def pick(name: str) -> int:
        return _non_negative_int(raw.get(name, getattr(defaults, name)), f"routing.weights.{name}")

    return RoutingWeights(
        priority=priority,
        exact_match=pick("exact_match"),
        superset_match=pick("superset_match"),
        no_requirements=pick("no_requirements"),
        fan_out_per_dependent=pick("fan_out_per_dependent"),
        fan_out_cap=pick("fan_out_cap"),
        staleness_per_day=pick("staleness_per_day"),
        staleness_cap=pick("staleness_cap"),
    )


def _resolve_dir(repo_root: Path, value: Any, default: Path, field_name: str) -> Path:
    if value is None:
        return repo_root / default
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field_name} must be a non-empty path string")
    candidate = Path(value.strip())
    if candidate.is_absolute():
        return candidate
    return repo_root / candidate


def _optional_mapping(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{field_name} must be a mapping")
    return value


def _positive_int(value: Any, field_name: str) -> int:
    number = _non_negative_int(value, field_name)
    if number < 1:
        raise ConfigError(f"{field_name} must be >= 1")
    return number


def _non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field_name} must be an integer, got `{value}`")
    if value < 0:
        raise ConfigError(f"{field_name} must be >= 0")
    return value


def _positive_float(value: Any, field_name: str) -> float:
    number = _non_negative_float(value, field_name)
    if number <= 0:
        raise ConfigError(f"{field_name} must be > 0")
    return number


def _non_negative_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{field_name} must be a number, got `{value}`")
    if value < 0:
        raise ConfigError(f"{field_name} must be >= 0")
    return float(value)
