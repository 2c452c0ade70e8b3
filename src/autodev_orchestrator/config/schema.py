"""
Configuration schema: authoritative defaults and strict validation.

Validation collects every issue (dotted field path + message) before raising,
rejects unknown keys, and enforces cross-field rules such as
``warn_threshold < handoff_threshold`` and ``max_agents <= size``.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from autodev_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BASE_BRANCH,
    DEFAULT_CHECKPOINT_RETAIN,
    DEFAULT_HANDOFF_THRESHOLD,
    DEFAULT_MAX_AGENTS,
    DEFAULT_PIVOT_MAX,
    DEFAULT_POOL_SIZE,
    DEFAULT_RESEARCH_MAX,
    DEFAULT_RETRY_MAX,
    DEFAULT_TARGET_BRANCH,
    DEFAULT_TOKEN_BUDGET,
    DEFAULT_TRANSIENT_MAX,
    DEFAULT_WARN_THRESHOLD,
    DEFAULT_WORK_BRANCH_PREFIX,
    STATE_DIR,
    WORKSPACES_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

# Config paths resolved relative to the repository root.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("pool", "workspace_root"),
    ("paths", "state_dir"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PoolConfig(TypedDict):
    size: int
    max_agents: int
    workspace_root: str
    branch_prefix: str
    base_branch: str


class SchedulerConfig(TypedDict):
    task_timeout_seconds: float
    handoff_grace_seconds: float


class EscalationConfig(TypedDict):
    retry_max: int
    pivot_max: int
    research_max: int
    transient_max: int
    backoff_base_seconds: float
    backoff_multiplier: float
    backoff_max_seconds: float


class BudgetConfig(TypedDict):
    token_budget: int
    warn_threshold: float
    handoff_threshold: float


class CheckpointConfig(TypedDict):
    retain: int
    auto_checkpoint: bool


class IntegrationConfig(TypedDict):
    target_branch: str


class SessionConfig(TypedDict):
    max_sessions: int


class PathsConfig(TypedDict):
    state_dir: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    log_dir: str


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    pool: PoolConfig
    scheduler: SchedulerConfig
    escalation: EscalationConfig
    budget: BudgetConfig
    checkpoint: CheckpointConfig
    integration: IntegrationConfig
    session: SessionConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "pool": {
        "size": DEFAULT_POOL_SIZE,
        "max_agents": DEFAULT_MAX_AGENTS,
        "workspace_root": str(WORKSPACES_DIR),
        "branch_prefix": DEFAULT_WORK_BRANCH_PREFIX,
        "base_branch": DEFAULT_BASE_BRANCH,
    },
    "scheduler": {
        "task_timeout_seconds": 1800.0,
        "handoff_grace_seconds": 30.0,
    },
    "escalation": {
        "retry_max": DEFAULT_RETRY_MAX,
        "pivot_max": DEFAULT_PIVOT_MAX,
        "research_max": DEFAULT_RESEARCH_MAX,
        "transient_max": DEFAULT_TRANSIENT_MAX,
        "backoff_base_seconds": 1.0,
        "backoff_multiplier": 2.0,
        "backoff_max_seconds": 60.0,
    },
    "budget": {
        "token_budget": DEFAULT_TOKEN_BUDGET,
        "warn_threshold": DEFAULT_WARN_THRESHOLD,
        "handoff_threshold": DEFAULT_HANDOFF_THRESHOLD,
    },
    "checkpoint": {
        "retain": DEFAULT_CHECKPOINT_RETAIN,
        "auto_checkpoint": True,
    },
    "integration": {"target_branch": DEFAULT_TARGET_BRANCH},
    "session": {"max_sessions": 500},
    "paths": {"state_dir": str(STATE_DIR)},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "",
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade autodev.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the autodev-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


_SectionValidator = Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "pool": _validate_pool,
        "scheduler": _validate_scheduler,
        "escalation": _validate_escalation,
        "budget": _validate_budget,
        "checkpoint": _validate_checkpoint,
        "integration": _validate_integration,
        "session": _validate_session,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(validators):
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validators[key](section, key, issues)

    _validate_cross_fields(out, issues)
    return out


def _validate_meta(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_pool(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"size", "max_agents", "workspace_root", "branch_prefix", "base_branch"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("size", "max_agents"):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed_int is not None:
                out[key] = parsed_int
    for key in ("workspace_root", "branch_prefix", "base_branch"):
        if key in payload:
            parsed_str = _as_str(payload[key], _join(path, key), issues)
            if parsed_str is not None:
                out[key] = parsed_str
    prefix = out.get("branch_prefix")
    if isinstance(prefix, str) and (prefix.startswith("/") or prefix.endswith("/") or " " in prefix):
        issues.add(_join(path, "branch_prefix"), "must be a bare ref component (example: auto)")
    return out


def _validate_scheduler(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"task_timeout_seconds", "handoff_grace_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "task_timeout_seconds" in payload:
        timeout = _as_float(
            payload["task_timeout_seconds"], _join(path, "task_timeout_seconds"), issues, minimum=0.0
        )
        if timeout is not None:
            if timeout <= 0:
                issues.add(_join(path, "task_timeout_seconds"), "must be > 0")
            else:
                out["task_timeout_seconds"] = timeout
    if "handoff_grace_seconds" in payload:
        grace = _as_float(
            payload["handoff_grace_seconds"], _join(path, "handoff_grace_seconds"), issues, minimum=0.0
        )
        if grace is not None:
            out["handoff_grace_seconds"] = grace
    return out


def _validate_escalation(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_keys = ("retry_max", "pivot_max", "research_max", "transient_max")
    float_keys = ("backoff_base_seconds", "backoff_multiplier", "backoff_max_seconds")
    allowed = set(int_keys) | set(float_keys)
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in int_keys:
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed_int is not None:
                out[key] = parsed_int
    for key in float_keys:
        if key in payload:
            parsed_float = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if parsed_float is not None:
                out[key] = parsed_float
    multiplier = out.get("backoff_multiplier")
    if isinstance(multiplier, float) and multiplier < 1.0:
        issues.add(_join(path, "backoff_multiplier"), "must be >= 1.0")
    base = out.get("backoff_base_seconds")
    cap = out.get("backoff_max_seconds")
    if isinstance(base, float) and isinstance(cap, float) and cap < base:
        issues.add(_join(path, "backoff_max_seconds"), "must be >= backoff_base_seconds")
    return out


def _validate_budget(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"token_budget", "warn_threshold", "handoff_threshold"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "token_budget" in payload:
        budget = _as_int(payload["token_budget"], _join(path, "token_budget"), issues, minimum=1)
        if budget is not None:
            out["token_budget"] = budget
    for key in ("warn_threshold", "handoff_threshold"):
        if key in payload:
            ratio = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if ratio is None:
                continue
            if not 0.0 < ratio <= 1.0:
                issues.add(_join(path, key), "must be in (0, 1]")
                continue
            out[key] = ratio
    warn = out.get("warn_threshold")
    handoff = out.get("handoff_threshold")
    if isinstance(warn, float) and isinstance(handoff, float) and warn >= handoff:
        issues.add(_join(path, "warn_threshold"), "must be < handoff_threshold")
    return out


def _validate_checkpoint(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"retain", "auto_checkpoint"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "retain" in payload:
        retain = _as_int(payload["retain"], _join(path, "retain"), issues, minimum=1)
        if retain is not None:
            out["retain"] = retain
    if "auto_checkpoint" in payload:
        auto = _as_bool(payload["auto_checkpoint"], _join(path, "auto_checkpoint"), issues)
        if auto is not None:
            out["auto_checkpoint"] = auto
    return out


def _validate_integration(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"target_branch"}, path, issues)
    _require_keys(payload, {"target_branch"}, path, issues)
    out: dict[str, Any] = {}
    if "target_branch" in payload:
        target = _as_str(payload["target_branch"], _join(path, "target_branch"), issues)
        if target is not None:
            out["target_branch"] = target
    return out


def _validate_session(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"max_sessions"}, path, issues)
    _require_keys(payload, {"max_sessions"}, path, issues)
    out: dict[str, Any] = {}
    if "max_sessions" in payload:
        sessions = _as_int(payload["max_sessions"], _join(path, "max_sessions"), issues, minimum=1)
        if sessions is not None:
            out["max_sessions"] = sessions
    return out


def _validate_paths(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"state_dir"}, path, issues)
    _require_keys(payload, {"state_dir"}, path, issues)
    out: dict[str, Any] = {}
    if "state_dir" in payload:
        state_dir = _as_path_text(payload["state_dir"], _join(path, "state_dir"), issues)
        if state_dir is not None:
            out["state_dir"] = state_dir
    return out


def _validate_observability(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if level is not None:
            out["log_level"] = level
    if "log_format" in payload:
        log_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if log_format is not None:
            out["log_format"] = log_format
    if "log_dir" in payload:
        raw_dir = payload["log_dir"]
        if not isinstance(raw_dir, str):
            issues.add(_join(path, "log_dir"), f"expected string, got {type(raw_dir).__name__}")
        else:
            out["log_dir"] = raw_dir.strip()
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    pool = config.get("pool")
    if not isinstance(pool, Mapping):
        return
    size = pool.get("size")
    max_agents = pool.get("max_agents")
    if isinstance(size, int) and isinstance(max_agents, int) and max_agents > size:
        issues.add("pool.max_agents", f"must be <= pool.size ({size})")


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if not isinstance(existing, dict):
                existing = {}
                target[key] = existing
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
