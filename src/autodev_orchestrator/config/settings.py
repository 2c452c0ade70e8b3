"""Typed, frozen runtime settings derived from a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from autodev_orchestrator.config.schema import assert_valid_config, default_config


@dataclass(frozen=True, slots=True)
class PoolSettings:
    size: int
    max_agents: int
    workspace_root: Path
    branch_prefix: str
    base_branch: str


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    task_timeout_seconds: float
    handoff_grace_seconds: float


@dataclass(frozen=True, slots=True)
class EscalationSettings:
    retry_max: int
    pivot_max: int
    research_max: int
    transient_max: int
    backoff_base_seconds: float
    backoff_multiplier: float
    backoff_max_seconds: float


@dataclass(frozen=True, slots=True)
class BudgetSettings:
    token_budget: int
    warn_threshold: float
    handoff_threshold: float


@dataclass(frozen=True, slots=True)
class CheckpointSettings:
    retain: int
    auto_checkpoint: bool


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str
    log_format: str
    log_dir: Path | None


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Everything the runtime consumes; built once per process from config."""

    pool: PoolSettings
    scheduler: SchedulerSettings
    escalation: EscalationSettings
    budget: BudgetSettings
    checkpoint: CheckpointSettings
    observability: ObservabilitySettings
    target_branch: str
    max_sessions: int
    state_dir: Path
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        repo_root: str | Path | None = None,
    ) -> RuntimeSettings:
        """Build settings from a config mapping; relative paths resolve against ``repo_root``."""

        validated = assert_valid_config(config)
        root = Path(repo_root).resolve() if repo_root is not None else Path.cwd().resolve()

        pool = validated["pool"]
        scheduler = validated["scheduler"]
        escalation = validated["escalation"]
        budget = validated["budget"]
        checkpoint = validated["checkpoint"]
        observability = validated["observability"]
        log_dir_raw = observability["log_dir"]

        return cls(
            pool=PoolSettings(
                size=pool["size"],
                max_agents=pool["max_agents"],
                workspace_root=_resolve(root, pool["workspace_root"]),
                branch_prefix=pool["branch_prefix"],
                base_branch=pool["base_branch"],
            ),
            scheduler=SchedulerSettings(
                task_timeout_seconds=scheduler["task_timeout_seconds"],
                handoff_grace_seconds=scheduler["handoff_grace_seconds"],
            ),
            escalation=EscalationSettings(
                retry_max=escalation["retry_max"],
                pivot_max=escalation["pivot_max"],
                research_max=escalation["research_max"],
                transient_max=escalation["transient_max"],
                backoff_base_seconds=escalation["backoff_base_seconds"],
                backoff_multiplier=escalation["backoff_multiplier"],
                backoff_max_seconds=escalation["backoff_max_seconds"],
            ),
            budget=BudgetSettings(
                token_budget=budget["token_budget"],
                warn_threshold=budget["warn_threshold"],
                handoff_threshold=budget["handoff_threshold"],
            ),
            checkpoint=CheckpointSettings(
                retain=checkpoint["retain"],
                auto_checkpoint=checkpoint["auto_checkpoint"],
            ),
            observability=ObservabilitySettings(
                log_level=observability["log_level"],
                log_format=observability["log_format"],
                log_dir=_resolve(root, log_dir_raw) if log_dir_raw else None,
            ),
            target_branch=validated["integration"]["target_branch"],
            max_sessions=validated["session"]["max_sessions"],
            state_dir=_resolve(root, validated["paths"]["state_dir"]),
            raw=validated,
        )

    @classmethod
    def defaults(cls, *, repo_root: str | Path | None = None) -> RuntimeSettings:
        return cls.from_config(default_config(), repo_root=repo_root)  # type: ignore[arg-type]

    def with_overrides(self, **sections: object) -> RuntimeSettings:
        """Return a copy with whole sections replaced (``pool=PoolSettings(...)``)."""

        return replace(self, **sections)  # type: ignore[arg-type]


def _resolve(root: Path, raw: str) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    return candidate


__all__ = [
    "BudgetSettings",
    "CheckpointSettings",
    "EscalationSettings",
    "ObservabilitySettings",
    "PoolSettings",
    "RuntimeSettings",
    "SchedulerSettings",
]
