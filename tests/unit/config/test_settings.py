"""Unit tests for typed runtime settings."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from typing import TYPE_CHECKING

import pytest

from autodev_orchestrator.config.schema import ConfigValidationError, default_config, merge_config
from autodev_orchestrator.config.settings import PoolSettings, RuntimeSettings

if TYPE_CHECKING:
    from pathlib import Path


def test_defaults_resolve_paths_against_the_repository(tmp_path: Path) -> None:
    settings = RuntimeSettings.defaults(repo_root=tmp_path)

    root = tmp_path.resolve()
    assert settings.state_dir == root / ".autodev"
    assert settings.pool.workspace_root == root / ".autodev" / "worktrees"
    assert settings.observability.log_dir is None
    assert settings.pool.size == 8
    assert settings.pool.max_agents == 3
    assert settings.pool.branch_prefix == "auto"
    assert settings.target_branch == "main"
    assert settings.max_sessions == 500
    assert settings.scheduler.task_timeout_seconds == 1800.0
    assert settings.escalation.transient_max == 5
    assert settings.budget.token_budget == 200_000
    assert settings.checkpoint.auto_checkpoint is True


def test_from_config_keeps_absolute_paths_and_log_dir(tmp_path: Path) -> None:
    config = merge_config(
        default_config(),
        {
            "paths": {"state_dir": str(tmp_path / "state")},
            "observability": {"log_dir": "logs"},
        },
    )

    settings = RuntimeSettings.from_config(config, repo_root=tmp_path / "repo")

    assert settings.state_dir == tmp_path / "state"
    assert settings.observability.log_dir == (tmp_path / "repo").resolve() / "logs"


def test_from_config_validates(tmp_path: Path) -> None:
    config = merge_config(default_config(), {"pool": {"size": 1}})

    with pytest.raises(ConfigValidationError):
        RuntimeSettings.from_config(config, repo_root=tmp_path)


def test_settings_are_frozen_and_overridable(tmp_path: Path) -> None:
    settings = RuntimeSettings.defaults(repo_root=tmp_path)

    with pytest.raises(FrozenInstanceError):
        settings.max_sessions = 1  # type: ignore[misc]

    smaller = settings.with_overrides(
        pool=PoolSettings(
            size=2,
            max_agents=1,
            workspace_root=settings.pool.workspace_root,
            branch_prefix="work",
            base_branch="main",
        )
    )
    assert smaller.pool.size == 2
    assert smaller.pool.branch_prefix == "work"
    assert settings.pool.size == 8
    assert smaller.raw is settings.raw
