"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch names.
DEFAULT_BASE_BRANCH: Final[str] = "main"
DEFAULT_TARGET_BRANCH: Final[str] = "main"
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "auto"
SLOT_ID_PREFIX: Final[str] = "wt-"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_SCHEMA_VERSION: Final[int] = 1
CHECKPOINT_SCHEMA_VERSION: Final[int] = 1
HANDOFF_SIGNAL_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the repository root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".autodev")
WORKSPACES_DIR: Final[PurePosixPath] = PurePosixPath(".autodev/worktrees")
STATE_FILE_NAME: Final[str] = "state.json"
LATEST_CHECKPOINT_FILE_NAME: Final[str] = "checkpoint.json"
CHECKPOINTS_DIR_NAME: Final[str] = "checkpoints"
CHECKPOINT_ARCHIVE_DIR_NAME: Final[str] = "archive"
HANDOFF_SIGNAL_FILE_NAME: Final[str] = "handoff.json"
STUCK_REPORTS_DIR_NAME: Final[str] = "stuck"

# Pool and budget defaults.
DEFAULT_POOL_SIZE: Final[int] = 8
DEFAULT_MAX_AGENTS: Final[int] = 3
DEFAULT_TOKEN_BUDGET: Final[int] = 200_000
DEFAULT_WARN_THRESHOLD: Final[float] = 0.70
DEFAULT_HANDOFF_THRESHOLD: Final[float] = 0.80
DEFAULT_CHECKPOINT_RETAIN: Final[int] = 10

# Escalation ladder bounds.
DEFAULT_RETRY_MAX: Final[int] = 3
DEFAULT_PIVOT_MAX: Final[int] = 3
DEFAULT_RESEARCH_MAX: Final[int] = 2
DEFAULT_TRANSIENT_MAX: Final[int] = 5

UNREACHABLE_DEPENDENCY_REASON: Final[str] = "unreachable dependency"
TIMEOUT_REASON: Final[str] = "timeout"

__all__ = [
    "CHECKPOINTS_DIR_NAME",
    "CHECKPOINT_ARCHIVE_DIR_NAME",
    "CHECKPOINT_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_CHECKPOINT_RETAIN",
    "DEFAULT_HANDOFF_THRESHOLD",
    "DEFAULT_MAX_AGENTS",
    "DEFAULT_PIVOT_MAX",
    "DEFAULT_POOL_SIZE",
    "DEFAULT_RESEARCH_MAX",
    "DEFAULT_RETRY_MAX",
    "DEFAULT_TARGET_BRANCH",
    "DEFAULT_TOKEN_BUDGET",
    "DEFAULT_TRANSIENT_MAX",
    "DEFAULT_WARN_THRESHOLD",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "HANDOFF_SIGNAL_FILE_NAME",
    "HANDOFF_SIGNAL_SCHEMA_VERSION",
    "LATEST_CHECKPOINT_FILE_NAME",
    "SLOT_ID_PREFIX",
    "STATE_DIR",
    "STATE_FILE_NAME",
    "STATE_SCHEMA_VERSION",
    "STUCK_REPORTS_DIR_NAME",
    "TIMEOUT_REASON",
    "UNREACHABLE_DEPENDENCY_REASON",
    "WORKSPACES_DIR",
]
