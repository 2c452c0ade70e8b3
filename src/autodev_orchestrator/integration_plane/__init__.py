"""Integration plane: git worktree slots and branch merging."""

from autodev_orchestrator.integration_plane.git_engine import GitEngine, GitEngineError
from autodev_orchestrator.integration_plane.merger import (
    IntegrationMerger,
    IntegrationReport,
    Resolution,
)
from autodev_orchestrator.integration_plane.workspace_pool import (
    GitWorktreeBackend,
    WorkspacePool,
)

__all__ = [
    "GitEngine",
    "GitEngineError",
    "GitWorktreeBackend",
    "IntegrationMerger",
    "IntegrationReport",
    "Resolution",
    "WorkspacePool",
]
