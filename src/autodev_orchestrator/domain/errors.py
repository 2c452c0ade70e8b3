"""
Error taxonomy shared by every orchestration plane.

Classification drives routing:
- ``TransientError``: I/O or network hiccups; re-dispatched without escalation cost.
- ``LogicError``: verification/test failures; escalates Retry -> Pivot -> Research -> Ask.
- ``ResourceError``: missing slots or tools; fatal to the task, no escalation budget used.
- ``ConsistencyError``: checkpoint/workspace mismatch; fatal to the resume operation.
- ``BudgetExceeded``: a planned handoff, not a failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class OrchestratorError(RuntimeError):
    """Base error for orchestration failures."""


class TransientError(OrchestratorError):
    """Temporary failure expected to succeed when repeated unchanged."""


class LogicError(OrchestratorError):
    """Task output was rejected by verification."""


class ResourceError(OrchestratorError):
    """Required resource (slot, tool, workspace) is unavailable."""


class ConsistencyError(OrchestratorError):
    """Persisted state disagrees with the repository; operator action required."""


class NoSlotAvailableError(ResourceError):
    """Raised by non-blocking slot acquisition when every slot is busy."""

    def __init__(self, task_id: str, pool_size: int) -> None:
        self.task_id = task_id
        self.pool_size = pool_size
        super().__init__(f"no idle workspace slot for task {task_id!r} (pool size {pool_size})")


class WorkspaceHealthError(ResourceError):
    """Raised when busy slots no longer match their expected workspace/branch."""

    def __init__(self, issues: Sequence[str]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {issue}" for issue in self.issues) or "- unknown issue"
        super().__init__(f"workspace pool is unhealthy:\n{rendered}")


class StateCorruptedError(ConsistencyError):
    """Persisted orchestration state cannot be parsed."""


class CheckpointNotFoundError(ConsistencyError):
    """Requested checkpoint does not exist (active or archived)."""


class CheckpointInconsistentError(ConsistencyError):
    """Checkpoint slot snapshots disagree with repository branch heads."""

    def __init__(self, checkpoint_id: str, mismatches: Sequence[str]) -> None:
        self.checkpoint_id = checkpoint_id
        self.mismatches = tuple(mismatches)
        rendered = "; ".join(self.mismatches)
        super().__init__(
            f"checkpoint {checkpoint_id} is inconsistent with the repository: {rendered}"
        )


class InvalidTaskGraphError(ValueError):
    """Task graph input is malformed (duplicates, unknown dependencies, empty)."""


class CyclicDependencyError(InvalidTaskGraphError, LogicError):
    """Task graph contains at least one dependency cycle."""

    def __init__(self, cycle_members: Sequence[str]) -> None:
        self.cycle_members = tuple(cycle_members)
        members = ", ".join(self.cycle_members)
        super().__init__(f"task graph contains a dependency cycle among: {members}")


class PhaseTransitionError(OrchestratorError):
    """Illegal or unguarded phase transition."""


class ConflictDetected(OrchestratorError):
    """Integration halted: incoming branch overlaps already-merged changes."""

    def __init__(
        self,
        *,
        task_id: str,
        branch: str,
        files: Sequence[str],
        reason: str,
    ) -> None:
        self.task_id = task_id
        self.branch = branch
        self.files = tuple(files)
        self.reason = reason
        listed = ", ".join(self.files) or "(unknown files)"
        super().__init__(f"merge conflict integrating {branch} ({task_id}): {reason}: {listed}")

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "branch": self.branch,
            "files": list(self.files),
            "reason": self.reason,
        }


class BudgetExceeded(OrchestratorError):
    """Planned handoff after the token budget crossed its handoff threshold."""

    def __init__(self, checkpoint_id: str, used: int, maximum: int) -> None:
        self.checkpoint_id = checkpoint_id
        self.used = used
        self.maximum = maximum
        super().__init__(
            f"token budget handoff at {used}/{maximum}; resume with checkpoint {checkpoint_id}"
        )


__all__ = [
    "BudgetExceeded",
    "CheckpointInconsistentError",
    "CheckpointNotFoundError",
    "ConflictDetected",
    "ConsistencyError",
    "CyclicDependencyError",
    "InvalidTaskGraphError",
    "LogicError",
    "NoSlotAvailableError",
    "OrchestratorError",
    "PhaseTransitionError",
    "ResourceError",
    "StateCorruptedError",
    "TransientError",
    "WorkspaceHealthError",
]
