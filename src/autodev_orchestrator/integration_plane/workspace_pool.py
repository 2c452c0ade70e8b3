"""
Fixed-size pool of reusable git worktree slots.

Slot bookkeeping (``acquire``/``release``) is a pure state mutation performed by
the coordinator and persisted immediately. The slow VCS work (``materialize`` and
``finalize``) goes through a :class:`WorkspaceBackend` and is safe to run in a
worker thread via ``asyncio.to_thread``.

Each task owns the deterministic branch ``<prefix>/<task_id>``, so a retried task
lands on the same branch and sees its earlier commits.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from autodev_orchestrator.constants import (
    DEFAULT_BASE_BRANCH,
    DEFAULT_WORK_BRANCH_PREFIX,
    SLOT_ID_PREFIX,
)
from autodev_orchestrator.domain.errors import (
    NoSlotAvailableError,
    ResourceError,
    WorkspaceHealthError,
)
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import (
    OrchestrationState,
    SlotStatus,
    TaskStatus,
    WorkspaceSlot,
    validate_task_id,
    with_status,
)
from autodev_orchestrator.utils.fs import safe_delete

if TYPE_CHECKING:
    from autodev_orchestrator.integration_plane.git_engine import GitEngine
    from autodev_orchestrator.observability.events import EventBus
    from autodev_orchestrator.persistence.state_store import StateStore


class WorkspaceBackend(Protocol):
    """VCS operations the pool needs; ``GitWorktreeBackend`` is the real one."""

    def materialize(self, path: Path, branch: str, *, base: str) -> Path: ...

    def finalize(self, path: Path, branch: str, *, keep: bool, message: str) -> str | None: ...

    def remove(self, path: Path) -> None: ...

    def branch_head(self, branch: str) -> str | None: ...

    def current_branch(self, path: Path) -> str | None: ...

    def path_exists(self, path: Path) -> bool: ...

    def delete_branches(self, prefix: str) -> tuple[str, ...]: ...

    def prune(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SlotInfo:
    """Read-only slot view returned by ``status()``."""

    slot_id: str
    status: SlotStatus
    path: str
    branch_ref: str | None
    assigned_task_id: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "slot_id": self.slot_id,
            "status": self.status.value,
            "path": self.path,
            "branch_ref": self.branch_ref,
            "assigned_task_id": self.assigned_task_id,
        }


@dataclass(frozen=True, slots=True)
class Acquisition:
    """Result of ``acquire``: the ``slot_id|path|branch`` triple."""

    slot_id: str
    path: str
    branch: str

    def render(self) -> str:
        return f"{self.slot_id}|{self.path}|{self.branch}"


class GitWorktreeBackend:
    """:class:`WorkspaceBackend` implemented with ``git worktree``."""

    def __init__(self, git: GitEngine, *, workspace_root: Path | None = None) -> None:
        self._git = git
        self._workspace_root = workspace_root
        self._lock = threading.RLock()

    def materialize(self, path: Path, branch: str, *, base: str) -> Path:
        with self._lock:
            if path.exists() and self._git.is_registered_worktree(path):
                self._git.discard_changes(path)
                self._git.switch_worktree(path, branch, base=base)
            else:
                if path.exists() and self._workspace_root is not None:
                    safe_delete(path, self._workspace_root)
                self._git.prune_worktrees()
                self._git.add_worktree(path, branch, base=base)
        return path

    def finalize(self, path: Path, branch: str, *, keep: bool, message: str) -> str | None:
        with self._lock:
            if not path.exists():
                return None
            commit: str | None = None
            if keep:
                commit = self._git.commit_all(path, message)
            self._git.discard_changes(path)
            if self._git.current_branch(path) is not None:
                self._git.detach_worktree(path)
            return commit

    def remove(self, path: Path) -> None:
        with self._lock:
            self._git.remove_worktree(path)
            if path.exists() and self._workspace_root is not None:
                safe_delete(path, self._workspace_root)

    def branch_head(self, branch: str) -> str | None:
        return self._git.branch_head(branch)

    def current_branch(self, path: Path) -> str | None:
        return self._git.current_branch(path)

    def path_exists(self, path: Path) -> bool:
        return path.is_dir()

    def delete_branches(self, prefix: str) -> tuple[str, ...]:
        deleted: list[str] = []
        with self._lock:
            for branch in self._git.list_branches(prefix):
                self._git.delete_branch(branch)
                deleted.append(branch)
        return tuple(deleted)

    def prune(self) -> None:
        self._git.prune_worktrees()


class WorkspacePool:
    """Owns slot state and hands out isolated workspaces to tasks."""

    def __init__(
        self,
        state: OrchestrationState,
        store: StateStore,
        backend: WorkspaceBackend,
        *,
        workspace_root: str | Path,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        base_branch: str = DEFAULT_BASE_BRANCH,
        bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._backend = backend
        self._workspace_root = Path(workspace_root)
        self._branch_prefix = branch_prefix.strip("/")
        self._base_branch = base_branch
        self._bus = bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> OrchestrationState:
        return self._state

    @property
    def size(self) -> int:
        return len(self._state.slots)

    @property
    def branch_prefix(self) -> str:
        return self._branch_prefix

    def branch_for(self, task_id: str) -> str:
        return f"{self._branch_prefix}/{validate_task_id(task_id)}"

    def slot_path(self, slot_id: str) -> Path:
        return self._workspace_root / slot_id

    # ------------------------------------------------------------------
    # State mutations
    # ------------------------------------------------------------------

    def init(self, size: int) -> tuple[SlotInfo, ...]:
        """Create ``size`` idle slots ``wt-1..wt-N``; shrinking removes idle worktrees."""
        if size < 1:
            raise ValueError("pool size must be >= 1")
        busy = self._state.busy_slots()
        if busy:
            ids = ", ".join(slot.id for slot in busy)
            raise ResourceError(f"cannot re-initialize pool while slots are busy: {ids}")

        self._workspace_root.mkdir(parents=True, exist_ok=True)
        existing = {slot.id: slot for slot in self._state.slots}
        wanted = [f"{SLOT_ID_PREFIX}{index}" for index in range(1, size + 1)]
        removed = [slot for slot_id, slot in existing.items() if slot_id not in wanted]
        for slot in removed:
            self._backend.remove(Path(slot.path))

        self._state.slots = [
            existing.get(slot_id)
            or WorkspaceSlot(id=slot_id, path=str(self.slot_path(slot_id)))
            for slot_id in wanted
        ]
        self._state.record_history("pool_initialized", size=size, removed=[s.id for s in removed])
        self._store.save(self._state)
        self._logger.info("workspace_pool_initialized", size=size, removed=len(removed))
        return self.status()

    def acquire(self, task_id: str) -> Acquisition:
        """
        Bind the lowest-numbered idle slot to ``task_id`` without blocking.

        A slot that last served this task's branch is preferred so retries land
        on a warm worktree.
        """
        normalized = validate_task_id(task_id)
        holder = self._state.slot_for_task(normalized)
        if holder is not None:
            raise ResourceError(f"task {normalized} already holds slot {holder.id}")

        idle = self._state.idle_slots()
        if not idle:
            raise NoSlotAvailableError(normalized, len(self._state.slots))

        branch = self.branch_for(normalized)
        chosen = next((slot for slot in idle if slot.last_branch_ref == branch), idle[0])
        acquired = replace(
            chosen,
            status=SlotStatus.BUSY,
            branch_ref=branch,
            assigned_task_id=normalized,
        )
        self._state.put_slot(acquired)
        self._state.record_history("slot_acquired", slot_id=acquired.id, task_id=normalized)
        self._store.save(self._state)
        self._publish(EventType.SLOT_ACQUIRED, slot_id=acquired.id, task_id=normalized, branch=branch)
        self._logger.info(
            "workspace_slot_acquired", slot_id=acquired.id, task_id=normalized, branch=branch
        )
        return Acquisition(slot_id=acquired.id, path=acquired.path, branch=branch)

    def release(self, slot_id: str, *, done: bool = False) -> SlotInfo:
        """Mark ``slot_id`` idle; the branch stays for integration or retry."""
        slot = self._state.slot(slot_id)
        if not slot.is_busy:
            return _info(slot)
        released = WorkspaceSlot(
            id=slot.id,
            path=slot.path,
            status=SlotStatus.IDLE,
            branch_ref=None,
            assigned_task_id=None,
            last_branch_ref=slot.branch_ref,
        )
        self._state.put_slot(released)
        self._state.record_history(
            "slot_released", slot_id=slot.id, task_id=slot.assigned_task_id, done=done
        )
        self._store.save(self._state)
        self._publish(
            EventType.SLOT_RELEASED, slot_id=slot.id, task_id=slot.assigned_task_id, done=done
        )
        self._logger.info(
            "workspace_slot_released", slot_id=slot.id, task_id=slot.assigned_task_id, done=done
        )
        return _info(released)

    # ------------------------------------------------------------------
    # VCS work (thread-safe, no state mutation)
    # ------------------------------------------------------------------

    def materialize(self, slot_id: str) -> Path:
        """Create or reuse the slot worktree and check out the task branch."""
        slot = self._state.slot(slot_id)
        if not slot.is_busy or slot.branch_ref is None:
            raise ResourceError(f"slot {slot_id} is not assigned")
        path = self._backend.materialize(Path(slot.path), slot.branch_ref, base=self._base_branch)
        self._logger.debug(
            "workspace_materialized", slot_id=slot_id, path=str(path), branch=slot.branch_ref
        )
        return path

    def finalize(self, slot_id: str, *, keep: bool) -> str | None:
        """Commit (``keep``) or discard slot changes, then detach so the branch is free."""
        slot = self._state.slot(slot_id)
        if slot.branch_ref is None:
            return None
        message = f"autodev: {slot.assigned_task_id or slot.branch_ref}"
        commit = self._backend.finalize(Path(slot.path), slot.branch_ref, keep=keep, message=message)
        self._logger.debug("workspace_finalized", slot_id=slot_id, keep=keep, commit=commit)
        return commit

    def release_and_scrub(self, slot_id: str, *, done: bool = False) -> SlotInfo:
        self.finalize(slot_id, keep=done)
        return self.release(slot_id, done=done)

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def status(self) -> tuple[SlotInfo, ...]:
        return tuple(_info(slot) for slot in self._state.slots)

    def check_health(self) -> tuple[str, ...]:
        issues: list[str] = []
        for slot in self._state.busy_slots():
            path = Path(slot.path)
            if not self._backend.path_exists(path):
                issues.append(f"{slot.id}: workspace path {slot.path} is missing")
                continue
            current = self._backend.current_branch(path)
            if current != slot.branch_ref:
                issues.append(
                    f"{slot.id}: expected branch {slot.branch_ref}, found {current or 'detached HEAD'}"
                )
        return tuple(issues)

    def health(self) -> None:
        issues = self.check_health()
        if issues:
            raise WorkspaceHealthError(issues)

    def cleanup(self) -> tuple[str, ...]:
        """Remove every slot worktree and delete every ``<prefix>/*`` branch."""
        busy = self._state.busy_slots()
        if busy:
            ids = ", ".join(slot.id for slot in busy)
            raise ResourceError(f"cannot clean up while slots are busy: {ids}")
        for slot in self._state.slots:
            self._backend.remove(Path(slot.path))
        self._backend.prune()
        deleted = self._backend.delete_branches(self._branch_prefix)
        self._state.slots = [
            WorkspaceSlot(id=slot.id, path=slot.path) for slot in self._state.slots
        ]
        self._state.record_history("pool_cleaned", deleted_branches=list(deleted))
        self._store.save(self._state)
        self._logger.info("workspace_pool_cleaned", deleted_branches=len(deleted))
        return deleted

    def reset(self, slot_id: str) -> SlotInfo:
        """Force a stuck slot back to idle; its task (if any) returns to Pending."""
        slot = self._state.slot(slot_id)
        if slot.branch_ref is not None:
            try:
                self._backend.finalize(Path(slot.path), slot.branch_ref, keep=False, message="reset")
            except (OSError, RuntimeError) as exc:
                self._logger.warning("workspace_reset_scrub_failed", slot_id=slot_id, error=str(exc))
        task_id = slot.assigned_task_id
        if task_id is not None and task_id in self._state.tasks:
            task = self._state.task(task_id)
            if task.status is TaskStatus.ASSIGNED:
                self._state.put_task(with_status(task, TaskStatus.PENDING))
        return self.release(slot_id)

    def _publish(self, event_type: EventType, **payload: object) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, payload)  # type: ignore[arg-type]


def _info(slot: WorkspaceSlot) -> SlotInfo:
    return SlotInfo(
        slot_id=slot.id,
        status=slot.status,
        path=slot.path,
        branch_ref=slot.branch_ref,
        assigned_task_id=slot.assigned_task_id,
    )


__all__ = [
    "Acquisition",
    "GitWorktreeBackend",
    "SlotInfo",
    "WorkspaceBackend",
    "WorkspacePool",
]
