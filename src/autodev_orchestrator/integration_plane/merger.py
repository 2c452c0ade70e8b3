"""
Integration merger: folds completed task branches into the target branch.

Branches are merged ``--no-ff`` in dependency order. When an incoming branch
touches files also changed on the target since the merge base, the ``-U0`` hunk
ranges of both sides are compared; overlapping (or adjacent) hunks halt
integration with :class:`ConflictDetected` and leave the target untouched. The
pending conflict is persisted until an external resolution arrives. Merges run in
a private worktree; a checkout holding the target is only fast-forwarded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from autodev_orchestrator.constants import DEFAULT_TARGET_BRANCH, DEFAULT_WORK_BRANCH_PREFIX
from autodev_orchestrator.domain.errors import ConflictDetected, PhaseTransitionError
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import OrchestrationState, Phase, TaskStatus
from autodev_orchestrator.integration_plane.git_engine import CheckoutBlockedError
from autodev_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from autodev_orchestrator.integration_plane.git_engine import GitEngine
    from autodev_orchestrator.observability.events import EventBus
    from autodev_orchestrator.persistence.state_store import StateStore


class Resolution(StrEnum):
    RESOLVED = "resolved"
    SKIP = "skip"


class ConflictResolver(Protocol):
    """Consulted before halting; may integrate the branch itself or drop it."""

    def resolve(self, conflict: ConflictDetected) -> Resolution: ...


@dataclass(frozen=True, slots=True)
class IntegrationReport:
    merged: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    conflicts: int = 0
    structural_merges: tuple[str, ...] = ()
    target_head: str | None = None
    pending_conflict: dict[str, object] | None = field(default=None)

    @property
    def clean(self) -> bool:
        return self.conflicts == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "merged": list(self.merged),
            "skipped": list(self.skipped),
            "conflicts": self.conflicts,
            "structural_merges": list(self.structural_merges),
            "target_head": self.target_head,
            "pending_conflict": self.pending_conflict,
        }


class IntegrationMerger:
    """Merges Done task branches into ``target_branch``; never runs during EXECUTE."""

    def __init__(
        self,
        git: GitEngine,
        *,
        target_branch: str = DEFAULT_TARGET_BRANCH,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        logger: Any | None = None,
    ) -> None:
        self._git = git
        self._target_branch = target_branch
        self._branch_prefix = branch_prefix.strip("/")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def target_branch(self) -> str:
        return self._target_branch

    def branch_for(self, task_id: str) -> str:
        return f"{self._branch_prefix}/{task_id}"

    def merge_order(self, state: OrchestrationState) -> tuple[str, ...]:
        """Topological order over the full DAG, filtered to Done tasks."""
        graph = TaskGraph.from_specs(task.spec for task in state.tasks.values())
        return tuple(
            task_id
            for task_id in graph.topological_order()
            if state.task(task_id).status is TaskStatus.DONE
        )

    def integrate(
        self,
        state: OrchestrationState,
        store: StateStore,
        *,
        bus: EventBus | None = None,
        resolver: ConflictResolver | None = None,
    ) -> IntegrationReport:
        if state.current_phase is not Phase.INTEGRATE:
            raise PhaseTransitionError(
                f"integration runs only in INTEGRATE (current phase {state.current_phase.value})"
            )
        if state.pending_conflict is not None:
            raise _conflict_from_payload(state.pending_conflict)

        merged: list[str] = []
        skipped: list[str] = []
        structural: list[str] = []
        for task_id in self.merge_order(state):
            if task_id in state.merged_task_ids or task_id in state.integration_skipped_task_ids:
                continue
            branch = self.branch_for(task_id)
            try:
                mode = self._merge_one(task_id, branch)
            except CheckoutBlockedError as exc:
                self._logger.error(
                    "integration_checkout_blocked",
                    task_id=task_id,
                    branch=exc.branch,
                    worktree=str(exc.worktree),
                )
                raise
            except ConflictDetected as conflict:
                action = self._consult(resolver, conflict, state, store, bus)
                if action is Resolution.SKIP:
                    self._record(state, store, bus, task_id, merged=False)
                    skipped.append(task_id)
                else:
                    self._record(state, store, bus, task_id, merged=True)
                    merged.append(task_id)
                continue
            if mode == "missing":
                self._record(state, store, bus, task_id, merged=False)
                skipped.append(task_id)
                continue
            if mode == "structural":
                structural.append(task_id)
            self._record(state, store, bus, task_id, merged=True)
            merged.append(task_id)

        return IntegrationReport(
            merged=tuple(merged),
            skipped=tuple(skipped),
            conflicts=0,
            structural_merges=tuple(structural),
            target_head=self._git.branch_head(self._target_branch),
        )

    def resolve_pending(
        self,
        state: OrchestrationState,
        store: StateStore,
        resolution: Resolution,
        *,
        bus: EventBus | None = None,
    ) -> str:
        """External resolution signal for the persisted conflict; returns its task id."""
        pending = state.pending_conflict
        if pending is None:
            raise ValueError("no pending integration conflict to resolve")
        task_id = str(pending.get("task_id"))
        state.pending_conflict = None
        state.record_history("conflict_resolved", task_id=task_id, resolution=resolution.value)
        self._record(state, store, bus, task_id, merged=resolution is Resolution.RESOLVED)
        if bus is not None:
            bus.emit(EventType.CONFLICT_RESOLVED, {"task_id": task_id, "resolution": resolution.value})
        self._logger.info("integration_conflict_resolved", task_id=task_id, resolution=resolution.value)
        return task_id

    def _merge_one(self, task_id: str, branch: str) -> str:
        if not self._git.branch_exists(branch):
            self._logger.warning("integration_branch_missing", task_id=task_id, branch=branch)
            return "missing"

        base = self._git.merge_base(self._target_branch, branch)
        incoming = {entry.path: entry.status for entry in self._git.changed_files(base, branch)}
        if not incoming:
            self._logger.info("integration_nothing_to_merge", task_id=task_id, branch=branch)
            return "noop"
        target_side = {
            entry.path: entry.status for entry in self._git.changed_files(base, self._target_branch)
        }

        shared = sorted(set(incoming) & set(target_side))
        mode = "clean"
        if shared:
            overlapping = [
                path
                for path in shared
                if "M" not in (incoming[path], target_side[path])
                or incoming[path] != target_side[path]
                or self._hunks_overlap(base, branch, path)
            ]
            if overlapping:
                raise ConflictDetected(
                    task_id=task_id,
                    branch=branch,
                    files=overlapping,
                    reason="overlapping changes",
                )
            mode = "structural"

        result = self._git.merge_no_ff(
            branch, self._target_branch, message=f"autodev: integrate {task_id} ({branch})"
        )
        if not result.clean:
            raise ConflictDetected(
                task_id=task_id,
                branch=branch,
                files=result.conflicts,
                reason="merge conflict",
            )
        self._logger.info(
            "integration_branch_merged",
            task_id=task_id,
            branch=branch,
            mode=mode,
            target_head=result.target_head,
        )
        return mode

    def _hunks_overlap(self, base: str, branch: str, path: str) -> bool:
        incoming = self._git.changed_line_ranges(base, branch, path)
        target = self._git.changed_line_ranges(base, self._target_branch, path)
        if not incoming or not target:
            return True
        return any(left.touches(right) for left in incoming for right in target)

    def _consult(
        self,
        resolver: ConflictResolver | None,
        conflict: ConflictDetected,
        state: OrchestrationState,
        store: StateStore,
        bus: EventBus | None,
    ) -> Resolution:
        self._logger.warning(
            "integration_conflict_detected",
            task_id=conflict.task_id,
            branch=conflict.branch,
            files=list(conflict.files),
            reason=conflict.reason,
        )
        if bus is not None:
            bus.emit(EventType.CONFLICT_DETECTED, conflict.to_dict())  # type: ignore[arg-type]
        if resolver is not None:
            try:
                return resolver.resolve(conflict)
            except Exception:
                self._persist_pending(state, store, conflict)
                raise
        self._persist_pending(state, store, conflict)
        raise conflict

    def _persist_pending(
        self, state: OrchestrationState, store: StateStore, conflict: ConflictDetected
    ) -> None:
        state.pending_conflict = conflict.to_dict()  # type: ignore[assignment]
        state.record_history("conflict_detected", task_id=conflict.task_id, branch=conflict.branch)
        store.save(state)

    def _record(
        self,
        state: OrchestrationState,
        store: StateStore,
        bus: EventBus | None,
        task_id: str,
        *,
        merged: bool,
    ) -> None:
        if merged:
            if task_id not in state.merged_task_ids:
                state.merged_task_ids.append(task_id)
            state.record_history("task_merged", task_id=task_id)
        else:
            if task_id not in state.integration_skipped_task_ids:
                state.integration_skipped_task_ids.append(task_id)
            state.record_history("task_integration_skipped", task_id=task_id)
        store.save(state)
        if bus is not None and merged:
            bus.emit(
                EventType.MERGE_COMPLETED,
                {"task_id": task_id, "branch": self.branch_for(task_id), "target": self._target_branch},
            )


def _conflict_from_payload(payload: dict[str, Any]) -> ConflictDetected:
    files = payload.get("files")
    return ConflictDetected(
        task_id=str(payload.get("task_id", "")),
        branch=str(payload.get("branch", "")),
        files=[str(item) for item in files] if isinstance(files, list) else [],
        reason=f"unresolved: {payload.get('reason', 'conflict')}",
    )


__all__ = [
    "ConflictResolver",
    "IntegrationMerger",
    "IntegrationReport",
    "Resolution",
]
