"""Guarded lifecycle phase machine for one orchestration run."""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from autodev_orchestrator.domain.errors import PhaseTransitionError
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import OrchestrationState, Phase

if TYPE_CHECKING:
    from autodev_orchestrator.observability.events import EventBus
    from autodev_orchestrator.persistence.state_store import StateStore

_FORWARD = MappingProxyType(
    {
        Phase.IDLE: frozenset({Phase.PLAN}),
        Phase.PLAN: frozenset({Phase.EXECUTE}),
        Phase.EXECUTE: frozenset({Phase.INTEGRATE}),
        Phase.INTEGRATE: frozenset({Phase.REVIEW}),
        Phase.REVIEW: frozenset({Phase.COMPLETE}),
        Phase.COMPLETE: frozenset(),
        Phase.CHECKPOINTED: frozenset(),
    }
)


class PhaseMachine:
    """
    Enforces legal phase moves on the shared state.

    Guards are passed as keyword arguments to ``transition`` and checked against
    the state where possible: EXECUTE -> INTEGRATE requires every task terminal,
    INTEGRATE -> REVIEW requires no pending conflict, REVIEW -> COMPLETE requires
    ``verified=True``. Any phase may enter CHECKPOINTED; its only exit is
    :meth:`resume`.
    """

    def __init__(
        self,
        state: OrchestrationState,
        store: StateStore,
        bus: EventBus | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._bus = bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def phase(self) -> Phase:
        return self._state.current_phase

    def can_transition(self, target: Phase) -> bool:
        current = self._state.current_phase
        if target is Phase.CHECKPOINTED:
            return current is not Phase.CHECKPOINTED
        return target in _FORWARD[current]

    def transition(self, target: Phase, *, verified: bool | None = None, reason: str = "") -> Phase:
        current = self._state.current_phase
        if not self.can_transition(target):
            raise PhaseTransitionError(f"illegal phase transition {current.value} -> {target.value}")
        self._check_guard(current, target, verified=verified)

        if target is Phase.CHECKPOINTED:
            self._state.resume_phase = current
        self._apply(current, target, reason=reason)
        return target

    def resume(self) -> Phase:
        """Leave CHECKPOINTED for the recorded ``resume_phase``."""

        current = self._state.current_phase
        if current is not Phase.CHECKPOINTED:
            raise PhaseTransitionError(f"resume requires CHECKPOINTED, current phase is {current.value}")
        target = self._state.resume_phase
        if target is None:
            raise PhaseTransitionError("checkpointed state has no resume phase recorded")
        self._state.resume_phase = None
        self._apply(current, target, reason="resume")
        return target

    def _check_guard(self, current: Phase, target: Phase, *, verified: bool | None) -> None:
        state = self._state
        if current is Phase.PLAN and target is Phase.EXECUTE and not state.tasks:
            raise PhaseTransitionError("cannot execute an empty task graph")
        if current is Phase.EXECUTE and target is Phase.INTEGRATE and not state.all_tasks_terminal():
            open_ids = [task.id for task in state.tasks.values() if not task.is_terminal]
            raise PhaseTransitionError(
                f"cannot integrate while tasks are not terminal: {', '.join(sorted(open_ids))}"
            )
        if current is Phase.INTEGRATE and target is Phase.REVIEW and state.pending_conflict is not None:
            raise PhaseTransitionError(
                f"cannot review with an unresolved conflict on task {state.pending_conflict.get('task_id')}"
            )
        if current is Phase.REVIEW and target is Phase.COMPLETE and verified is not True:
            raise PhaseTransitionError("cannot complete before final verification succeeds")

    def _apply(self, current: Phase, target: Phase, *, reason: str) -> None:
        self._state.current_phase = target
        self._state.record_history(
            "phase_changed",
            source=current.value,
            target=target.value,
            reason=reason,
        )
        self._store.save(self._state)
        payload = {"from": current.value, "to": target.value, "reason": reason}
        if self._bus is not None:
            self._bus.emit(EventType.PHASE_CHANGED, payload)
        self._logger.info("phase_changed", source=current.value, target=target.value, reason=reason)


__all__ = ["PhaseMachine"]
