"""Unit tests for guarded phase transitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from autodev_orchestrator.control_plane.phases import PhaseMachine
from autodev_orchestrator.domain.errors import PhaseTransitionError
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import Phase, TaskStatus, with_status
from autodev_orchestrator.observability.events import EventBus
from autodev_orchestrator.persistence.state_store import StateStore
from tests.support import new_state, spec

if TYPE_CHECKING:
    from pathlib import Path

    from autodev_orchestrator.domain.models import OrchestrationState


def _machine(tmp_path: Path, *task_ids: str) -> tuple[PhaseMachine, OrchestrationState, StateStore, EventBus]:
    state = new_state([spec(task_id) for task_id in task_ids])
    store = StateStore(tmp_path)
    bus = EventBus()
    return PhaseMachine(state, store, bus), state, store, bus


def _finish_all(state: OrchestrationState) -> None:
    for task_id in list(state.tasks):
        state.put_task(with_status(state.task(task_id), TaskStatus.DONE))


def test_full_forward_walk_persists_and_emits(tmp_path: Path) -> None:
    machine, state, store, bus = _machine(tmp_path, "T1")

    machine.transition(Phase.PLAN)
    machine.transition(Phase.EXECUTE)
    _finish_all(state)
    machine.transition(Phase.INTEGRATE)
    machine.transition(Phase.REVIEW)
    machine.transition(Phase.COMPLETE, verified=True)

    assert machine.phase is Phase.COMPLETE
    persisted = store.load()
    assert persisted is not None
    assert persisted.current_phase is Phase.COMPLETE
    changes = [(event.payload["from"], event.payload["to"]) for event in bus.history(EventType.PHASE_CHANGED)]
    assert changes == [
        ("IDLE", "PLAN"),
        ("PLAN", "EXECUTE"),
        ("EXECUTE", "INTEGRATE"),
        ("INTEGRATE", "REVIEW"),
        ("REVIEW", "COMPLETE"),
    ]


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (Phase.IDLE, Phase.EXECUTE),
        (Phase.PLAN, Phase.INTEGRATE),
        (Phase.EXECUTE, Phase.PLAN),
        (Phase.COMPLETE, Phase.IDLE),
        (Phase.CHECKPOINTED, Phase.EXECUTE),
    ],
)
def test_illegal_transitions_are_rejected(tmp_path: Path, start: Phase, target: Phase) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1")
    state.current_phase = start

    with pytest.raises(PhaseTransitionError, match="illegal phase transition"):
        machine.transition(target)
    assert state.current_phase is start


def test_execute_requires_tasks(tmp_path: Path) -> None:
    machine, _, _, _ = _machine(tmp_path)
    machine.transition(Phase.PLAN)

    with pytest.raises(PhaseTransitionError, match="empty task graph"):
        machine.transition(Phase.EXECUTE)


def test_integrate_requires_every_task_terminal(tmp_path: Path) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1", "T2")
    state.current_phase = Phase.EXECUTE
    state.put_task(with_status(state.task("T1"), TaskStatus.DONE))

    with pytest.raises(PhaseTransitionError, match="T2"):
        machine.transition(Phase.INTEGRATE)


def test_review_requires_no_pending_conflict(tmp_path: Path) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1")
    state.current_phase = Phase.INTEGRATE
    state.pending_conflict = {"task_id": "T1", "files": ["a.txt"]}

    with pytest.raises(PhaseTransitionError, match="unresolved conflict"):
        machine.transition(Phase.REVIEW)


def test_complete_requires_verification(tmp_path: Path) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1")
    state.current_phase = Phase.REVIEW

    with pytest.raises(PhaseTransitionError, match="verification"):
        machine.transition(Phase.COMPLETE)
    with pytest.raises(PhaseTransitionError):
        machine.transition(Phase.COMPLETE, verified=False)


def test_checkpointed_round_trip_returns_to_recorded_phase(tmp_path: Path) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1")
    state.current_phase = Phase.EXECUTE

    machine.transition(Phase.CHECKPOINTED, reason="token budget handoff")
    assert state.resume_phase is Phase.EXECUTE
    assert not machine.can_transition(Phase.CHECKPOINTED)

    assert machine.resume() is Phase.EXECUTE
    assert state.current_phase is Phase.EXECUTE
    assert state.resume_phase is None


def test_resume_outside_checkpointed_is_rejected(tmp_path: Path) -> None:
    machine, _, _, _ = _machine(tmp_path, "T1")

    with pytest.raises(PhaseTransitionError, match="requires CHECKPOINTED"):
        machine.resume()


def test_transitions_are_recorded_in_history(tmp_path: Path) -> None:
    machine, state, _, _ = _machine(tmp_path, "T1")

    machine.transition(Phase.PLAN, reason="graph received")

    entry = state.history[-1]
    assert entry["event"] == "phase_changed"
    assert entry["source"] == "IDLE"
    assert entry["target"] == "PLAN"
    assert entry["reason"] == "graph received"
