"""
Unit tests for checkpoint creation, retention, verification, and the handoff signal.

Branch heads come from a fake backend, so no git repository is involved.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from autodev_orchestrator.control_plane.checkpoints import CheckpointManager, HandoffSignal
from autodev_orchestrator.domain.errors import (
    CheckpointInconsistentError,
    CheckpointNotFoundError,
    StateCorruptedError,
)
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import Phase, TaskStatus, with_status
from autodev_orchestrator.integration_plane.workspace_pool import WorkspacePool
from autodev_orchestrator.observability.events import EventBus
from autodev_orchestrator.persistence.state_store import StateStore
from tests.support import FakeWorkspaceBackend, new_state, spec

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from autodev_orchestrator.domain.models import OrchestrationState


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _Fixture:
    def __init__(self, tmp_path: Path, *, retain: int = 10, bus: EventBus | None = None) -> None:
        self.state_dir = tmp_path / ".autodev"
        self.state = new_state([spec("T1"), spec("T2"), spec("T3", "T1")])
        self.state.current_phase = Phase.EXECUTE
        self.store = StateStore(self.state_dir)
        self.backend = FakeWorkspaceBackend()
        self.bus = bus
        self.pool = WorkspacePool(self.state, self.store, self.backend, workspace_root=tmp_path / "wt")
        self.pool.init(2)
        self.manager = self.build(retain=retain)

    def build(
        self,
        *,
        retain: int = 10,
        state: OrchestrationState | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> CheckpointManager:
        return CheckpointManager(
            state if state is not None else self.state,
            self.store,
            self.state_dir,
            self.backend.branch_head,
            retain=retain,
            bus=self.bus,
            clock=clock if clock is not None else _Clock(),
        )

    def complete(self, task_id: str) -> None:
        acquisition = self.pool.acquire(task_id)
        self.pool.materialize(acquisition.slot_id)
        self.pool.finalize(acquisition.slot_id, keep=True)
        self.pool.release(acquisition.slot_id, done=True)
        self.state.put_task(with_status(self.state.task(task_id), TaskStatus.DONE))


def test_create_writes_retained_and_latest_files(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.complete("T1")

    checkpoint = fixture.manager.create("manual")

    assert checkpoint.id == "ckpt-000001-20260301T120001Z"
    assert checkpoint.completed_task_ids == ("T1",)
    assert checkpoint.pending_task_ids == ("T2", "T3")
    assert checkpoint.phase is Phase.EXECUTE
    assert checkpoint.resume_hint == f"autodev resume {checkpoint.id}"
    assert (fixture.state_dir / "checkpoints" / f"{checkpoint.id}.json").is_file()
    latest = json.loads((fixture.state_dir / "checkpoint.json").read_text(encoding="utf-8"))
    assert latest["id"] == checkpoint.id
    assert fixture.state.checkpoint_ids == [checkpoint.id]
    assert fixture.state.checkpoint_sequence == 1


def test_snapshot_records_branch_heads_of_released_slots(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.complete("T1")

    checkpoint = fixture.manager.create("manual")

    snapshot = next(item for item in checkpoint.slot_snapshots if item.branch_ref == "auto/T1")
    assert snapshot.head == "c1"
    assert snapshot.assigned_task_id is None


def test_partial_task_ids_are_marked_on_busy_slots(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    acquisition = fixture.pool.acquire("T2")
    fixture.pool.materialize(acquisition.slot_id)

    checkpoint = fixture.manager.create("handoff", partial_task_ids=["T2"])

    assert checkpoint.partial_task_ids == ("T2",)
    busy = next(item for item in checkpoint.slot_snapshots if item.slot_id == acquisition.slot_id)
    assert busy.partial is True


def test_list_is_newest_first_and_retention_archives_old_files(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path, retain=2)

    ids = [fixture.manager.create(f"c{index}").id for index in range(4)]

    assert [item.id for item in fixture.manager.list()] == [ids[3], ids[2]]
    archived = sorted(path.stem for path in (fixture.state_dir / "checkpoints" / "archive").glob("*.json"))
    assert archived == sorted(ids[:2])
    assert fixture.manager.load(ids[0]).id == ids[0]


def test_sequence_continues_from_disk_for_a_fresh_state(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.manager.create("first")
    fixture.manager.create("second")

    fresh = new_state([spec("T1")])
    manager = fixture.build(state=fresh)

    assert manager.create("third").sequence == 3


def test_load_rejects_malformed_and_unknown_ids(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)

    with pytest.raises(CheckpointNotFoundError, match="invalid checkpoint id"):
        fixture.manager.load("../state")
    with pytest.raises(CheckpointNotFoundError, match="not found"):
        fixture.manager.load("ckpt-000042-20260101T000000Z")
    with pytest.raises(CheckpointNotFoundError):
        fixture.manager.latest()


def test_corrupt_checkpoint_file_raises_state_corrupted(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    checkpoint = fixture.manager.create("manual")
    (fixture.state_dir / "checkpoints" / f"{checkpoint.id}.json").write_text("{", encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        fixture.manager.load(checkpoint.id)


def test_restore_returns_recorded_state(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.complete("T1")
    checkpoint = fixture.manager.create("manual")
    fixture.complete("T2")

    restored = fixture.manager.restore(checkpoint.id)

    assert restored.task("T1").status is TaskStatus.DONE
    assert restored.task("T2").status is TaskStatus.PENDING
    assert restored.current_phase is Phase.EXECUTE


def test_restore_refuses_when_a_branch_moved(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.complete("T1")
    checkpoint = fixture.manager.create("manual")
    fixture.backend.heads["auto/T1"] = "rewritten"

    with pytest.raises(CheckpointInconsistentError) as excinfo:
        fixture.manager.restore(checkpoint.id)

    assert excinfo.value.checkpoint_id == checkpoint.id
    assert "moved" in excinfo.value.mismatches[0]


def test_restore_refuses_when_a_recorded_branch_is_missing(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)
    fixture.complete("T1")
    fixture.manager.create("manual")
    del fixture.backend.heads["auto/T1"]

    with pytest.raises(CheckpointInconsistentError, match="missing"):
        fixture.manager.restore()


def test_auto_checkpoint_follows_task_completed_events(tmp_path: Path) -> None:
    bus = EventBus()
    fixture = _Fixture(tmp_path, bus=bus)
    fixture.manager.enable_auto_checkpoint()

    bus.emit(EventType.TASK_COMPLETED, {"task_id": "T1"})
    bus.emit(EventType.TASK_FAILED, {"task_id": "T2"})

    assert len(fixture.manager.list()) == 1
    assert fixture.manager.list()[0].reason == "task_completed:T1"

    fixture.manager.disable_auto_checkpoint()
    bus.emit(EventType.TASK_COMPLETED, {"task_id": "T2"})
    assert len(fixture.manager.list()) == 1


def test_retain_must_be_positive(tmp_path: Path) -> None:
    fixture = _Fixture(tmp_path)

    with pytest.raises(ValueError):
        fixture.build(retain=0)


# ---------------------------------------------------------------------------
# Handoff signal
# ---------------------------------------------------------------------------


def test_handoff_signal_is_written_once_and_consumed(tmp_path: Path) -> None:
    signal = HandoffSignal(tmp_path)

    assert signal.write("ckpt-000001-20260301T120001Z", reason="token_budget", token_usage={"used": 9})
    assert not signal.write("ckpt-000002-20260301T120002Z", reason="token_budget", token_usage={})

    record = signal.read()
    assert record is not None
    assert record.checkpoint_id == "ckpt-000001-20260301T120001Z"
    assert record.token_usage == {"used": 9}

    consumed = signal.consume()
    assert consumed == record
    assert signal.read() is None
    assert signal.consume() is None


def test_handoff_signal_rejects_garbage(tmp_path: Path) -> None:
    signal = HandoffSignal(tmp_path)
    signal.path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        signal.read()
