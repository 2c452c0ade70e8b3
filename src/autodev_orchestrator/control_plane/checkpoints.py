"""
Checkpoint persistence, retention, and consistency-checked restore.

Layout under the state directory::

    checkpoint.json                    latest checkpoint (well-known path)
    checkpoints/<id>.json              retained checkpoints
    checkpoints/archive/<id>.json      checkpoints past the retention window
    handoff.json                       handoff signal for the next session

Checkpoints capture branch HEADs, never workspace content; content lives in git.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from autodev_orchestrator.constants import (
    CHECKPOINT_ARCHIVE_DIR_NAME,
    CHECKPOINTS_DIR_NAME,
    DEFAULT_CHECKPOINT_RETAIN,
    HANDOFF_SIGNAL_FILE_NAME,
    HANDOFF_SIGNAL_SCHEMA_VERSION,
    LATEST_CHECKPOINT_FILE_NAME,
)
from autodev_orchestrator.domain.errors import (
    CheckpointInconsistentError,
    CheckpointNotFoundError,
    StateCorruptedError,
)
from autodev_orchestrator.domain.events import EventType, OrchestratorEvent
from autodev_orchestrator.domain.models import (
    Checkpoint,
    OrchestrationState,
    SlotSnapshot,
    TaskStatus,
    utc_now,
)
from autodev_orchestrator.utils.fs import atomic_write_json, exclusive_create, read_json

if TYPE_CHECKING:
    from autodev_orchestrator.observability.events import EventBus
    from autodev_orchestrator.persistence.state_store import StateStore

HeadResolver = Callable[[str], str | None]

_CHECKPOINT_ID_RE = re.compile(r"^ckpt-(\d{6,})-\d{8}T\d{6}Z$")


class CheckpointManager:
    """Creates, lists, and restores checkpoints for one state directory."""

    def __init__(
        self,
        state: OrchestrationState,
        store: StateStore,
        state_dir: str | Path,
        head_resolver: HeadResolver,
        *,
        retain: int = DEFAULT_CHECKPOINT_RETAIN,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if retain < 1:
            raise ValueError("retain must be >= 1")
        self._state = state
        self._store = store
        self._state_dir = Path(state_dir)
        self._head_resolver = head_resolver
        self._retain = retain
        self._bus = bus
        self._clock = clock
        self._subscription: int | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def checkpoints_dir(self) -> Path:
        return self._state_dir / CHECKPOINTS_DIR_NAME

    @property
    def archive_dir(self) -> Path:
        return self.checkpoints_dir / CHECKPOINT_ARCHIVE_DIR_NAME

    @property
    def latest_path(self) -> Path:
        return self._state_dir / LATEST_CHECKPOINT_FILE_NAME

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        reason: str,
        *,
        partial_task_ids: Iterable[str] = (),
        partial_slots: Mapping[str, str] | None = None,
    ) -> Checkpoint:
        """Snapshot the current state and slot heads, then apply retention.

        ``partial_slots`` maps slot id to the task that was cancelled in it; such
        slots are already released, so the task id is recorded from the mapping.
        """

        state = self._state
        partial_by_slot = dict(partial_slots or {})
        partial = tuple(dict.fromkeys([*partial_task_ids, *partial_by_slot.values()]))
        sequence = max(state.checkpoint_sequence, self._highest_sequence_on_disk()) + 1
        created_at = self._clock()
        checkpoint_id = f"ckpt-{sequence:06d}-{created_at.strftime('%Y%m%dT%H%M%SZ')}"

        snapshots = tuple(self._snapshot_slot(slot.id, partial, partial_by_slot) for slot in state.slots)

        state.checkpoint_sequence = sequence
        state.checkpoint_ids.append(checkpoint_id)
        state.record_history("checkpoint_created", checkpoint_id=checkpoint_id, reason=reason)

        checkpoint = Checkpoint(
            id=checkpoint_id,
            sequence=sequence,
            created_at=created_at,
            reason=reason,
            phase=state.current_phase,
            completed_task_ids=state.task_ids_with_status(TaskStatus.DONE),
            pending_task_ids=state.task_ids_with_status(TaskStatus.PENDING, TaskStatus.ASSIGNED),
            failed_task_ids=state.task_ids_with_status(TaskStatus.FAILED),
            skipped_task_ids=state.task_ids_with_status(TaskStatus.SKIPPED),
            partial_task_ids=partial,
            slot_snapshots=snapshots,
            token_usage=state.token_budget.to_dict(),
            resume_hint=f"autodev resume {checkpoint_id}",
            state=state.to_dict(),
        )
        payload = checkpoint.to_dict()
        atomic_write_json(self.checkpoints_dir / f"{checkpoint_id}.json", payload)
        atomic_write_json(self.latest_path, payload)
        self._store.save(state)
        archived = self._apply_retention()

        if self._bus is not None:
            self._bus.emit(
                EventType.CHECKPOINT_CREATED,
                {"checkpoint_id": checkpoint_id, "reason": reason, "phase": state.current_phase.value},
            )
        self._logger.info(
            "checkpoint_created",
            checkpoint_id=checkpoint_id,
            reason=reason,
            phase=state.current_phase.value,
            partial=list(partial),
            archived=len(archived),
        )
        return checkpoint

    def enable_auto_checkpoint(self) -> None:
        """Checkpoint after every ``task_completed`` event on the bus."""

        if self._bus is None or self._subscription is not None:
            return
        self._subscription = self._bus.subscribe(EventType.TASK_COMPLETED, self._on_task_completed)

    def disable_auto_checkpoint(self) -> None:
        if self._bus is not None and self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
        self._subscription = None

    def _on_task_completed(self, event: OrchestratorEvent) -> None:
        self.create(f"task_completed:{event.payload.get('task_id')}")

    # ------------------------------------------------------------------
    # Lookup and restore
    # ------------------------------------------------------------------

    def list(self) -> tuple[Checkpoint, ...]:
        """Retained (non-archived) checkpoints, newest first."""

        if not self.checkpoints_dir.is_dir():
            return ()
        items = [self._read(path) for path in self.checkpoints_dir.glob("ckpt-*.json")]
        return tuple(sorted(items, key=lambda item: item.sequence, reverse=True))

    def load(self, checkpoint_id: str) -> Checkpoint:
        if _CHECKPOINT_ID_RE.match(checkpoint_id) is None:
            raise CheckpointNotFoundError(f"invalid checkpoint id: {checkpoint_id!r}")
        for candidate in (
            self.checkpoints_dir / f"{checkpoint_id}.json",
            self.archive_dir / f"{checkpoint_id}.json",
        ):
            if candidate.is_file():
                return self._read(candidate)
        raise CheckpointNotFoundError(f"checkpoint {checkpoint_id} not found under {self.checkpoints_dir}")

    def latest(self) -> Checkpoint:
        if not self.latest_path.is_file():
            raise CheckpointNotFoundError(f"no checkpoint recorded under {self._state_dir}")
        return self._read(self.latest_path)

    def verify(self, checkpoint: Checkpoint) -> tuple[str, ...]:
        """Compare recorded branch heads with the repository; returns mismatches."""

        mismatches: list[str] = []
        for snapshot in checkpoint.slot_snapshots:
            if snapshot.branch_ref is None:
                continue
            head = self._head_resolver(snapshot.branch_ref)
            if head is None:
                if snapshot.head is not None:
                    mismatches.append(f"{snapshot.slot_id}: branch {snapshot.branch_ref} is missing")
                continue
            if snapshot.head is not None and head != snapshot.head:
                mismatches.append(
                    f"{snapshot.slot_id}: branch {snapshot.branch_ref} moved "
                    f"from {snapshot.head[:12]} to {head[:12]}"
                )
        return tuple(mismatches)

    def restore(self, checkpoint_id: str | None = None) -> OrchestrationState:
        """
        Load ``checkpoint_id`` (latest when ``None``) and return its recorded state.

        Raises ``CheckpointInconsistentError`` without touching anything when any
        recorded branch head no longer matches the repository.
        """
        checkpoint = self.latest() if checkpoint_id is None else self.load(checkpoint_id)
        mismatches = self.verify(checkpoint)
        if mismatches:
            self._logger.error(
                "checkpoint_inconsistent",
                checkpoint_id=checkpoint.id,
                mismatches=list(mismatches),
            )
            raise CheckpointInconsistentError(checkpoint.id, mismatches)
        state = checkpoint.restore_state()
        self._logger.info(
            "checkpoint_restored",
            checkpoint_id=checkpoint.id,
            phase=checkpoint.phase.value,
            session_index=state.session_index,
        )
        return state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot_slot(
        self, slot_id: str, partial: tuple[str, ...], partial_by_slot: Mapping[str, str]
    ) -> SlotSnapshot:
        slot = self._state.slot(slot_id)
        if slot_id in partial_by_slot:
            task_id: str | None = partial_by_slot[slot_id]
        else:
            task_id = slot.assigned_task_id
        branch = slot.branch_ref or slot.last_branch_ref
        head = self._head_resolver(branch) if branch is not None else None
        return SlotSnapshot(
            slot_id=slot.id,
            status=slot.status,
            path=slot.path,
            branch_ref=branch,
            head=head,
            assigned_task_id=task_id,
            partial=task_id in partial if task_id else False,
        )

    def _apply_retention(self) -> tuple[str, ...]:
        retained = sorted(
            self.checkpoints_dir.glob("ckpt-*.json"),
            key=lambda path: _sequence_of(path.stem),
            reverse=True,
        )
        archived: list[str] = []
        for path in retained[self._retain :]:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            os.replace(path, self.archive_dir / path.name)
            archived.append(path.stem)
        if archived:
            self._logger.debug("checkpoints_archived", checkpoint_ids=archived)
        return tuple(archived)

    def _highest_sequence_on_disk(self) -> int:
        highest = 0
        for directory in (self.checkpoints_dir, self.archive_dir):
            if not directory.is_dir():
                continue
            for path in directory.glob("ckpt-*.json"):
                highest = max(highest, _sequence_of(path.stem))
        return highest

    @staticmethod
    def _read(path: Path) -> Checkpoint:
        try:
            payload = read_json(path)
            return Checkpoint.from_dict(payload)
        except (OSError, json.JSONDecodeError, ValueError, KeyError, TypeError) as exc:
            raise StateCorruptedError(f"checkpoint file {path} is invalid: {exc}") from exc


def _sequence_of(checkpoint_id: str) -> int:
    match = _CHECKPOINT_ID_RE.match(checkpoint_id)
    return int(match.group(1)) if match else 0


# ---------------------------------------------------------------------------
# Handoff signal
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HandoffRecord:
    checkpoint_id: str
    reason: str
    token_usage: dict[str, object]
    created_at: str
    pid: int
    schema_version: int = HANDOFF_SIGNAL_SCHEMA_VERSION

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "checkpoint_id": self.checkpoint_id,
            "reason": self.reason,
            "token_usage": dict(self.token_usage),
            "created_at": self.created_at,
            "pid": self.pid,
        }


class HandoffSignal:
    """Well-known ``handoff.json`` telling the next session where to resume."""

    def __init__(self, state_dir: str | Path, *, logger: Any | None = None) -> None:
        self._path = Path(state_dir) / HANDOFF_SIGNAL_FILE_NAME
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def write(
        self,
        checkpoint_id: str,
        *,
        reason: str,
        token_usage: dict[str, object],
        created_at: datetime | None = None,
    ) -> bool:
        """Create the signal once; returns ``False`` when one is already pending."""

        record = HandoffRecord(
            checkpoint_id=checkpoint_id,
            reason=reason,
            token_usage=token_usage,
            created_at=(created_at or utc_now()).isoformat(),
            pid=os.getpid(),
        )
        text = json.dumps(record.to_dict(), sort_keys=True, indent=2) + "\n"
        written = exclusive_create(self._path, text)
        if written:
            self._logger.info("handoff_signal_written", checkpoint_id=checkpoint_id, reason=reason)
        else:
            self._logger.debug("handoff_signal_exists", path=str(self._path))
        return written

    def read(self) -> HandoffRecord | None:
        if not self._path.is_file():
            return None
        try:
            payload = read_json(self._path)
        except (OSError, json.JSONDecodeError) as exc:
            raise StateCorruptedError(f"handoff signal {self._path} is invalid: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateCorruptedError(f"handoff signal {self._path} must contain a JSON object")
        usage = payload.get("token_usage")
        return HandoffRecord(
            checkpoint_id=str(payload.get("checkpoint_id", "")),
            reason=str(payload.get("reason", "")),
            token_usage=dict(usage) if isinstance(usage, dict) else {},
            created_at=str(payload.get("created_at", "")),
            pid=int(payload.get("pid", 0)),
            schema_version=int(payload.get("schema_version", HANDOFF_SIGNAL_SCHEMA_VERSION)),
        )

    def consume(self) -> HandoffRecord | None:
        """Read and remove the signal."""

        record = self.read()
        if record is not None:
            self._path.unlink(missing_ok=True)
            self._logger.info("handoff_signal_consumed", checkpoint_id=record.checkpoint_id)
        return record


__all__ = [
    "CheckpointManager",
    "HandoffRecord",
    "HandoffSignal",
    "HeadResolver",
]
