"""Domain event definitions and serialization."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class EventType(StrEnum):
    """Lifecycle events emitted by the orchestrator."""

    PHASE_CHANGED = "phase_changed"

    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    TASK_REQUEUED = "task_requeued"
    TASK_STUCK = "task_stuck"

    SLOT_ACQUIRED = "slot_acquired"
    SLOT_RELEASED = "slot_released"

    CHECKPOINT_CREATED = "checkpoint_created"
    CONTEXT_COMPRESSION_HINT = "context_compression_hint"
    HANDOFF_REQUESTED = "handoff_requested"

    MERGE_COMPLETED = "merge_completed"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    VERIFICATION_COMPLETED = "verification_completed"


@dataclass(frozen=True, slots=True)
class OrchestratorEvent:
    """Serializable event envelope; ``sequence`` is assigned by the bus."""

    event_type: EventType
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    sequence: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.event_type, EventType):
            try:
                object.__setattr__(self, "event_type", EventType(self.event_type))
            except ValueError as exc:
                raise ValueError(f"OrchestratorEvent.event_type: unknown {self.event_type!r}") from exc
        if self.sequence < 0:
            raise ValueError("OrchestratorEvent.sequence: must be >= 0")
        if self.created_at.tzinfo is None:
            raise ValueError("OrchestratorEvent.created_at: must be timezone-aware")
        object.__setattr__(self, "payload", dict(self.payload))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_type": self.event_type.value,
            "payload": dict(self.payload),
            "created_at": self.created_at.astimezone(UTC).isoformat(),
            "sequence": self.sequence,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OrchestratorEvent:
        if not isinstance(data, Mapping):
            raise ValueError(f"OrchestratorEvent: expected object, got {type(data).__name__}")
        payload = data.get("payload", {})
        if not isinstance(payload, Mapping):
            raise ValueError("OrchestratorEvent.payload: expected object")
        created_raw = data.get("created_at")
        if not isinstance(created_raw, str):
            raise ValueError("OrchestratorEvent.created_at: expected ISO string")
        sequence = data.get("sequence", 0)
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise ValueError("OrchestratorEvent.sequence: expected integer")
        return cls(
            event_type=EventType(str(data.get("event_type"))),
            payload=dict(payload),  # type: ignore[arg-type]
            created_at=datetime.fromisoformat(created_raw),
            sequence=sequence,
        )


__all__ = ["EventType", "JSONScalar", "JSONValue", "OrchestratorEvent"]
