"""
Unit tests for the in-process event bus.

Coverage:
- subscription order and type filtering
- subscriber exception isolation
- bounded replay buffer with filtered, limited history
"""

from __future__ import annotations

import pytest

from autodev_orchestrator.domain.events import EventType, OrchestratorEvent
from autodev_orchestrator.observability.events import EventBus


def test_subscribers_receive_events_in_publish_order() -> None:
    bus = EventBus(buffer_size=10)
    seen_a: list[int] = []
    seen_b: list[int] = []
    bus.subscribe(None, lambda event: seen_a.append(event.sequence))
    bus.subscribe(None, lambda event: seen_b.append(event.sequence))

    for index in range(3):
        bus.emit(EventType.TASK_ASSIGNED, {"task_id": f"T{index}"})

    assert seen_a == [1, 2, 3]
    assert seen_b == [1, 2, 3]


def test_typed_subscription_filters_other_events() -> None:
    bus = EventBus()
    completed: list[str] = []
    bus.subscribe(EventType.TASK_COMPLETED, lambda event: completed.append(str(event.payload["task_id"])))

    bus.emit(EventType.TASK_FAILED, {"task_id": "T1"})
    bus.emit("task_completed", {"task_id": "T2"})

    assert completed == ["T2"]


def test_failing_subscriber_is_isolated() -> None:
    bus = EventBus()
    delivered: list[int] = []

    def broken(event: OrchestratorEvent) -> None:
        raise RuntimeError("subscriber exploded")

    bus.subscribe(None, broken)
    bus.subscribe(None, lambda event: delivered.append(event.sequence))

    errors = bus.publish(OrchestratorEvent(event_type=EventType.CHECKPOINT_CREATED))

    assert delivered == [1]
    assert len(errors) == 1
    assert errors[0].error_type == "RuntimeError"
    assert errors[0].message == "subscriber exploded"
    assert errors[0].target.endswith("broken")
    assert bus.dispatch_errors() == errors


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[int] = []
    token = bus.subscribe(None, lambda event: seen.append(event.sequence))

    bus.emit(EventType.SLOT_ACQUIRED)
    assert bus.unsubscribe(token)
    assert not bus.unsubscribe(token)
    bus.emit(EventType.SLOT_RELEASED)

    assert seen == [1]


def test_history_is_bounded_filtered_and_limited() -> None:
    bus = EventBus(buffer_size=3)
    bus.emit(EventType.TASK_ASSIGNED, {"task_id": "T1"})
    bus.emit(EventType.TASK_COMPLETED, {"task_id": "T1"})
    bus.emit(EventType.TASK_ASSIGNED, {"task_id": "T2"})
    bus.emit(EventType.TASK_ASSIGNED, {"task_id": "T3"})

    assert [event.sequence for event in bus.history()] == [2, 3, 4]
    assert [event.payload["task_id"] for event in bus.history(EventType.TASK_ASSIGNED)] == ["T2", "T3"]
    assert [event.sequence for event in bus.history(limit=1)] == [4]
    assert bus.history(limit=0) == ()


def test_emit_returns_the_sequenced_event() -> None:
    bus = EventBus()

    first = bus.emit(EventType.PHASE_CHANGED, {"from": "IDLE", "to": "PLAN"})
    second = bus.emit(EventType.PHASE_CHANGED, {"from": "PLAN", "to": "EXECUTE"})

    assert (first.sequence, second.sequence) == (1, 2)
    assert second.payload["to"] == "EXECUTE"


@pytest.mark.parametrize("size", [0, -1, True])
def test_invalid_buffer_size(size: object) -> None:
    with pytest.raises(ValueError):
        EventBus(buffer_size=size)  # type: ignore[arg-type]


def test_non_callable_subscriber_is_rejected() -> None:
    with pytest.raises(ValueError, match="callable"):
        EventBus().subscribe(None, "not callable")  # type: ignore[arg-type]
