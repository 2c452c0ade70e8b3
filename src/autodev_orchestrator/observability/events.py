"""In-process event bus with a bounded replay buffer."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from autodev_orchestrator.domain.events import EventType, JSONValue, OrchestratorEvent

Subscriber = Callable[[OrchestratorEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting publishers."""

    event_type: str
    sequence: int
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: EventType | None
    callback: Subscriber


class EventBus:
    """Synchronous event bus; subscribers run in subscription order."""

    def __init__(self, *, buffer_size: int = 512, logger: Any | None = None) -> None:
        if not isinstance(buffer_size, int) or isinstance(buffer_size, bool):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")

        self._buffer = deque[OrchestratorEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._next_sequence = 1
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Subscribe callback to an event type or all events when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = EventType(event_type) if event_type is not None else None
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token, event_type=normalized, callback=callback
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        """Unsubscribe callback token. Returns ``True`` when token existed."""

        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: OrchestratorEvent) -> tuple[DispatchError, ...]:
        """Assign a sequence number, buffer the event, and dispatch to subscribers."""

        if not isinstance(event, OrchestratorEvent):
            raise ValueError(f"event must be OrchestratorEvent, got {type(event).__name__}")
        with self._lock:
            sequenced = OrchestratorEvent(
                event_type=event.event_type,
                payload=event.payload,
                created_at=event.created_at,
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
            self._buffer.append(sequenced)
            subscriptions = tuple(self._subscriptions.values())

        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if subscription.event_type is not None and subscription.event_type != sequenced.event_type:
                continue
            try:
                subscription.callback(sequenced)
            except Exception as exc:  # noqa: BLE001
                error = DispatchError(
                    event_type=sequenced.event_type.value,
                    sequence=sequenced.sequence,
                    target=_callback_name(subscription.callback),
                    error_type=type(exc).__name__,
                    message=str(exc),
                )
                self._logger.warning(
                    "event_subscriber_failed",
                    event_type=error.event_type,
                    target=error.target,
                    error_type=error.error_type,
                    error=error.message,
                )
                errors.append(error)

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, JSONValue] | None = None,
    ) -> OrchestratorEvent:
        """Create and publish an event; returns the sequenced event."""

        self.publish(OrchestratorEvent(event_type=EventType(event_type), payload=dict(payload or {})))
        with self._lock:
            return self._buffer[-1]

    def history(
        self,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[OrchestratorEvent, ...]:
        """Replay buffered events in publish order, optionally filtered and limited."""

        type_filter = EventType(event_type) if event_type is not None else None
        with self._lock:
            events = tuple(self._buffer)
        filtered = [event for event in events if type_filter is None or event.event_type == type_filter]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)


def _callback_name(callback: Callable[..., object]) -> str:
    qualname = getattr(callback, "__qualname__", None)
    if isinstance(qualname, str):
        return qualname
    return type(callback).__name__


__all__ = ["DispatchError", "EventBus", "Subscriber"]
