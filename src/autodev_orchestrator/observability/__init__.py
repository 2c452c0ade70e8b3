"""Public observability primitives: structured logging and event streaming."""

from autodev_orchestrator.observability.events import DispatchError, EventBus, Subscriber
from autodev_orchestrator.observability.logging import (
    correlation_scope,
    redact,
    redact_event_dict,
    setup_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "Subscriber",
    "correlation_scope",
    "redact",
    "redact_event_dict",
    "setup_logging",
]
