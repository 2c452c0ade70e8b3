"""Filesystem and async helpers with no orchestration knowledge."""

from autodev_orchestrator.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
    sleep_unless_cancelled,
)
from autodev_orchestrator.utils.fs import (
    atomic_write,
    atomic_write_json,
    exclusive_create,
    is_within,
    read_json,
    safe_delete,
)

__all__ = [
    "CancellationToken",
    "atomic_write",
    "atomic_write_json",
    "exclusive_create",
    "is_within",
    "read_json",
    "run_with_timeout",
    "safe_delete",
    "sleep_unless_cancelled",
]
