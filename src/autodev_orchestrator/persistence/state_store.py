"""
Durable JSON store for the single orchestration state record.

``save`` writes ``<state_dir>/state.json`` atomically (temp file, fsync,
``os.replace``, directory fsync); a crash mid-write leaves the previous state
intact. Callers save after every task, slot, or phase mutation.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import structlog

from autodev_orchestrator.constants import STATE_FILE_NAME
from autodev_orchestrator.domain.errors import StateCorruptedError
from autodev_orchestrator.domain.models import OrchestrationState
from autodev_orchestrator.utils.fs import atomic_write_json


class StateStore:
    """Owns ``state.json`` under one state directory."""

    def __init__(self, state_dir: str | Path, *, logger: Any | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._path = self._state_dir / STATE_FILE_NAME
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._saves = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def save_count(self) -> int:
        return self._saves

    def exists(self) -> bool:
        return self._path.is_file()

    def save(self, state: OrchestrationState) -> None:
        payload = state.to_dict()
        with self._lock:
            atomic_write_json(self._path, payload)
            self._saves += 1
        self._logger.debug(
            "state_saved",
            path=str(self._path),
            phase=state.current_phase.value,
            session_index=state.session_index,
        )

    def load(self) -> OrchestrationState | None:
        """Return the persisted state, ``None`` when absent; corrupt files raise."""

        with self._lock:
            if not self._path.exists():
                return None
            try:
                raw = self._path.read_text(encoding="utf-8")
            except OSError as exc:
                raise StateCorruptedError(f"unable to read {self._path}: {exc}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorruptedError(f"state file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateCorruptedError(f"state file {self._path} must contain a JSON object")
        try:
            return OrchestrationState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateCorruptedError(f"state file {self._path} is invalid: {exc}") from exc

    def require(self) -> OrchestrationState:
        state = self.load()
        if state is None:
            raise StateCorruptedError(
                f"no orchestration state at {self._path}; run 'autodev init' first"
            )
        return state


__all__ = ["StateStore"]
