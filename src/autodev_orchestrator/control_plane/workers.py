"""Worker contract between the scheduler and whatever performs a task."""

from __future__ import annotations

import asyncio
import os
import re
import shlex
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from autodev_orchestrator.domain.models import ErrorKind, EscalationLevel, TaskSpec

EX_UNAVAILABLE = 69
EX_TEMPFAIL = 75

_TOKENS_RE = re.compile(r"^AUTODEV_TOKENS_USED=(\d+)\s*$", re.MULTILINE)
_MAX_OUTPUT_CHARS = 4000


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    """Everything a worker needs for one attempt."""

    task: TaskSpec
    attempt: int
    level: EscalationLevel = EscalationLevel.RETRY
    strategy_hint: str | None = None
    research_context: str | None = None

    def __post_init__(self) -> None:
        if self.attempt < 1:
            raise ValueError("DispatchRequest.attempt: must be >= 1")

    def to_dict(self) -> dict[str, object]:
        return {
            "task": self.task.to_dict(),
            "attempt": self.attempt,
            "level": self.level.value,
            "strategy_hint": self.strategy_hint,
            "research_context": self.research_context,
        }


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """Outcome of one worker attempt; build with ``approved`` or ``rejected``."""

    ok: bool
    evidence: str | None = None
    reason: str | None = None
    error_kind: ErrorKind | None = None
    tokens_used: int = 0
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.tokens_used < 0:
            raise ValueError("WorkerResult.tokens_used: must be >= 0")
        if self.ok and self.error_kind is not None:
            raise ValueError("WorkerResult.error_kind: must be None for approved results")
        if not self.ok and self.error_kind is None:
            object.__setattr__(self, "error_kind", ErrorKind.LOGIC)

    @classmethod
    def approved(cls, evidence: str, tokens_used: int = 0, **metadata: object) -> WorkerResult:
        return cls(ok=True, evidence=evidence, tokens_used=tokens_used, metadata=metadata)

    @classmethod
    def rejected(
        cls,
        reason: str,
        error_kind: ErrorKind = ErrorKind.LOGIC,
        tokens_used: int = 0,
        **metadata: object,
    ) -> WorkerResult:
        return cls(
            ok=False,
            reason=reason,
            error_kind=error_kind,
            tokens_used=tokens_used,
            metadata=metadata,
        )


@runtime_checkable
class Worker(Protocol):
    """Performs one attempt of a task inside an isolated workspace."""

    async def run(self, workspace_path: Path, request: DispatchRequest) -> WorkerResult: ...


class CommandWorker:
    """
    Runs an external command inside the workspace for each attempt.

    The task is described through ``AUTODEV_*`` environment variables. Exit status
    0 approves the attempt, 75 (``EX_TEMPFAIL``) is transient, 69
    (``EX_UNAVAILABLE``) is a resource failure, anything else is a logic failure.
    A stdout line ``AUTODEV_TOKENS_USED=<n>`` reports token consumption.
    """

    def __init__(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        argv = tuple(shlex.split(command))
        if not argv:
            raise ValueError("worker command must not be empty")
        self._argv = argv
        self._env = dict(env or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def argv(self) -> tuple[str, ...]:
        return self._argv

    def build_env(self, workspace_path: Path, request: DispatchRequest) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        task = request.task
        env.update(
            {
                "AUTODEV_WORKSPACE": str(workspace_path),
                "AUTODEV_TASK_ID": task.id,
                "AUTODEV_TASK_DESCRIPTION": task.description,
                "AUTODEV_TASK_FILES": "\n".join(task.files),
                "AUTODEV_TASK_DEPENDS_ON": ",".join(task.depends_on),
                "AUTODEV_VERIFICATION_COMMAND": task.verification_command or "",
                "AUTODEV_ATTEMPT": str(request.attempt),
                "AUTODEV_LEVEL": request.level.value,
                "AUTODEV_STRATEGY_HINT": request.strategy_hint or "",
                "AUTODEV_RESEARCH_CONTEXT": request.research_context or "",
            }
        )
        return env

    async def run(self, workspace_path: Path, request: DispatchRequest) -> WorkerResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv,
                cwd=str(workspace_path),
                env=self.build_env(workspace_path, request),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return WorkerResult.rejected(
                f"unable to start worker command {self._argv[0]!r}: {exc}",
                ErrorKind.RESOURCE,
            )

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.communicate()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        tokens = sum(int(match) for match in _TOKENS_RE.findall(stdout))
        exit_code = process.returncode
        self._logger.debug(
            "worker_command_finished",
            task_id=request.task.id,
            attempt=request.attempt,
            exit_code=exit_code,
            tokens_used=tokens,
        )

        if exit_code == 0:
            evidence = _tail(stdout) or f"{shlex.join(self._argv)} exited 0"
            return WorkerResult.approved(evidence, tokens_used=tokens, exit_code=exit_code)

        kind = _classify_exit(exit_code)
        detail = _tail(stderr) or _tail(stdout) or "no output"
        return WorkerResult.rejected(
            f"worker exited with status {exit_code}: {detail}",
            kind,
            tokens_used=tokens,
            exit_code=exit_code,
        )


def _classify_exit(exit_code: int | None) -> ErrorKind:
    if exit_code == EX_TEMPFAIL:
        return ErrorKind.TRANSIENT
    if exit_code == EX_UNAVAILABLE:
        return ErrorKind.RESOURCE
    return ErrorKind.LOGIC


def _tail(text: str) -> str:
    cleaned = _TOKENS_RE.sub("", text).strip()
    if len(cleaned) > _MAX_OUTPUT_CHARS:
        return "..." + cleaned[-(_MAX_OUTPUT_CHARS - 3) :]
    return cleaned


__all__ = [
    "CommandWorker",
    "DispatchRequest",
    "EX_TEMPFAIL",
    "EX_UNAVAILABLE",
    "Worker",
    "WorkerResult",
]
