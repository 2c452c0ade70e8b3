"""
Failure escalation ladder: Retry -> Pivot -> Research -> Ask.

Each logic failure increments the counter of the task's current level; reaching
the level maximum moves the record one level up with counters reset. Entering
Pivot consults an :class:`AlternativeFinder` for a strategy hint, entering
Research consults a :class:`ContextGatherer`. Ask is terminal and produces a
:class:`StuckReport`.

Transient failures never cost escalation budget until ``transient_max`` is
exceeded; resource failures fail the task immediately.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

from autodev_orchestrator.config.settings import EscalationSettings
from autodev_orchestrator.domain.models import (
    ErrorKind,
    EscalationLevel,
    FailureRecord,
    StuckReport,
    Task,
    TaskSpec,
    TaskStatus,
    utc_now,
)
from autodev_orchestrator.utils.fs import atomic_write

_MAX_ATTEMPT_HISTORY = 50
_MAX_ERROR_CHARS = 2000
_JITTER_FRACTION = 0.25


class EscalationAction(StrEnum):
    RETRY = "retry"
    PIVOT = "pivot"
    RESEARCH = "research"
    REQUEUE_TRANSIENT = "requeue_transient"
    GIVE_UP = "give_up"


class AlternativeFinder(Protocol):
    """Suggests a different approach once plain retries are exhausted."""

    def find_alternative(self, task: TaskSpec, record: FailureRecord) -> str | None: ...


class ContextGatherer(Protocol):
    """Collects extra context (docs, prior art) for the research level."""

    def gather(self, task: TaskSpec, record: FailureRecord) -> str | None: ...


class LearningStore(Protocol):
    """Receives findings from tasks that succeeded after research."""

    def record_finding(
        self,
        task_id: str,
        *,
        context: str | None,
        record: FailureRecord,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    action: EscalationAction
    record: FailureRecord
    strategy_hint: str | None = None
    research_context: str | None = None
    delay_seconds: float = 0.0
    stuck_report: StuckReport | None = None

    @property
    def is_terminal(self) -> bool:
        return self.action is EscalationAction.GIVE_UP

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "record": self.record.to_dict(),
            "strategy_hint": self.strategy_hint,
            "research_context": self.research_context,
            "delay_seconds": self.delay_seconds,
            "stuck_report": self.stuck_report.to_dict() if self.stuck_report is not None else None,
        }


def backoff_delay(
    attempt: int,
    *,
    base_seconds: float,
    multiplier: float,
    max_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for the ``attempt``-th transient failure plus up to 25% jitter."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay = min(max_seconds, base_seconds * (multiplier ** (attempt - 1)))
    source = rng if rng is not None else random
    return delay + source.uniform(0.0, delay * _JITTER_FRACTION)


class FailureEscalator:
    """Decides what happens to a task after each failed or successful attempt."""

    def __init__(
        self,
        settings: EscalationSettings,
        alternative_finder: AlternativeFinder | None = None,
        context_gatherer: ContextGatherer | None = None,
        learning_store: LearningStore | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
        stuck_dir: Path | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._alternative_finder = alternative_finder
        self._context_gatherer = context_gatherer
        self._learning_store = learning_store
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self._stuck_dir = stuck_dir
        self._research_context: dict[str, str] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> EscalationSettings:
        return self._settings

    def on_failure(
        self,
        task: Task,
        error: str,
        kind: ErrorKind = ErrorKind.LOGIC,
    ) -> EscalationDecision:
        record = task.failure if task.failure is not None else FailureRecord(task_id=task.id)
        message = _clip(error)

        if record.is_terminal:
            return self._give_up(task, record, message, kind)

        if kind is ErrorKind.RESOURCE:
            return self._give_up(task, record, message, kind)

        if kind is ErrorKind.TRANSIENT:
            transient_count = record.transient_count + 1
            if transient_count <= self._settings.transient_max:
                record = replace(
                    record,
                    transient_count=transient_count,
                    last_error=message,
                    error_kind=ErrorKind.TRANSIENT,
                    history=_append(record.history, f"transient {transient_count}: {message}"),
                )
                delay = backoff_delay(
                    transient_count,
                    base_seconds=self._settings.backoff_base_seconds,
                    multiplier=self._settings.backoff_multiplier,
                    max_seconds=self._settings.backoff_max_seconds,
                    rng=self._rng,
                )
                self._logger.info(
                    "escalation_transient_requeue",
                    task_id=task.id,
                    transient_count=transient_count,
                    delay_seconds=round(delay, 3),
                )
                return EscalationDecision(
                    action=EscalationAction.REQUEUE_TRANSIENT,
                    record=record,
                    delay_seconds=delay,
                )
            self._logger.warning(
                "escalation_transient_exhausted",
                task_id=task.id,
                transient_count=transient_count,
                transient_max=self._settings.transient_max,
            )
            record = replace(record, transient_count=transient_count)

        return self._on_logic_failure(task, record, message)

    def on_success(self, task: Task) -> FailureRecord | None:
        """Return the record to keep after an approved attempt (``None`` clears it)."""

        record = task.failure
        if record is None or record.level is EscalationLevel.RETRY:
            self._research_context.pop(task.id, None)
            return None

        outcome = "researched" if record.level is EscalationLevel.RESEARCH else "pivoted"
        settled = replace(
            record,
            retry_count=0,
            pivot_count=0,
            research_count=0,
            transient_count=0,
            outcome=outcome,
            history=_append(record.history, f"{record.level.value}: succeeded"),
        )
        context = self._research_context.pop(task.id, None)
        if record.level is EscalationLevel.RESEARCH and self._learning_store is not None:
            self._learning_store.record_finding(task.id, context=context, record=settled)
        self._logger.info("escalation_success", task_id=task.id, level=record.level.value, outcome=outcome)
        return settled

    def reset(self, task: Task) -> Task:
        """Manual re-queue: clear the record so the next failure restarts at Retry."""

        self._research_context.pop(task.id, None)
        self._logger.info("escalation_reset", task_id=task.id)
        return replace(task, status=TaskStatus.PENDING, failure=None, reason=None)

    def _on_logic_failure(self, task: Task, record: FailureRecord, message: str) -> EscalationDecision:
        level = record.level
        settings = self._settings
        entry = f"{level.value} {self._level_count(record) + 1}: {message}"
        record = replace(
            record,
            last_error=message,
            error_kind=ErrorKind.LOGIC,
            history=_append(record.history, entry),
        )

        if level is EscalationLevel.RETRY:
            retry_count = record.retry_count + 1
            if retry_count < settings.retry_max:
                return self._decide(task, replace(record, retry_count=retry_count), EscalationAction.RETRY)
            return self._enter_pivot(task, replace(record, level=EscalationLevel.PIVOT, retry_count=0, pivot_count=0))

        if level is EscalationLevel.PIVOT:
            pivot_count = record.pivot_count + 1
            if pivot_count < settings.pivot_max:
                return self._enter_pivot(task, replace(record, pivot_count=pivot_count))
            return self._enter_research(
                task,
                replace(record, level=EscalationLevel.RESEARCH, pivot_count=0, research_count=0),
            )

        research_count = record.research_count + 1
        if research_count < settings.research_max:
            return self._enter_research(task, replace(record, research_count=research_count))
        return self._give_up(
            task,
            replace(record, level=EscalationLevel.ASK, research_count=0),
            message,
            ErrorKind.LOGIC,
        )

    def _enter_pivot(self, task: Task, record: FailureRecord) -> EscalationDecision:
        hint = None
        if self._alternative_finder is not None:
            hint = self._alternative_finder.find_alternative(task.spec, record)
        return self._decide(task, record, EscalationAction.PIVOT, strategy_hint=hint)

    def _enter_research(self, task: Task, record: FailureRecord) -> EscalationDecision:
        context = None
        if self._context_gatherer is not None:
            context = self._context_gatherer.gather(task.spec, record)
        if context:
            self._research_context[task.id] = context
        return self._decide(task, record, EscalationAction.RESEARCH, research_context=context)

    def _decide(
        self,
        task: Task,
        record: FailureRecord,
        action: EscalationAction,
        *,
        strategy_hint: str | None = None,
        research_context: str | None = None,
    ) -> EscalationDecision:
        self._logger.info(
            "escalation_decision",
            task_id=task.id,
            action=action.value,
            level=record.level.value,
            retry_count=record.retry_count,
            pivot_count=record.pivot_count,
            research_count=record.research_count,
        )
        return EscalationDecision(
            action=action,
            record=record,
            strategy_hint=strategy_hint,
            research_context=research_context,
        )

    def _give_up(
        self,
        task: Task,
        record: FailureRecord,
        message: str,
        kind: ErrorKind,
    ) -> EscalationDecision:
        if kind is ErrorKind.RESOURCE:
            record = replace(
                record,
                last_error=message,
                error_kind=ErrorKind.RESOURCE,
                history=_append(record.history, f"resource: {message}"),
            )
        report = StuckReport(
            task_id=task.id,
            description=task.description,
            level=record.level,
            attempts_summary=record.history,
            last_error=record.last_error or message,
            error_kind=record.error_kind,
            created_at=self._clock(),
        )
        self._research_context.pop(task.id, None)
        self._write_stuck_report(report)
        self._logger.error(
            "escalation_gave_up",
            task_id=task.id,
            level=record.level.value,
            error_kind=record.error_kind.value,
            last_error=report.last_error,
        )
        return EscalationDecision(
            action=EscalationAction.GIVE_UP,
            record=record,
            stuck_report=report,
        )

    def _write_stuck_report(self, report: StuckReport) -> None:
        if self._stuck_dir is None:
            return
        path = self._stuck_dir / f"{report.task_id}.yaml"
        atomic_write(path, yaml.safe_dump(report.to_dict(), sort_keys=True, allow_unicode=True))

    @staticmethod
    def _level_count(record: FailureRecord) -> int:
        if record.level is EscalationLevel.PIVOT:
            return record.pivot_count
        if record.level is EscalationLevel.RESEARCH:
            return record.research_count
        return record.retry_count


def _append(history: tuple[str, ...], entry: str) -> tuple[str, ...]:
    return (*history, entry)[-_MAX_ATTEMPT_HISTORY:]


def _clip(message: str) -> str:
    text = message.strip() or "unspecified failure"
    if len(text) > _MAX_ERROR_CHARS:
        return text[: _MAX_ERROR_CHARS - 3] + "..."
    return text


__all__ = [
    "AlternativeFinder",
    "ContextGatherer",
    "EscalationAction",
    "EscalationDecision",
    "FailureEscalator",
    "LearningStore",
    "backoff_delay",
]
