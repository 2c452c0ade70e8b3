"""
Coordinator loop dispatching ready tasks onto workspace slots.

One coordinator, running on the event loop, owns every state mutation (slot
acquire/release, task status, escalation records). Dispatch coroutines only do
slow work: waiting out a back-off, materializing the worktree in a thread,
running the worker under a timeout, and committing or scrubbing the workspace.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import structlog

from autodev_orchestrator.constants import TIMEOUT_REASON, UNREACHABLE_DEPENDENCY_REASON
from autodev_orchestrator.control_plane.escalation import EscalationAction
from autodev_orchestrator.control_plane.workers import DispatchRequest, WorkerResult
from autodev_orchestrator.domain.errors import (
    NoSlotAvailableError,
    ResourceError,
    TransientError,
)
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import (
    ErrorKind,
    EscalationLevel,
    OrchestrationState,
    StuckReport,
    TaskStatus,
    natural_id_key,
    with_status,
)
from autodev_orchestrator.integration_plane.git_engine import GitEngineError
from autodev_orchestrator.observability.logging import correlation_scope
from autodev_orchestrator.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
    sleep_unless_cancelled,
)

if TYPE_CHECKING:
    from autodev_orchestrator.config.settings import RuntimeSettings
    from autodev_orchestrator.control_plane.budgets import TokenBudgetMonitor
    from autodev_orchestrator.control_plane.escalation import FailureEscalator
    from autodev_orchestrator.control_plane.workers import Worker
    from autodev_orchestrator.integration_plane.workspace_pool import WorkspacePool
    from autodev_orchestrator.observability.events import EventBus
    from autodev_orchestrator.persistence.state_store import StateStore

_UNREACHABLE_BLOCKERS = frozenset({TaskStatus.FAILED, TaskStatus.SKIPPED})


def select_ready_tasks(state: OrchestrationState, capacity: int) -> tuple[str, ...]:
    """
    Pick up to ``capacity`` ready tasks.

    Tasks unblocking the most direct dependents go first; ties fall back to
    natural id order (``T2`` before ``T10``).
    """
    if capacity <= 0:
        return ()
    dependents = state.dependents_count()
    ranked = sorted(
        state.ready_task_ids(),
        key=lambda task_id: (-dependents[task_id], natural_id_key(task_id)),
    )
    return tuple(ranked[:capacity])


def find_unreachable(state: OrchestrationState) -> tuple[str, ...]:
    """Pending tasks with at least one Failed or Skipped dependency."""

    blocked = [
        task.id
        for task in state.tasks.values()
        if task.status is TaskStatus.PENDING
        and any(state.task(dep).status in _UNREACHABLE_BLOCKERS for dep in task.depends_on)
    ]
    return tuple(sorted(blocked, key=natural_id_key))


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    """What a dispatch coroutine hands back to the coordinator."""

    task_id: str
    slot_id: str
    result: WorkerResult | None = None
    timed_out: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None
    commit: str | None = None
    withdrawn: bool = False

    @property
    def approved(self) -> bool:
        return self.result is not None and self.result.ok

    @property
    def tokens_used(self) -> int:
        return self.result.tokens_used if self.result is not None else 0

    def failure(self) -> tuple[str, ErrorKind]:
        if self.timed_out:
            return TIMEOUT_REASON, ErrorKind.LOGIC
        if self.result is not None:
            return self.result.reason or "rejected", self.result.error_kind or ErrorKind.LOGIC
        return self.error or "worker crashed", self.error_kind or ErrorKind.LOGIC


@dataclass(frozen=True, slots=True)
class ExecutionReport:
    done: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    partial: tuple[str, ...] = ()
    partial_slots: tuple[tuple[str, str], ...] = ()
    stuck_reports: tuple[StuckReport, ...] = ()
    handoff: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "done": list(self.done),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "partial": list(self.partial),
            "partial_slots": {slot_id: task_id for task_id, slot_id in self.partial_slots},
            "stuck_reports": [report.to_dict() for report in self.stuck_reports],
            "handoff": self.handoff,
        }


@dataclass(slots=True)
class _InFlight:
    task_id: str
    slot_id: str


@dataclass(slots=True)
class _Redispatch:
    strategy_hint: str | None = None
    research_context: str | None = None
    delay_seconds: float = 0.0


class Scheduler:
    """Runs the EXECUTE phase until no task is in flight or ready."""

    def __init__(
        self,
        state: OrchestrationState,
        store: StateStore,
        pool: WorkspacePool,
        worker: Worker,
        escalator: FailureEscalator,
        budget_monitor: TokenBudgetMonitor,
        bus: EventBus | None,
        settings: RuntimeSettings,
        *,
        logger: Any | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._pool = pool
        self._worker = worker
        self._escalator = escalator
        self._budget_monitor = budget_monitor
        self._bus = bus
        self._settings = settings
        self._handoff = False
        self._stop = CancellationToken()
        self._redispatch: dict[str, _Redispatch] = {}
        self._partial: list[tuple[str, str]] = []
        self._new_stuck: list[StuckReport] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def handoff_requested(self) -> bool:
        return self._handoff

    def request_handoff(self) -> None:
        """Stop dispatching; in-flight work gets the grace period, then is cancelled."""

        if not self._handoff:
            self._logger.warning("scheduler_handoff_requested")
        self._handoff = True
        self._stop.cancel()

    async def run(self) -> ExecutionReport:
        self._partial = []
        self._new_stuck = []
        if self._budget_monitor.budget.handoff_fired:
            self.request_handoff()
        self.recover_interrupted()
        self._skip_unreachable()

        in_flight: dict[asyncio.Task[DispatchOutcome], _InFlight] = {}
        try:
            while True:
                if not self._handoff:
                    self._dispatch_ready(in_flight)
                if self._handoff:
                    await self._drain_for_handoff(in_flight)
                    break
                if not in_flight:
                    if select_ready_tasks(self._state, 1):
                        raise ResourceError(
                            "ready tasks remain but no workspace slot could be acquired; "
                            "check 'autodev status' for stale busy slots"
                        )
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for handle in sorted(done, key=lambda item: natural_id_key(in_flight[item].task_id)):
                    in_flight.pop(handle)
                    self._apply(handle.result())
                self._skip_unreachable()
        finally:
            if in_flight:
                await self._cancel_in_flight(in_flight)

        report = self._report()
        self._logger.info("scheduler_finished", **report.to_dict())
        return report

    def recover_interrupted(self) -> tuple[str, ...]:
        """
        Re-queue tasks left Assigned by an interrupted session.

        The slot is scrubbed and released; the task keeps its escalation record and
        its attempt counter, so the re-queue costs nothing.
        """
        recovered: list[str] = []
        for slot in self._state.busy_slots():
            task_id = slot.assigned_task_id
            self._pool.reset(slot.id)
            if task_id is not None:
                recovered.append(task_id)
        for task_id in self._state.task_ids_with_status(TaskStatus.ASSIGNED):
            self._state.put_task(with_status(self._state.task(task_id), TaskStatus.PENDING))
            recovered.append(task_id)
        recovered_ids = tuple(sorted(set(recovered), key=natural_id_key))
        if recovered_ids:
            self._state.record_history("tasks_recovered", task_ids=list(recovered_ids))
            self._store.save(self._state)
            for task_id in recovered_ids:
                self._emit(EventType.TASK_REQUEUED, task_id=task_id, reason="recovered")
            self._logger.info("scheduler_recovered_interrupted", task_ids=list(recovered_ids))
        return recovered_ids

    # ------------------------------------------------------------------
    # Coordinator steps
    # ------------------------------------------------------------------

    def _dispatch_ready(self, in_flight: dict[asyncio.Task[DispatchOutcome], _InFlight]) -> None:
        capacity = min(
            len(self._state.idle_slots()),
            self._settings.pool.max_agents - len(in_flight),
        )
        for task_id in select_ready_tasks(self._state, capacity):
            try:
                acquisition = self._pool.acquire(task_id)
            except NoSlotAvailableError:
                break
            task = self._state.task(task_id)
            self._state.put_task(with_status(task, TaskStatus.ASSIGNED))
            self._state.record_history("task_assigned", task_id=task_id, slot_id=acquisition.slot_id)
            self._store.save(self._state)
            self._emit(
                EventType.TASK_ASSIGNED,
                task_id=task_id,
                slot_id=acquisition.slot_id,
                branch=acquisition.branch,
            )

            extra = self._redispatch.pop(task_id, _Redispatch())
            request = DispatchRequest(
                task=task.spec,
                attempt=task.attempts + 1,
                level=task.failure.level if task.failure is not None else EscalationLevel.RETRY,
                strategy_hint=extra.strategy_hint,
                research_context=extra.research_context,
            )
            handle = asyncio.create_task(
                self._dispatch(acquisition.slot_id, request, extra.delay_seconds),
                name=f"dispatch-{task_id}",
            )
            in_flight[handle] = _InFlight(task_id=task_id, slot_id=acquisition.slot_id)

    def _apply(self, outcome: DispatchOutcome) -> None:
        if outcome.withdrawn:
            self._mark_partial(outcome.task_id, outcome.slot_id)
            return
        if outcome.tokens_used:
            decision = self._budget_monitor.record(outcome.tokens_used, phase="execute")
            self._state.token_budget = self._budget_monitor.budget
            if decision.should_handoff:
                self.request_handoff()

        task = self._state.task(outcome.task_id)
        attempts = task.attempts + 1
        if outcome.approved:
            assert outcome.result is not None
            failure = self._escalator.on_success(task)
            self._state.put_task(
                replace(
                    task,
                    status=TaskStatus.DONE,
                    evidence=outcome.result.evidence,
                    reason=None,
                    failure=failure,
                    attempts=attempts,
                )
            )
            self._state.record_history("task_completed", task_id=task.id, attempts=attempts)
            self._pool.release(outcome.slot_id, done=True)
            self._emit(
                EventType.TASK_COMPLETED,
                task_id=task.id,
                slot_id=outcome.slot_id,
                commit=outcome.commit,
                evidence=outcome.result.evidence,
            )
            self._logger.info("task_completed", task_id=task.id, attempts=attempts, commit=outcome.commit)
            return

        error, kind = outcome.failure()
        decision = self._escalator.on_failure(task, error, kind)
        if decision.is_terminal:
            self._state.put_task(
                replace(
                    task,
                    status=TaskStatus.FAILED,
                    reason=error,
                    failure=decision.record,
                    attempts=attempts,
                )
            )
            if decision.stuck_report is not None:
                self._state.stuck_reports.append(decision.stuck_report)
                self._new_stuck.append(decision.stuck_report)
            self._state.record_history("task_failed", task_id=task.id, reason=error, error_kind=kind.value)
            self._pool.release(outcome.slot_id, done=False)
            if decision.stuck_report is not None:
                self._emit(EventType.TASK_STUCK, **decision.stuck_report.to_dict())
            self._emit(EventType.TASK_FAILED, task_id=task.id, reason=error, error_kind=kind.value)
            self._logger.warning("task_failed", task_id=task.id, reason=error, error_kind=kind.value)
            return

        self._state.put_task(
            replace(
                task,
                status=TaskStatus.PENDING,
                reason=error,
                failure=decision.record,
                attempts=attempts,
            )
        )
        self._redispatch[task.id] = _Redispatch(
            strategy_hint=decision.strategy_hint,
            research_context=decision.research_context,
            delay_seconds=decision.delay_seconds
            if decision.action is EscalationAction.REQUEUE_TRANSIENT
            else 0.0,
        )
        self._state.record_history(
            "task_requeued",
            task_id=task.id,
            action=decision.action.value,
            level=decision.record.level.value,
        )
        self._pool.release(outcome.slot_id, done=False)
        self._emit(
            EventType.TASK_REQUEUED,
            task_id=task.id,
            reason=error,
            action=decision.action.value,
            level=decision.record.level.value,
        )

    def _skip_unreachable(self) -> None:
        skipped: list[str] = []
        while True:
            blocked = find_unreachable(self._state)
            if not blocked:
                break
            for task_id in blocked:
                self._state.put_task(
                    with_status(
                        self._state.task(task_id),
                        TaskStatus.SKIPPED,
                        reason=UNREACHABLE_DEPENDENCY_REASON,
                    )
                )
                skipped.append(task_id)
        if not skipped:
            return
        self._state.record_history("tasks_skipped", task_ids=skipped, reason=UNREACHABLE_DEPENDENCY_REASON)
        self._store.save(self._state)
        for task_id in skipped:
            self._emit(EventType.TASK_SKIPPED, task_id=task_id, reason=UNREACHABLE_DEPENDENCY_REASON)
        self._logger.info("tasks_skipped", task_ids=skipped, reason=UNREACHABLE_DEPENDENCY_REASON)

    async def _drain_for_handoff(self, in_flight: dict[asyncio.Task[DispatchOutcome], _InFlight]) -> None:
        if not in_flight:
            return
        grace = self._settings.scheduler.handoff_grace_seconds
        self._logger.info("scheduler_handoff_grace", in_flight=len(in_flight), grace_seconds=grace)
        done, _ = await asyncio.wait(in_flight, timeout=grace if grace > 0 else 0)
        for handle in sorted(done, key=lambda item: natural_id_key(in_flight[item].task_id)):
            in_flight.pop(handle)
            self._apply(handle.result())
        await self._cancel_in_flight(in_flight)

    async def _cancel_in_flight(self, in_flight: dict[asyncio.Task[DispatchOutcome], _InFlight]) -> None:
        handles = list(in_flight)
        for handle in handles:
            handle.cancel()
        results = await asyncio.gather(*handles, return_exceptions=True)
        for handle, result in zip(handles, results, strict=True):
            entry = in_flight.pop(handle)
            if isinstance(result, DispatchOutcome):
                self._apply(result)
                continue
            self._mark_partial(entry.task_id, entry.slot_id)

    def _mark_partial(self, task_id: str, slot_id: str) -> None:
        task = self._state.task(task_id)
        if task.status is TaskStatus.ASSIGNED:
            self._state.put_task(with_status(task, TaskStatus.PENDING))
        self._partial.append((task_id, slot_id))
        self._state.record_history("task_partial", task_id=task_id, slot_id=slot_id)
        self._pool.release(slot_id, done=False)
        self._emit(EventType.TASK_REQUEUED, task_id=task_id, reason="handoff")
        self._logger.info("task_partial", task_id=task_id, slot_id=slot_id)

    # ------------------------------------------------------------------
    # Dispatch coroutine
    # ------------------------------------------------------------------

    async def _dispatch(self, slot_id: str, request: DispatchRequest, delay_seconds: float) -> DispatchOutcome:
        task_id = request.task.id
        with correlation_scope(task_id=task_id, slot_id=slot_id):
            finalized = False
            try:
                if not await sleep_unless_cancelled(delay_seconds, self._stop):
                    self._logger.info("task_backoff_interrupted", delay_seconds=round(delay_seconds, 3))
                    return DispatchOutcome(task_id=task_id, slot_id=slot_id, withdrawn=True)
                path = await asyncio.to_thread(self._pool.materialize, slot_id)
                self._logger.info(
                    "task_dispatched",
                    attempt=request.attempt,
                    level=request.level.value,
                    path=str(path),
                )
                try:
                    result = await run_with_timeout(
                        self._worker.run(path, request),
                        self._settings.scheduler.task_timeout_seconds,
                    )
                except TimeoutError:
                    self._logger.warning(
                        "task_timed_out",
                        timeout_seconds=self._settings.scheduler.task_timeout_seconds,
                    )
                    return DispatchOutcome(task_id=task_id, slot_id=slot_id, timed_out=True)
                commit = await asyncio.to_thread(self._pool.finalize, slot_id, keep=result.ok)
                finalized = True
                return DispatchOutcome(task_id=task_id, slot_id=slot_id, result=result, commit=commit)
            except (TransientError, GitEngineError, ResourceError, OSError) as exc:
                kind = ErrorKind.TRANSIENT
                if isinstance(exc, ResourceError):
                    kind = ErrorKind.RESOURCE
                self._logger.warning("task_dispatch_error", error=str(exc), error_kind=kind.value)
                return DispatchOutcome(task_id=task_id, slot_id=slot_id, error=str(exc), error_kind=kind)
            except Exception as exc:
                self._logger.exception("task_worker_crashed", error=str(exc))
                return DispatchOutcome(
                    task_id=task_id,
                    slot_id=slot_id,
                    error=f"worker crashed: {type(exc).__name__}: {exc}",
                    error_kind=ErrorKind.LOGIC,
                )
            finally:
                if not finalized:
                    await self._scrub(slot_id)

    async def _scrub(self, slot_id: str) -> None:
        try:
            await asyncio.to_thread(self._pool.finalize, slot_id, keep=False)
        except (GitEngineError, OSError) as exc:
            self._logger.warning("workspace_scrub_failed", slot_id=slot_id, error=str(exc))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _report(self) -> ExecutionReport:
        state = self._state
        return ExecutionReport(
            done=state.task_ids_with_status(TaskStatus.DONE),
            failed=state.task_ids_with_status(TaskStatus.FAILED),
            skipped=state.task_ids_with_status(TaskStatus.SKIPPED),
            partial=tuple(dict.fromkeys(task_id for task_id, _ in self._partial)),
            partial_slots=tuple(self._partial),
            stuck_reports=tuple(self._new_stuck),
            handoff=self._handoff,
        )

    def _emit(self, event_type: EventType, **payload: object) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, payload)  # type: ignore[arg-type]


__all__ = [
    "DispatchOutcome",
    "ExecutionReport",
    "Scheduler",
    "find_unreachable",
    "select_ready_tasks",
]
