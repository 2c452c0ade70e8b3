"""
Unit tests for the scheduler coordinator loop.

Coverage:
- dependency ordering, priority selection, and the concurrency bound
- one task per slot and one slot per task at every assignment
- retry, transient back-off, resource failure, crash, and timeout handling
- escalation hints reaching the worker and unreachable-dependency skipping
- token-budget handoff with in-flight partial work, including a pending back-off
- recovery of tasks left Assigned by an interrupted session
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from autodev_orchestrator.constants import TIMEOUT_REASON, UNREACHABLE_DEPENDENCY_REASON
from autodev_orchestrator.control_plane.scheduler import find_unreachable, select_ready_tasks
from autodev_orchestrator.control_plane.workers import WorkerResult
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import (
    ErrorKind,
    EscalationLevel,
    SlotStatus,
    TaskStatus,
    with_status,
)
from autodev_orchestrator.integration_plane.git_engine import GitEngineError
from tests.support import (
    RecordingFinder,
    RecordingGatherer,
    SchedulerHarness,
    ScriptedWorker,
    fast_settings,
    new_state,
    spec,
)

if TYPE_CHECKING:
    from pathlib import Path

    from autodev_orchestrator.control_plane.workers import DispatchRequest
    from autodev_orchestrator.domain.events import OrchestratorEvent


def _rejected(reason: str = "tests failed", kind: ErrorKind = ErrorKind.LOGIC, tokens: int = 0) -> WorkerResult:
    return WorkerResult.rejected(reason, kind, tokens_used=tokens)


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------


def test_select_ready_tasks_prefers_tasks_with_more_dependents() -> None:
    state = new_state(
        [
            spec("T10"),
            spec("T2"),
            spec("T1"),
            spec("T3", "T1"),
            spec("T4", "T1"),
            spec("T5", "T2"),
        ]
    )

    assert select_ready_tasks(state, 1) == ("T1",)
    assert select_ready_tasks(state, 3) == ("T1", "T2", "T10")
    assert select_ready_tasks(state, 0) == ()


def test_find_unreachable_lists_pending_tasks_behind_failed_dependencies() -> None:
    state = new_state([spec("T1"), spec("T2", "T1"), spec("T3")])
    state.put_task(with_status(state.task("T1"), TaskStatus.FAILED))

    assert find_unreachable(state) == ("T2",)


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


async def test_run_dispatches_in_dependency_order(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    harness = SchedulerHarness(tmp_path, [spec("T3", "T2"), spec("T2", "T1"), spec("T1")], worker)

    report = await harness.scheduler.run()

    assert [request.task.id for request in worker.calls] == ["T1", "T2", "T3"]
    assert report.done == ("T1", "T2", "T3")
    assert report.failed == ()
    assert report.handoff is False
    assert harness.state.all_tasks_terminal()
    assert all(slot.status is SlotStatus.IDLE for slot in harness.state.slots)
    harness.state.check_invariants()


async def test_run_never_exceeds_max_agents(tmp_path: Path) -> None:
    settings = fast_settings(tmp_path, pool={"size": 4, "max_agents": 2})
    worker = ScriptedWorker(delay=0.01)
    harness = SchedulerHarness(
        tmp_path,
        [spec(f"T{index}") for index in range(1, 7)],
        worker,
        settings=settings,
        pool_size=4,
    )

    report = await harness.scheduler.run()

    assert len(report.done) == 6
    assert worker.max_active == 2


async def test_slots_and_tasks_stay_one_to_one_while_work_overlaps(tmp_path: Path) -> None:
    settings = fast_settings(tmp_path, pool={"size": 3, "max_agents": 3})
    worker = ScriptedWorker({"T2": [_rejected(), WorkerResult.approved("ok")]}, delay=0.01)
    harness = SchedulerHarness(
        tmp_path,
        [spec(f"T{index}") for index in range(1, 8)],
        worker,
        settings=settings,
        pool_size=3,
    )
    violations: list[str] = []
    busy_counts: list[int] = []

    def on_assigned(event: OrchestratorEvent) -> None:
        busy_counts.append(len(harness.state.busy_slots()))
        try:
            harness.state.check_invariants()
        except ValueError as exc:
            violations.append(str(exc))

    def on_acquired(event: OrchestratorEvent) -> None:
        task_id = event.payload["task_id"]
        holders = [slot.id for slot in harness.state.busy_slots() if slot.assigned_task_id == task_id]
        if holders != [event.payload["slot_id"]]:
            violations.append(f"{task_id} held by {holders}")

    harness.bus.subscribe(EventType.TASK_ASSIGNED, on_assigned)
    harness.bus.subscribe(EventType.SLOT_ACQUIRED, on_acquired)

    report = await harness.scheduler.run()

    assert len(report.done) == 7
    assert len(worker.attempts("T2")) == 2
    assert violations == []
    assert max(busy_counts) == 3
    harness.state.check_invariants()


async def test_run_persists_terminal_statuses(tmp_path: Path) -> None:
    harness = SchedulerHarness(tmp_path, [spec("T1"), spec("T2")], ScriptedWorker())

    await harness.scheduler.run()

    persisted = harness.store.load()
    assert persisted is not None
    assert persisted.task_ids_with_status(TaskStatus.DONE) == ("T1", "T2")
    assert persisted.task("T1").evidence == "ok"


async def test_approved_attempt_commits_the_task_branch(tmp_path: Path) -> None:
    harness = SchedulerHarness(tmp_path, [spec("T1")], ScriptedWorker())

    await harness.scheduler.run()

    assert harness.backend.heads["auto/T1"] == "c1"
    completed = harness.bus.history(EventType.TASK_COMPLETED)
    assert completed[-1].payload["commit"] == "c1"


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


async def test_logic_failure_is_retried_then_succeeds(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [_rejected(), WorkerResult.approved("green")]})
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker)

    report = await harness.scheduler.run()

    task = harness.state.task("T1")
    assert report.done == ("T1",)
    assert task.attempts == 2
    assert task.failure is None
    assert task.evidence == "green"
    assert [request.attempt for request in worker.calls] == [1, 2]
    assert EventType.TASK_REQUEUED.value in harness.event_types()


async def test_rejected_attempt_leaves_branch_untouched(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [_rejected(), WorkerResult.approved("green")]})
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker)

    await harness.scheduler.run()

    assert harness.backend.commits == 1


async def test_exhausted_ladder_fails_task_and_skips_dependents(tmp_path: Path) -> None:
    finder = RecordingFinder("split the module")
    gatherer = RecordingGatherer("upstream changelog")
    worker = ScriptedWorker(default=_rejected("assertion failed"))
    harness = SchedulerHarness(
        tmp_path,
        [spec("T1"), spec("T2", "T1"), spec("T3", "T2")],
        worker,
        finder=finder,
        gatherer=gatherer,
    )

    report = await harness.scheduler.run()

    attempts = worker.attempts("T1")
    assert len(attempts) == 8
    assert [request.level for request in attempts] == [
        EscalationLevel.RETRY,
        EscalationLevel.RETRY,
        EscalationLevel.RETRY,
        EscalationLevel.PIVOT,
        EscalationLevel.PIVOT,
        EscalationLevel.PIVOT,
        EscalationLevel.RESEARCH,
        EscalationLevel.RESEARCH,
    ]
    assert attempts[3].strategy_hint == "split the module"
    assert attempts[6].research_context == "upstream changelog"

    assert report.failed == ("T1",)
    assert report.skipped == ("T2", "T3")
    assert harness.state.task("T2").reason == UNREACHABLE_DEPENDENCY_REASON
    assert harness.state.task("T1").failure is not None
    assert harness.state.task("T1").failure.level is EscalationLevel.ASK

    assert len(report.stuck_reports) == 1
    assert report.stuck_reports[0].task_id == "T1"
    assert (tmp_path / ".autodev" / "stuck" / "T1.yaml").is_file()
    assert not any(request.task.id in {"T2", "T3"} for request in worker.calls)


async def test_transient_failure_requeues_without_escalating(tmp_path: Path) -> None:
    worker = ScriptedWorker(
        {"T1": [_rejected("rate limited", ErrorKind.TRANSIENT), WorkerResult.approved("ok")]}
    )
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker)

    report = await harness.scheduler.run()

    assert report.done == ("T1",)
    assert [request.level for request in worker.calls] == [EscalationLevel.RETRY, EscalationLevel.RETRY]


async def test_resource_failure_fails_immediately(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [_rejected("disk full", ErrorKind.RESOURCE)]})
    harness = SchedulerHarness(tmp_path, [spec("T1"), spec("T2", "T1")], worker)

    report = await harness.scheduler.run()

    assert len(worker.calls) == 1
    assert report.failed == ("T1",)
    assert report.skipped == ("T2",)
    assert harness.state.task("T1").reason == "disk full"


async def test_worker_crash_counts_as_logic_failure(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [RuntimeError("boom"), WorkerResult.approved("ok")]})
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker)

    report = await harness.scheduler.run()

    assert report.done == ("T1",)
    requeued = harness.bus.history(EventType.TASK_REQUEUED)
    assert requeued[0].payload["reason"] == "worker crashed: RuntimeError: boom"
    assert requeued[0].payload["action"] == "retry"


async def test_materialize_error_is_treated_as_transient(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker)
    harness.backend.fail_materialize["auto/T1"] = GitEngineError("index.lock exists")

    report = await harness.scheduler.run()

    assert report.done == ("T1",)
    assert len(worker.calls) == 1
    requeued = harness.bus.history(EventType.TASK_REQUEUED)
    assert requeued[0].payload["action"] == "requeue_transient"
    assert harness.state.task("T1").attempts == 2


async def test_timeout_is_a_logic_failure(tmp_path: Path) -> None:
    settings = fast_settings(
        tmp_path,
        pool={"size": 1, "max_agents": 1},
        scheduler={"task_timeout_seconds": 0.05},
        escalation={"retry_max": 1, "pivot_max": 1, "research_max": 1},
    )
    worker = ScriptedWorker(hang=["T1"])
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker, settings=settings, pool_size=1)

    report = await harness.scheduler.run()

    assert report.failed == ("T1",)
    assert len(worker.calls) == 3
    task = harness.state.task("T1")
    assert task.reason == TIMEOUT_REASON
    assert task.failure is not None
    assert task.failure.error_kind is ErrorKind.LOGIC


# ---------------------------------------------------------------------------
# Handoff and recovery
# ---------------------------------------------------------------------------


async def test_budget_handoff_stops_dispatching(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [WorkerResult.approved("big", tokens_used=900)]})
    harness = SchedulerHarness(
        tmp_path,
        [spec("T1"), spec("T2"), spec("T3")],
        worker,
        settings=fast_settings(tmp_path, pool={"size": 1, "max_agents": 1}),
        pool_size=1,
        max_tokens=1000,
    )

    report = await harness.scheduler.run()

    assert report.handoff is True
    assert report.done == ("T1",)
    assert harness.state.task_ids_with_status(TaskStatus.PENDING) == ("T2", "T3")
    assert harness.state.token_budget.used == 900
    assert harness.scheduler.handoff_requested
    types = harness.event_types()
    assert EventType.CONTEXT_COMPRESSION_HINT.value in types
    assert EventType.HANDOFF_REQUESTED.value in types


async def test_handoff_cancels_in_flight_work_after_grace(tmp_path: Path) -> None:
    worker = ScriptedWorker({"T1": [WorkerResult.approved("big", tokens_used=850)]}, hang=["T2"])
    harness = SchedulerHarness(tmp_path, [spec("T1"), spec("T2")], worker, max_tokens=1000)

    report = await harness.scheduler.run()

    assert report.handoff is True
    assert report.partial == ("T2",)
    assert harness.state.task("T2").status is TaskStatus.PENDING
    assert harness.state.busy_slots() == ()
    assert harness.backend.branch_head("auto/T2") == "base:main"
    harness.state.check_invariants()


class _SlowSpender:
    """T1 fails transiently once; T2 finishes late and spends most of the budget."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def run(self, workspace_path: Path, request: DispatchRequest) -> WorkerResult:
        self.calls.append(request.task.id)
        if request.task.id == "T1":
            return _rejected("index.lock exists", ErrorKind.TRANSIENT)
        await asyncio.sleep(0.1)
        return WorkerResult.approved("big", tokens_used=850)


async def test_handoff_interrupts_a_transient_backoff(tmp_path: Path) -> None:
    settings = fast_settings(
        tmp_path,
        pool={"size": 2, "max_agents": 2},
        scheduler={"handoff_grace_seconds": 30.0},
        escalation={"backoff_base_seconds": 20.0, "backoff_max_seconds": 20.0},
    )
    worker = _SlowSpender()
    harness = SchedulerHarness(
        tmp_path, [spec("T1"), spec("T2")], worker, settings=settings, max_tokens=1000
    )

    report = await asyncio.wait_for(harness.scheduler.run(), timeout=5.0)

    assert report.handoff is True
    assert report.done == ("T2",)
    assert report.partial == ("T1",)
    assert [task_id for task_id, _ in report.partial_slots] == ["T1"]
    assert worker.calls.count("T1") == 1
    assert harness.state.task("T1").status is TaskStatus.PENDING
    assert all(slot.status is SlotStatus.IDLE for slot in harness.state.slots)
    harness.state.check_invariants()


async def test_run_hands_off_immediately_when_budget_already_fired(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    harness = SchedulerHarness(tmp_path, [spec("T1")], worker, max_tokens=1000)
    harness.budget.record(800)

    report = await harness.scheduler.run()

    assert report.handoff is True
    assert worker.calls == []
    assert harness.state.task("T1").status is TaskStatus.PENDING


async def test_recover_interrupted_requeues_assigned_tasks(tmp_path: Path) -> None:
    harness = SchedulerHarness(tmp_path, [spec("T1"), spec("T2")], ScriptedWorker())
    acquisition = harness.pool.acquire("T1")
    harness.pool.materialize(acquisition.slot_id)
    harness.state.put_task(with_status(harness.state.task("T1"), TaskStatus.ASSIGNED, attempts=2))

    recovered = harness.scheduler.recover_interrupted()

    assert recovered == ("T1",)
    task = harness.state.task("T1")
    assert task.status is TaskStatus.PENDING
    assert task.attempts == 2
    assert harness.state.busy_slots() == ()
    harness.state.check_invariants()
    assert harness.scheduler.recover_interrupted() == ()
