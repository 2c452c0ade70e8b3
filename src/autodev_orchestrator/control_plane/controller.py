"""
Orchestrator facade wiring every plane into one phase-driven run.

``run`` walks IDLE -> PLAN -> EXECUTE -> INTEGRATE -> REVIEW -> COMPLETE. A token
budget handoff checkpoints the run, parks it in CHECKPOINTED, and writes the
handoff signal; ``resume`` picks the run up in a new session from a checkpoint.
An integration conflict halts the run until ``resolve_conflict`` is called.
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from autodev_orchestrator.constants import STUCK_REPORTS_DIR_NAME
from autodev_orchestrator.control_plane.budgets import TokenBudgetMonitor
from autodev_orchestrator.control_plane.checkpoints import (
    CheckpointManager,
    HandoffRecord,
    HandoffSignal,
)
from autodev_orchestrator.control_plane.escalation import FailureEscalator
from autodev_orchestrator.control_plane.phases import PhaseMachine
from autodev_orchestrator.control_plane.scheduler import ExecutionReport, Scheduler
from autodev_orchestrator.domain.errors import (
    BudgetExceeded,
    ConflictDetected,
    PhaseTransitionError,
    ResourceError,
)
from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import (
    Checkpoint,
    OrchestrationState,
    Phase,
    Task,
    TaskSpec,
    TaskStatus,
    TokenBudget,
    build_tasks,
    utc_now,
)
from autodev_orchestrator.integration_plane.git_engine import GitEngine
from autodev_orchestrator.integration_plane.merger import (
    ConflictResolver,
    IntegrationMerger,
    IntegrationReport,
    Resolution,
)
from autodev_orchestrator.integration_plane.workspace_pool import (
    GitWorktreeBackend,
    WorkspaceBackend,
    WorkspacePool,
)
from autodev_orchestrator.observability.events import EventBus
from autodev_orchestrator.persistence.state_store import StateStore
from autodev_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from autodev_orchestrator.config.settings import RuntimeSettings
    from autodev_orchestrator.control_plane.escalation import (
        AlternativeFinder,
        ContextGatherer,
        LearningStore,
    )
    from autodev_orchestrator.control_plane.workers import Worker

_MAX_VERIFICATION_OUTPUT = 4000


# ---------------------------------------------------------------------------
# Final verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class VerificationCheck:
    task_id: str
    command: str
    ok: bool
    returncode: int | None
    output: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "command": self.command,
            "ok": self.ok,
            "returncode": self.returncode,
            "output": self.output,
        }


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    checks: tuple[VerificationCheck, ...] = ()

    @property
    def failures(self) -> tuple[VerificationCheck, ...]:
        return tuple(check for check in self.checks if not check.ok)

    def to_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "checks": [check.to_dict() for check in self.checks]}


class Verifier(Protocol):
    """Final acceptance check over the integrated target branch."""

    def verify(self, repo_root: Path, tasks: Sequence[Task]) -> VerificationResult: ...


class CommandVerifier:
    """Runs each Done task's ``verification_command`` at the repository root."""

    def __init__(
        self,
        git: GitEngine,
        *,
        timeout_seconds: float = 600.0,
        logger: Any | None = None,
    ) -> None:
        self._git = git
        self._timeout_seconds = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def verify(self, repo_root: Path, tasks: Sequence[Task]) -> VerificationResult:
        checks: list[VerificationCheck] = []
        for task in tasks:
            command = task.verification_command
            if task.status is not TaskStatus.DONE or not command:
                continue
            try:
                result = self._git.run_shell(command, cwd=repo_root, timeout_seconds=self._timeout_seconds)
            except subprocess.TimeoutExpired:
                checks.append(
                    VerificationCheck(
                        task_id=task.id,
                        command=command,
                        ok=False,
                        returncode=None,
                        output=f"timed out after {self._timeout_seconds}s",
                    )
                )
                continue
            output = (result.stdout + result.stderr).strip()
            checks.append(
                VerificationCheck(
                    task_id=task.id,
                    command=command,
                    ok=result.returncode == 0,
                    returncode=result.returncode,
                    output=output[-_MAX_VERIFICATION_OUTPUT:],
                )
            )
            self._logger.info(
                "verification_command_finished",
                task_id=task.id,
                returncode=result.returncode,
            )
        return VerificationResult(ok=all(check.ok for check in checks), checks=tuple(checks))


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    COMPLETE = "complete"
    HANDOFF = "handoff"
    CONFLICT = "conflict"
    VERIFICATION_FAILED = "verification_failed"


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    task_id: str
    status: TaskStatus
    evidence: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "evidence": self.evidence,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class RunReport:
    """Caller-facing summary; always enumerates Done, Skipped, and Failed tasks."""

    status: RunStatus
    phase: Phase
    session_index: int
    done: tuple[TaskOutcome, ...] = ()
    skipped: tuple[TaskOutcome, ...] = ()
    failed: tuple[TaskOutcome, ...] = ()
    stuck_reports: tuple[dict[str, object], ...] = ()
    conflict: dict[str, object] | None = None
    integration: IntegrationReport | None = None
    verification: VerificationResult | None = None
    checkpoint_id: str | None = None
    partial: tuple[str, ...] = ()
    token_usage: dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETE and not self.failed

    def handoff_notice(self) -> BudgetExceeded | None:
        """The planned handoff as a ``BudgetExceeded`` value (never raised)."""

        if self.status is not RunStatus.HANDOFF or self.checkpoint_id is None:
            return None
        used = self.token_usage.get("used", 0)
        maximum = self.token_usage.get("max_tokens", 0)
        return BudgetExceeded(
            self.checkpoint_id,
            used if isinstance(used, int) else 0,
            maximum if isinstance(maximum, int) else 0,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "phase": self.phase.value,
            "session_index": self.session_index,
            "done": [item.to_dict() for item in self.done],
            "skipped": [item.to_dict() for item in self.skipped],
            "failed": [item.to_dict() for item in self.failed],
            "stuck_reports": list(self.stuck_reports),
            "conflict": self.conflict,
            "integration": self.integration.to_dict() if self.integration is not None else None,
            "verification": self.verification.to_dict() if self.verification is not None else None,
            "checkpoint_id": self.checkpoint_id,
            "partial": list(self.partial),
            "token_usage": dict(self.token_usage),
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Owns the orchestration state for one repository and drives it through phases."""

    def __init__(
        self,
        repo_root: str | Path,
        settings: RuntimeSettings,
        worker: Worker | None = None,
        *,
        alternative_finder: AlternativeFinder | None = None,
        context_gatherer: ContextGatherer | None = None,
        learning_store: LearningStore | None = None,
        conflict_resolver: ConflictResolver | None = None,
        verifier: Verifier | None = None,
        backend: WorkspaceBackend | None = None,
        git: GitEngine | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._repo_root = Path(repo_root).resolve()
        self._settings = settings
        self._worker = worker
        self._alternative_finder = alternative_finder
        self._context_gatherer = context_gatherer
        self._learning_store = learning_store
        self._conflict_resolver = conflict_resolver
        self._git = git if git is not None else GitEngine(self._repo_root)
        self._backend = (
            backend
            if backend is not None
            else GitWorktreeBackend(self._git, workspace_root=settings.pool.workspace_root)
        )
        self._verifier = verifier if verifier is not None else CommandVerifier(self._git)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._bus = bus if bus is not None else EventBus(logger=self._logger)
        self._store = StateStore(settings.state_dir, logger=self._logger)
        self._merger = IntegrationMerger(
            self._git,
            target_branch=settings.target_branch,
            branch_prefix=settings.pool.branch_prefix,
            logger=self._logger,
        )
        self._handoff_signal = HandoffSignal(settings.state_dir, logger=self._logger)

        self._state: OrchestrationState | None = None
        self._phases: PhaseMachine | None = None
        self._pool: WorkspacePool | None = None
        self._budget_monitor: TokenBudgetMonitor | None = None
        self._escalator: FailureEscalator | None = None
        self._checkpoints: CheckpointManager | None = None
        self._last_integration: IntegrationReport | None = None
        self._last_verification: VerificationResult | None = None
        self._last_checkpoint_id: str | None = None
        self._last_partial: tuple[str, ...] = ()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def git(self) -> GitEngine:
        return self._git

    @property
    def handoff_signal(self) -> HandoffSignal:
        return self._handoff_signal

    @property
    def state(self) -> OrchestrationState:
        return self._bound()[0]

    @property
    def pool(self) -> WorkspacePool:
        self._bound()
        assert self._pool is not None
        return self._pool

    @property
    def phases(self) -> PhaseMachine:
        self._bound()
        assert self._phases is not None
        return self._phases

    @property
    def checkpoints(self) -> CheckpointManager:
        self._bound()
        assert self._checkpoints is not None
        return self._checkpoints

    @property
    def budget_monitor(self) -> TokenBudgetMonitor:
        self._bound()
        assert self._budget_monitor is not None
        return self._budget_monitor

    @property
    def escalator(self) -> FailureEscalator:
        self._bound()
        assert self._escalator is not None
        return self._escalator

    def prepare_repository(self) -> tuple[str, ...]:
        """Check the repository and keep the state and workspace dirs out of ``git status``."""

        self._git.ensure_repository()
        added: list[str] = []
        for path in (self._settings.state_dir, self._settings.pool.workspace_root):
            try:
                relative = path.resolve().relative_to(self._repo_root)
            except ValueError:
                continue
            pattern = f"/{relative.as_posix()}/"
            if pattern not in added and self._git.add_local_exclude(pattern):
                added.append(pattern)
        return tuple(added)

    def load(self) -> OrchestrationState:
        """Load persisted state, or create a fresh one (not yet saved)."""

        if self._state is not None:
            return self._state
        state = self._store.load()
        if state is None:
            budget = self._settings.budget
            state = OrchestrationState.new(
                token_budget=TokenBudget(
                    max_tokens=budget.token_budget,
                    warn_at=budget.warn_threshold,
                    handoff_at=budget.handoff_threshold,
                )
            )
        self._bind(state)
        return state

    def _bound(self) -> tuple[OrchestrationState, PhaseMachine]:
        if self._state is None or self._phases is None:
            self.load()
        assert self._state is not None and self._phases is not None
        return self._state, self._phases

    def _bind(self, state: OrchestrationState) -> None:
        if self._checkpoints is not None:
            self._checkpoints.disable_auto_checkpoint()
        settings = self._settings
        self._state = state
        self._phases = PhaseMachine(state, self._store, self._bus, logger=self._logger)
        self._pool = WorkspacePool(
            state,
            self._store,
            self._backend,
            workspace_root=settings.pool.workspace_root,
            branch_prefix=settings.pool.branch_prefix,
            base_branch=settings.pool.base_branch,
            bus=self._bus,
            logger=self._logger,
        )
        self._budget_monitor = TokenBudgetMonitor(state.token_budget, self._bus, self._logger)
        self._escalator = FailureEscalator(
            settings.escalation,
            self._alternative_finder,
            self._context_gatherer,
            self._learning_store,
            clock=self._clock,
            stuck_dir=settings.state_dir / STUCK_REPORTS_DIR_NAME,
            logger=self._logger,
        )
        self._checkpoints = CheckpointManager(
            state,
            self._store,
            settings.state_dir,
            self._backend.branch_head,
            retain=settings.checkpoint.retain,
            bus=self._bus,
            clock=self._clock,
            logger=self._logger,
        )
        if settings.checkpoint.auto_checkpoint:
            self._checkpoints.enable_auto_checkpoint()

    def _scheduler(self) -> Scheduler:
        if self._worker is None:
            raise ResourceError("no worker configured; pass --worker-command")
        return Scheduler(
            self.state,
            self._store,
            self.pool,
            self._worker,
            self.escalator,
            self.budget_monitor,
            self._bus,
            self._settings,
            logger=self._logger,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def plan(self, specs: TaskGraph | Iterable[TaskSpec]) -> TaskGraph:
        """Validate the task graph and move IDLE -> PLAN -> EXECUTE."""

        state, phases = self._bound()
        if state.current_phase is not Phase.IDLE:
            raise PhaseTransitionError(
                f"a run is already in progress (phase {state.current_phase.value}); "
                "resume it or clean up the state directory"
            )
        graph = specs if isinstance(specs, TaskGraph) else TaskGraph.from_specs(specs)
        phases.transition(Phase.PLAN, reason="task graph received")
        state.tasks = build_tasks(graph.specs)
        state.record_history("tasks_planned", task_ids=list(graph.task_ids))
        self._store.save(state)
        phases.transition(Phase.EXECUTE, reason=f"{len(graph)} tasks planned")
        self._logger.info("run_planned", tasks=len(graph))
        return graph

    async def execute(self) -> ExecutionReport:
        state, phases = self._bound()
        self._require_phase(Phase.EXECUTE)
        if not state.slots:
            self.pool.init(self._settings.pool.size)
        report = await self._scheduler().run()
        state.token_budget = self.budget_monitor.budget
        self._store.save(state)
        if report.handoff:
            partial_slots = {slot_id: task_id for task_id, slot_id in report.partial_slots}
            await self._handoff(report.partial, partial_slots)
            return report
        phases.transition(Phase.INTEGRATE, reason="all tasks terminal")
        return report

    async def integrate(self) -> IntegrationReport:
        state, phases = self._bound()
        self._require_phase(Phase.INTEGRATE)
        report = await asyncio.to_thread(
            self._merger.integrate,
            state,
            self._store,
            bus=self._bus,
            resolver=self._conflict_resolver,
        )
        self._last_integration = report
        phases.transition(Phase.REVIEW, reason=f"{len(report.merged)} branches merged")
        return report

    async def review(self) -> VerificationResult:
        state, phases = self._bound()
        self._require_phase(Phase.REVIEW)
        done_tasks = [state.task(task_id) for task_id in state.task_ids_with_status(TaskStatus.DONE)]
        result = await asyncio.to_thread(self._verifier.verify, self._repo_root, done_tasks)
        self._last_verification = result
        state.verification = result.to_dict()  # type: ignore[assignment]
        state.record_history("verification_completed", ok=result.ok, checks=len(result.checks))
        self._store.save(state)
        self._bus.emit(
            EventType.VERIFICATION_COMPLETED,
            {"ok": result.ok, "failed": [check.task_id for check in result.failures]},
        )
        if result.ok:
            phases.transition(Phase.COMPLETE, verified=True, reason="verification passed")
        else:
            self._logger.warning(
                "verification_failed",
                failed=[check.task_id for check in result.failures],
            )
        return result

    async def run(self, specs: TaskGraph | Iterable[TaskSpec]) -> RunReport:
        self.plan(specs)
        return await self._advance()

    async def resume(self, checkpoint_id: str | None = None) -> RunReport:
        """
        Continue a run in a new session from ``checkpoint_id`` (latest when ``None``).

        The checkpoint must match the repository's branch heads. The session
        counter is bumped (refused past ``max_sessions``) and the session token
        counter starts from zero.
        """
        current = self.load()
        restored = self.checkpoints.restore(checkpoint_id)
        next_index = max(restored.session_index, current.session_index) + 1
        if next_index > self._settings.max_sessions:
            raise ResourceError(
                f"session limit reached ({self._settings.max_sessions}); refusing to resume"
            )
        restored.session_index = next_index
        restored.checkpoint_sequence = max(restored.checkpoint_sequence, current.checkpoint_sequence)
        for known in current.checkpoint_ids:
            if known not in restored.checkpoint_ids:
                restored.checkpoint_ids.append(known)

        self._bind(restored)
        restored.token_budget = self.budget_monitor.reset_for_new_session()
        consumed = self._handoff_signal.consume()
        restored.record_history(
            "session_resumed",
            checkpoint_id=checkpoint_id or (consumed.checkpoint_id if consumed else None),
            session_index=next_index,
        )
        self._store.save(restored)
        self._logger.info(
            "session_resumed",
            checkpoint_id=checkpoint_id,
            session_index=next_index,
            phase=restored.current_phase.value,
        )

        if restored.current_phase is Phase.CHECKPOINTED:
            self.phases.resume()
        if restored.current_phase is Phase.EXECUTE and self._worker is not None:
            self._scheduler().recover_interrupted()
        return await self._advance()

    async def resolve_conflict(self, task_id: str, resolution: Resolution | str) -> RunReport:
        """External resolution of the pending conflict, followed by another integration pass."""

        state, _ = self._bound()
        pending = state.pending_conflict
        if pending is None:
            raise ValueError("no pending integration conflict")
        if pending.get("task_id") != task_id:
            raise ValueError(f"pending conflict belongs to task {pending.get('task_id')}, not {task_id}")
        self._merger.resolve_pending(state, self._store, Resolution(resolution), bus=self._bus)
        return await self._advance()

    def checkpoint(self, reason: str = "manual") -> Checkpoint:
        checkpoint = self.checkpoints.create(reason)
        self._last_checkpoint_id = checkpoint.id
        return checkpoint

    def status(self) -> dict[str, object]:
        state = self.state
        pending_signal = self._handoff_signal.read()
        return {
            "summary": state.summary(),
            "slots": [info.to_dict() for info in self.pool.status()],
            "budget": self.budget_monitor.status().to_dict(),
            "pending_conflict": state.pending_conflict,
            "checkpoints": list(state.checkpoint_ids[-5:]),
            "handoff": pending_signal.to_dict() if pending_signal is not None else None,
        }

    def report(self, status: RunStatus, *, conflict: ConflictDetected | None = None) -> RunReport:
        state = self.state

        def outcomes(task_status: TaskStatus) -> tuple[TaskOutcome, ...]:
            return tuple(
                TaskOutcome(
                    task_id=task_id,
                    status=task_status,
                    evidence=state.task(task_id).evidence,
                    reason=state.task(task_id).reason,
                )
                for task_id in state.task_ids_with_status(task_status)
            )

        conflict_payload = conflict.to_dict() if conflict is not None else state.pending_conflict
        return RunReport(
            status=status,
            phase=state.current_phase,
            session_index=state.session_index,
            done=outcomes(TaskStatus.DONE),
            skipped=outcomes(TaskStatus.SKIPPED),
            failed=outcomes(TaskStatus.FAILED),
            stuck_reports=tuple(report.to_dict() for report in state.stuck_reports),
            conflict=conflict_payload,  # type: ignore[arg-type]
            integration=self._last_integration,
            verification=self._last_verification,
            checkpoint_id=self._last_checkpoint_id,
            partial=self._last_partial,
            token_usage=state.token_budget.to_dict(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _advance(self) -> RunReport:
        while True:
            phase = self.state.current_phase
            if phase is Phase.IDLE:
                raise PhaseTransitionError("nothing planned; call plan() first")
            if phase is Phase.PLAN:
                self.phases.transition(Phase.EXECUTE, reason="continue")
            elif phase is Phase.EXECUTE:
                report = await self.execute()
                if report.handoff:
                    return self.report(RunStatus.HANDOFF)
            elif phase is Phase.INTEGRATE:
                try:
                    await self.integrate()
                except ConflictDetected as conflict:
                    self._logger.warning("run_halted_on_conflict", **conflict.to_dict())
                    return self.report(RunStatus.CONFLICT, conflict=conflict)
            elif phase is Phase.REVIEW:
                result = await self.review()
                if not result.ok:
                    return self.report(RunStatus.VERIFICATION_FAILED)
            elif phase is Phase.COMPLETE:
                self._logger.info("run_complete", session_index=self.state.session_index)
                return self.report(RunStatus.COMPLETE)
            else:
                return self.report(RunStatus.HANDOFF)

    async def _handoff(
        self, partial: tuple[str, ...], partial_slots: dict[str, str] | None = None
    ) -> HandoffRecord | None:
        state = self.state
        checkpoint = self.checkpoints.create(
            "handoff", partial_task_ids=partial, partial_slots=partial_slots
        )
        self._last_checkpoint_id = checkpoint.id
        self._last_partial = partial
        self.phases.transition(Phase.CHECKPOINTED, reason="token budget handoff")
        self._handoff_signal.write(
            checkpoint.id,
            reason="token_budget",
            token_usage=state.token_budget.to_dict(),  # type: ignore[arg-type]
            created_at=self._clock(),
        )
        self._logger.warning(
            "run_handed_off",
            checkpoint_id=checkpoint.id,
            partial=list(partial),
            used=state.token_budget.used,
        )
        return self._handoff_signal.read()

    def _require_phase(self, expected: Phase) -> None:
        current = self.state.current_phase
        if current is not expected:
            raise PhaseTransitionError(f"expected phase {expected.value}, current phase is {current.value}")


__all__ = [
    "CommandVerifier",
    "Orchestrator",
    "RunReport",
    "RunStatus",
    "TaskOutcome",
    "VerificationCheck",
    "VerificationResult",
    "Verifier",
]
