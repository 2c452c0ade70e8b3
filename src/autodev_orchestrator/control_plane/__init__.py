"""Control-plane public API."""

from autodev_orchestrator.control_plane.budgets import TokenBudgetMonitor
from autodev_orchestrator.control_plane.checkpoints import CheckpointManager, HandoffSignal
from autodev_orchestrator.control_plane.controller import (
    CommandVerifier,
    Orchestrator,
    RunReport,
    RunStatus,
)
from autodev_orchestrator.control_plane.escalation import FailureEscalator
from autodev_orchestrator.control_plane.phases import PhaseMachine
from autodev_orchestrator.control_plane.scheduler import Scheduler
from autodev_orchestrator.control_plane.workers import (
    CommandWorker,
    DispatchRequest,
    Worker,
    WorkerResult,
)

__all__ = [
    "CheckpointManager",
    "CommandVerifier",
    "CommandWorker",
    "DispatchRequest",
    "FailureEscalator",
    "HandoffSignal",
    "Orchestrator",
    "PhaseMachine",
    "RunReport",
    "RunStatus",
    "Scheduler",
    "TokenBudgetMonitor",
    "Worker",
    "WorkerResult",
]
