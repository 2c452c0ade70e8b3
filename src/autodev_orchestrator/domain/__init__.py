"""Domain types shared across planes: tasks, slots, budgets, checkpoints, and events."""

from autodev_orchestrator.domain.errors import (
    BudgetExceeded,
    CheckpointInconsistentError,
    CheckpointNotFoundError,
    ConflictDetected,
    ConsistencyError,
    CyclicDependencyError,
    InvalidTaskGraphError,
    LogicError,
    NoSlotAvailableError,
    OrchestratorError,
    PhaseTransitionError,
    ResourceError,
    StateCorruptedError,
    TransientError,
    WorkspaceHealthError,
)
from autodev_orchestrator.domain.events import EventType, OrchestratorEvent
from autodev_orchestrator.domain.models import (
    Checkpoint,
    ErrorKind,
    EscalationLevel,
    FailureRecord,
    OrchestrationState,
    Phase,
    SlotSnapshot,
    SlotStatus,
    StuckReport,
    Task,
    TaskSpec,
    TaskStatus,
    TokenBudget,
    WorkspaceSlot,
    natural_id_key,
)

__all__ = [
    "BudgetExceeded",
    "Checkpoint",
    "CheckpointInconsistentError",
    "CheckpointNotFoundError",
    "ConflictDetected",
    "ConsistencyError",
    "CyclicDependencyError",
    "ErrorKind",
    "EscalationLevel",
    "EventType",
    "FailureRecord",
    "InvalidTaskGraphError",
    "LogicError",
    "NoSlotAvailableError",
    "OrchestrationState",
    "OrchestratorError",
    "OrchestratorEvent",
    "Phase",
    "PhaseTransitionError",
    "ResourceError",
    "SlotSnapshot",
    "SlotStatus",
    "StateCorruptedError",
    "StuckReport",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "TokenBudget",
    "TransientError",
    "WorkspaceHealthError",
    "WorkspaceSlot",
    "natural_id_key",
]
