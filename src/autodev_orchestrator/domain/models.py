"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, NoReturn, TypeVar

from autodev_orchestrator.constants import (
    CHECKPOINT_SCHEMA_VERSION,
    DEFAULT_HANDOFF_THRESHOLD,
    DEFAULT_WARN_THRESHOLD,
    SLOT_ID_PREFIX,
    STATE_SCHEMA_VERSION,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TEXT = 8192
_MAX_HISTORY = 2000
_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_NATURAL_SPLIT_RE = re.compile(r"(\d+)")
_EnumT = TypeVar("_EnumT", bound=StrEnum)


class TaskStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.SKIPPED})


class SlotStatus(StrEnum):
    IDLE = "idle"
    BUSY = "busy"


class EscalationLevel(StrEnum):
    RETRY = "retry"
    PIVOT = "pivot"
    RESEARCH = "research"
    ASK = "ask"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def next_level(self) -> EscalationLevel:
        if self is EscalationLevel.ASK:
            return self
        return _LEVELS_IN_ORDER[self.rank + 1]


_LEVELS_IN_ORDER: tuple[EscalationLevel, ...] = (
    EscalationLevel.RETRY,
    EscalationLevel.PIVOT,
    EscalationLevel.RESEARCH,
    EscalationLevel.ASK,
)
_LEVEL_RANK = {level: index for index, level in enumerate(_LEVELS_IN_ORDER)}


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    LOGIC = "logic"
    RESOURCE = "resource"


class Phase(StrEnum):
    IDLE = "IDLE"
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    INTEGRATE = "INTEGRATE"
    REVIEW = "REVIEW"
    COMPLETE = "COMPLETE"
    CHECKPOINTED = "CHECKPOINTED"


def natural_id_key(task_id: str) -> tuple[object, ...]:
    """Sort key comparing digit runs numerically (``T2 < T10``) with a lexical fallback."""

    parts: list[tuple[int, int, str]] = []
    for chunk in _NATURAL_SPLIT_RE.split(task_id):
        if chunk.isdigit():
            parts.append((0, int(chunk), chunk))
        else:
            parts.append((1, 0, chunk))
    return (tuple(parts), task_id)


def sorted_ids(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted(set(values), key=natural_id_key))


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _threshold_tokens(max_tokens: int, fraction: float) -> int:
    # Round away float noise first: 100 * 0.29 is 28.999999999999996.
    return math.ceil(round(max_tokens * fraction, 9))


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def validate_task_id(value: object, path: str = "task_id") -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if _TASK_ID_RE.fullmatch(normalized) is None or ".." in normalized:
        _fail(path, f"unsupported task id {value!r} (letters, digits, '.', '_', '-')")
    return normalized


def _as_str(value: object, path: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        _fail(path, "must not be empty")
    if len(value) > _MAX_TEXT:
        return value[:_MAX_TEXT]
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, allow_empty=True)


def _as_int(value: object, path: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    return float(value)


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {type(value).__name__}")
    return value


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected list, got {type(value).__name__}")
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    text = _as_str(value, path)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        _fail(path, f"invalid ISO timestamp {text!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _as_enum(enum_type: type[_EnumT], value: object, path: str) -> _EnumT:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type(value)
        except ValueError:
            pass
    allowed = ", ".join(item.value for item in enum_type)
    _fail(path, f"must be one of: {allowed}")


def _first_present(data: Mapping[str, object], *keys: str) -> object:
    for key in keys:
        if key in data:
            return data[key]
    return None


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """One item of the task graph input produced by an external decomposer."""

    id: str
    description: str
    files: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    verification_command: str | None = None
    phase_group: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", validate_task_id(self.id, "task.id"))
        if not isinstance(self.description, str):
            _fail(f"task[{self.id}].description", "expected string")
        normalized_files: list[str] = []
        for raw in self.files:
            cleaned = raw.strip().replace("\\", "/")
            while cleaned.startswith("./"):
                cleaned = cleaned[2:]
            if cleaned and cleaned not in normalized_files:
                normalized_files.append(cleaned)
        object.__setattr__(self, "files", tuple(normalized_files))
        dependencies = tuple(
            validate_task_id(item, f"task[{self.id}].depends_on") for item in self.depends_on
        )
        object.__setattr__(self, "depends_on", sorted_ids(dependencies))
        if self.phase_group < 0:
            _fail(f"task[{self.id}].phase_group", "must be >= 0")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "files": list(self.files),
            "depends_on": list(self.depends_on),
            "verification_command": self.verification_command,
            "phase_group": self.phase_group,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskSpec:
        """Parse an input item; accepts ``dependsOn``/``verificationCommand`` spellings."""

        payload = _as_mapping(data, "task")
        task_id = validate_task_id(payload.get("id"), "task.id")
        path = f"task[{task_id}]"
        phase_group = _first_present(payload, "phase_group", "phaseGroup")
        return cls(
            id=task_id,
            description=_as_str(payload.get("description", ""), f"{path}.description", allow_empty=True),
            files=_as_str_tuple(payload.get("files"), f"{path}.files"),
            depends_on=_as_str_tuple(
                _first_present(payload, "depends_on", "dependsOn"), f"{path}.depends_on"
            ),
            verification_command=_as_optional_str(
                _first_present(payload, "verification_command", "verificationCommand"),
                f"{path}.verification_command",
            ),
            phase_group=0 if phase_group is None else _as_int(phase_group, f"{path}.phase_group"),
        )


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """Per-task escalation ledger owned by the failure escalator."""

    task_id: str
    level: EscalationLevel = EscalationLevel.RETRY
    retry_count: int = 0
    pivot_count: int = 0
    research_count: int = 0
    transient_count: int = 0
    last_error: str = ""
    error_kind: ErrorKind = ErrorKind.LOGIC
    outcome: str | None = None
    history: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        path = f"failure[{self.task_id}]"
        for name in ("retry_count", "pivot_count", "research_count", "transient_count"):
            if getattr(self, name) < 0:
                _fail(f"{path}.{name}", "must be >= 0")
        if self.pivot_count > 0 and self.level.rank < EscalationLevel.PIVOT.rank:
            _fail(f"{path}.pivot_count", "cannot be counted before reaching pivot level")
        if self.research_count > 0 and self.level.rank < EscalationLevel.RESEARCH.rank:
            _fail(f"{path}.research_count", "cannot be counted before reaching research level")

    @property
    def is_terminal(self) -> bool:
        return self.level is EscalationLevel.ASK

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "level": self.level.value,
            "retry_count": self.retry_count,
            "pivot_count": self.pivot_count,
            "research_count": self.research_count,
            "transient_count": self.transient_count,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value,
            "outcome": self.outcome,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FailureRecord:
        payload = _as_mapping(data, "failure")
        task_id = validate_task_id(payload.get("task_id"), "failure.task_id")
        path = f"failure[{task_id}]"
        return cls(
            task_id=task_id,
            level=_as_enum(EscalationLevel, payload.get("level"), f"{path}.level"),
            retry_count=_as_int(payload.get("retry_count", 0), f"{path}.retry_count"),
            pivot_count=_as_int(payload.get("pivot_count", 0), f"{path}.pivot_count"),
            research_count=_as_int(payload.get("research_count", 0), f"{path}.research_count"),
            transient_count=_as_int(payload.get("transient_count", 0), f"{path}.transient_count"),
            last_error=_as_str(payload.get("last_error", ""), f"{path}.last_error", allow_empty=True),
            error_kind=_as_enum(ErrorKind, payload.get("error_kind", "logic"), f"{path}.error_kind"),
            outcome=_as_optional_str(payload.get("outcome"), f"{path}.outcome"),
            history=_as_str_tuple(payload.get("history"), f"{path}.history"),
        )


@dataclass(frozen=True, slots=True)
class Task:
    """Runtime task record; replaced (never mutated) on every status change."""

    id: str
    description: str
    files: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    verification_command: str | None = None
    phase_group: int = 0
    status: TaskStatus = TaskStatus.PENDING
    failure: FailureRecord | None = None
    evidence: str | None = None
    reason: str | None = None
    attempts: int = 0

    def __post_init__(self) -> None:
        if self.failure is not None and self.failure.task_id != self.id:
            _fail(f"task[{self.id}].failure", "task_id mismatch")
        if self.attempts < 0:
            _fail(f"task[{self.id}].attempts", "must be >= 0")

    @classmethod
    def from_spec(cls, spec: TaskSpec) -> Task:
        return cls(
            id=spec.id,
            description=spec.description,
            files=spec.files,
            depends_on=spec.depends_on,
            verification_command=spec.verification_command,
            phase_group=spec.phase_group,
        )

    @property
    def spec(self) -> TaskSpec:
        return TaskSpec(
            id=self.id,
            description=self.description,
            files=self.files,
            depends_on=self.depends_on,
            verification_command=self.verification_command,
            phase_group=self.phase_group,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, JSONValue]:
        payload = self.spec.to_dict()
        payload.update(
            {
                "status": self.status.value,
                "failure": self.failure.to_dict() if self.failure is not None else None,
                "evidence": self.evidence,
                "reason": self.reason,
                "attempts": self.attempts,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        payload = _as_mapping(data, "task")
        spec = TaskSpec.from_dict(payload)
        path = f"task[{spec.id}]"
        failure_raw = payload.get("failure")
        return replace(
            cls.from_spec(spec),
            status=_as_enum(TaskStatus, payload.get("status", "pending"), f"{path}.status"),
            failure=FailureRecord.from_dict(_as_mapping(failure_raw, f"{path}.failure"))
            if failure_raw is not None
            else None,
            evidence=_as_optional_str(payload.get("evidence"), f"{path}.evidence"),
            reason=_as_optional_str(payload.get("reason"), f"{path}.reason"),
            attempts=_as_int(payload.get("attempts", 0), f"{path}.attempts"),
        )


@dataclass(frozen=True, slots=True)
class WorkspaceSlot:
    """One reusable isolated execution context bound to a worktree path."""

    id: str
    path: str
    status: SlotStatus = SlotStatus.IDLE
    branch_ref: str | None = None
    assigned_task_id: str | None = None
    last_branch_ref: str | None = None

    def __post_init__(self) -> None:
        path = f"slot[{self.id}]"
        if not self.id.startswith(SLOT_ID_PREFIX) or not self.id[len(SLOT_ID_PREFIX) :].isdigit():
            _fail(f"{path}.id", f"slot ids must look like {SLOT_ID_PREFIX}<n>")
        if self.status is SlotStatus.BUSY:
            if not self.assigned_task_id:
                _fail(f"{path}.assigned_task_id", "busy slot requires an assigned task")
            if not self.branch_ref:
                _fail(f"{path}.branch_ref", "busy slot requires a branch")
        elif self.assigned_task_id is not None:
            _fail(f"{path}.assigned_task_id", "idle slot cannot reference a task")

    @property
    def number(self) -> int:
        return int(self.id[len(SLOT_ID_PREFIX) :])

    @property
    def is_busy(self) -> bool:
        return self.status is SlotStatus.BUSY

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "path": self.path,
            "status": self.status.value,
            "branch_ref": self.branch_ref,
            "assigned_task_id": self.assigned_task_id,
            "last_branch_ref": self.last_branch_ref,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkspaceSlot:
        payload = _as_mapping(data, "slot")
        slot_id = _as_str(payload.get("id"), "slot.id")
        path = f"slot[{slot_id}]"
        return cls(
            id=slot_id,
            path=_as_str(payload.get("path"), f"{path}.path"),
            status=_as_enum(SlotStatus, payload.get("status", "idle"), f"{path}.status"),
            branch_ref=_as_optional_str(payload.get("branch_ref"), f"{path}.branch_ref"),
            assigned_task_id=_as_optional_str(
                payload.get("assigned_task_id"), f"{path}.assigned_task_id"
            ),
            last_branch_ref=_as_optional_str(
                payload.get("last_branch_ref"), f"{path}.last_branch_ref"
            ),
        )


@dataclass(frozen=True, slots=True)
class TokenBudget:
    """Consumable token counter with warn and handoff thresholds (fractions of max)."""

    max_tokens: int
    used: int = 0
    warn_at: float = DEFAULT_WARN_THRESHOLD
    handoff_at: float = DEFAULT_HANDOFF_THRESHOLD
    warned: bool = False
    handoff_fired: bool = False
    lifetime_used: int = 0
    per_phase: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            _fail("token_budget.max_tokens", "must be > 0")
        if self.used < 0:
            _fail("token_budget.used", "must be >= 0")
        if not 0.0 < self.warn_at < self.handoff_at <= 1.0:
            _fail("token_budget", "thresholds must satisfy 0 < warn_at < handoff_at <= 1")
        object.__setattr__(self, "per_phase", dict(sorted(self.per_phase.items())))

    @property
    def ratio(self) -> float:
        return self.used / self.max_tokens

    @property
    def warn_tokens(self) -> int:
        return _threshold_tokens(self.max_tokens, self.warn_at)

    @property
    def handoff_tokens(self) -> int:
        return _threshold_tokens(self.max_tokens, self.handoff_at)

    @property
    def remaining(self) -> int:
        return max(0, self.max_tokens - self.used)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_tokens": self.max_tokens,
            "used": self.used,
            "warn_at": self.warn_at,
            "handoff_at": self.handoff_at,
            "warned": self.warned,
            "handoff_fired": self.handoff_fired,
            "lifetime_used": self.lifetime_used,
            "per_phase": dict(self.per_phase),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TokenBudget:
        payload = _as_mapping(data, "token_budget")
        per_phase_raw = _as_mapping(payload.get("per_phase", {}), "token_budget.per_phase")
        return cls(
            max_tokens=_as_int(payload.get("max_tokens"), "token_budget.max_tokens", minimum=1),
            used=_as_int(payload.get("used", 0), "token_budget.used"),
            warn_at=_as_float(payload.get("warn_at", DEFAULT_WARN_THRESHOLD), "token_budget.warn_at"),
            handoff_at=_as_float(
                payload.get("handoff_at", DEFAULT_HANDOFF_THRESHOLD), "token_budget.handoff_at"
            ),
            warned=_as_bool(payload.get("warned", False), "token_budget.warned"),
            handoff_fired=_as_bool(payload.get("handoff_fired", False), "token_budget.handoff_fired"),
            lifetime_used=_as_int(payload.get("lifetime_used", 0), "token_budget.lifetime_used"),
            per_phase={
                str(key): _as_int(value, f"token_budget.per_phase.{key}")
                for key, value in per_phase_raw.items()
            },
        )


@dataclass(frozen=True, slots=True)
class StuckReport:
    """Structured terminal-failure report surfaced to the caller at the Ask level."""

    task_id: str
    description: str
    level: EscalationLevel
    attempts_summary: tuple[str, ...]
    last_error: str
    error_kind: ErrorKind
    created_at: datetime

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "level": self.level.value,
            "attempts_summary": list(self.attempts_summary),
            "last_error": self.last_error,
            "error_kind": self.error_kind.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StuckReport:
        payload = _as_mapping(data, "stuck_report")
        task_id = validate_task_id(payload.get("task_id"), "stuck_report.task_id")
        path = f"stuck_report[{task_id}]"
        return cls(
            task_id=task_id,
            description=_as_str(payload.get("description", ""), f"{path}.description", allow_empty=True),
            level=_as_enum(EscalationLevel, payload.get("level"), f"{path}.level"),
            attempts_summary=_as_str_tuple(payload.get("attempts_summary"), f"{path}.attempts_summary"),
            last_error=_as_str(payload.get("last_error", ""), f"{path}.last_error", allow_empty=True),
            error_kind=_as_enum(ErrorKind, payload.get("error_kind", "logic"), f"{path}.error_kind"),
            created_at=_as_datetime(payload.get("created_at"), f"{path}.created_at"),
        )


@dataclass(frozen=True, slots=True)
class SlotSnapshot:
    """Slot location and branch head captured in a checkpoint (content lives in git)."""

    slot_id: str
    status: SlotStatus
    path: str
    branch_ref: str | None = None
    head: str | None = None
    assigned_task_id: str | None = None
    partial: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "slot_id": self.slot_id,
            "status": self.status.value,
            "path": self.path,
            "branch_ref": self.branch_ref,
            "head": self.head,
            "assigned_task_id": self.assigned_task_id,
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SlotSnapshot:
        payload = _as_mapping(data, "slot_snapshot")
        slot_id = _as_str(payload.get("slot_id"), "slot_snapshot.slot_id")
        path = f"slot_snapshot[{slot_id}]"
        return cls(
            slot_id=slot_id,
            status=_as_enum(SlotStatus, payload.get("status"), f"{path}.status"),
            path=_as_str(payload.get("path"), f"{path}.path"),
            branch_ref=_as_optional_str(payload.get("branch_ref"), f"{path}.branch_ref"),
            head=_as_optional_str(payload.get("head"), f"{path}.head"),
            assigned_task_id=_as_optional_str(
                payload.get("assigned_task_id"), f"{path}.assigned_task_id"
            ),
            partial=_as_bool(payload.get("partial", False), f"{path}.partial"),
        )


@dataclass(slots=True)
class OrchestrationState:
    """
    Single process-wide orchestration record.

    Tasks and slots are frozen records replaced through ``put_task``/``put_slot``;
    the coordinator owns every mutation and persists after each one.
    """

    session_id: str
    token_budget: TokenBudget
    current_phase: Phase = Phase.IDLE
    resume_phase: Phase | None = None
    session_index: int = 1
    tasks: dict[str, Task] = field(default_factory=dict)
    slots: list[WorkspaceSlot] = field(default_factory=list)
    history: list[dict[str, JSONValue]] = field(default_factory=list)
    checkpoint_ids: list[str] = field(default_factory=list)
    checkpoint_sequence: int = 0
    stuck_reports: list[StuckReport] = field(default_factory=list)
    merged_task_ids: list[str] = field(default_factory=list)
    integration_skipped_task_ids: list[str] = field(default_factory=list)
    pending_conflict: dict[str, JSONValue] | None = None
    verification: dict[str, JSONValue] | None = None
    schema_version: int = STATE_SCHEMA_VERSION

    @classmethod
    def new(
        cls,
        *,
        token_budget: TokenBudget,
        session_id: str | None = None,
    ) -> OrchestrationState:
        return cls(
            session_id=session_id if session_id is not None else uuid.uuid4().hex,
            token_budget=token_budget,
        )

    # -- tasks ------------------------------------------------------------

    def task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise KeyError(f"unknown task id: {task_id}") from None

    def put_task(self, task: Task) -> None:
        self.tasks[task.id] = task

    def task_ids_with_status(self, *statuses: TaskStatus) -> tuple[str, ...]:
        wanted = frozenset(statuses)
        return sorted_ids(task.id for task in self.tasks.values() if task.status in wanted)

    def ready_task_ids(self) -> tuple[str, ...]:
        ready: list[str] = []
        for task in self.tasks.values():
            if task.status is not TaskStatus.PENDING:
                continue
            if all(self.tasks[dep].status is TaskStatus.DONE for dep in task.depends_on):
                ready.append(task.id)
        return sorted_ids(ready)

    def dependents_count(self) -> dict[str, int]:
        counts = dict.fromkeys(self.tasks, 0)
        for task in self.tasks.values():
            for dependency_id in task.depends_on:
                if dependency_id in counts:
                    counts[dependency_id] += 1
        return counts

    def all_tasks_terminal(self) -> bool:
        return all(task.is_terminal for task in self.tasks.values())

    # -- slots ------------------------------------------------------------

    def slot(self, slot_id: str) -> WorkspaceSlot:
        for candidate in self.slots:
            if candidate.id == slot_id:
                return candidate
        raise KeyError(f"unknown slot id: {slot_id}")

    def put_slot(self, slot: WorkspaceSlot) -> None:
        for index, candidate in enumerate(self.slots):
            if candidate.id == slot.id:
                self.slots[index] = slot
                return
        self.slots.append(slot)
        self.slots.sort(key=lambda item: item.number)

    def slot_for_task(self, task_id: str) -> WorkspaceSlot | None:
        for candidate in self.slots:
            if candidate.is_busy and candidate.assigned_task_id == task_id:
                return candidate
        return None

    def busy_slots(self) -> tuple[WorkspaceSlot, ...]:
        return tuple(slot for slot in self.slots if slot.is_busy)

    def idle_slots(self) -> tuple[WorkspaceSlot, ...]:
        return tuple(slot for slot in self.slots if not slot.is_busy)

    # -- bookkeeping ------------------------------------------------------

    def record_history(self, event: str, **fields: JSONValue) -> None:
        entry: dict[str, JSONValue] = {"at": utc_now().isoformat(), "event": event}
        entry.update(fields)
        self.history.append(entry)
        if len(self.history) > _MAX_HISTORY:
            del self.history[: len(self.history) - _MAX_HISTORY]

    def check_invariants(self) -> None:
        """Raise ``ValueError`` when slot/task assignment invariants are violated."""

        seen: dict[str, str] = {}
        for slot in self.busy_slots():
            task_id = slot.assigned_task_id
            assert task_id is not None
            if task_id in seen:
                _fail("state.slots", f"task {task_id} assigned to {seen[task_id]} and {slot.id}")
            seen[task_id] = slot.id
            if task_id not in self.tasks:
                _fail(f"state.slots[{slot.id}]", f"references unknown task {task_id}")
            if self.tasks[task_id].status is not TaskStatus.ASSIGNED:
                _fail(f"state.slots[{slot.id}]", f"task {task_id} is not assigned")
        for task in self.tasks.values():
            if task.status is TaskStatus.ASSIGNED and task.id not in seen:
                _fail(f"state.tasks[{task.id}]", "assigned task has no busy slot")

    def summary(self) -> dict[str, JSONValue]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status.value] += 1
        return {
            "phase": self.current_phase.value,
            "session_index": self.session_index,
            "tasks": counts,
            "slots": {
                "total": len(self.slots),
                "busy": len(self.busy_slots()),
            },
            "tokens": {
                "used": self.token_budget.used,
                "max": self.token_budget.max_tokens,
            },
        }

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "session_id": self.session_id,
            "session_index": self.session_index,
            "current_phase": self.current_phase.value,
            "resume_phase": self.resume_phase.value if self.resume_phase is not None else None,
            "token_budget": self.token_budget.to_dict(),
            "tasks": [self.tasks[task_id].to_dict() for task_id in sorted_ids(self.tasks)],
            "slots": [slot.to_dict() for slot in self.slots],
            "history": list(self.history),
            "checkpoint_ids": list(self.checkpoint_ids),
            "checkpoint_sequence": self.checkpoint_sequence,
            "stuck_reports": [report.to_dict() for report in self.stuck_reports],
            "merged_task_ids": list(self.merged_task_ids),
            "integration_skipped_task_ids": list(self.integration_skipped_task_ids),
            "pending_conflict": self.pending_conflict,
            "verification": self.verification,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OrchestrationState:
        payload = _as_mapping(data, "state")
        version = _as_int(payload.get("schema_version"), "state.schema_version", minimum=1)
        if version != STATE_SCHEMA_VERSION:
            _fail("state.schema_version", f"unsupported version {version}")
        tasks_raw = payload.get("tasks", [])
        if not isinstance(tasks_raw, list):
            _fail("state.tasks", "expected list")
        slots_raw = payload.get("slots", [])
        if not isinstance(slots_raw, list):
            _fail("state.slots", "expected list")
        history_raw = payload.get("history", [])
        if not isinstance(history_raw, list):
            _fail("state.history", "expected list")
        reports_raw = payload.get("stuck_reports", [])
        if not isinstance(reports_raw, list):
            _fail("state.stuck_reports", "expected list")
        resume_raw = payload.get("resume_phase")
        pending_conflict = payload.get("pending_conflict")
        verification = payload.get("verification")

        tasks = [Task.from_dict(item) for item in tasks_raw]
        state = cls(
            session_id=_as_str(payload.get("session_id"), "state.session_id"),
            token_budget=TokenBudget.from_dict(_as_mapping(payload.get("token_budget"), "state.token_budget")),
            current_phase=_as_enum(Phase, payload.get("current_phase"), "state.current_phase"),
            resume_phase=_as_enum(Phase, resume_raw, "state.resume_phase")
            if resume_raw is not None
            else None,
            session_index=_as_int(payload.get("session_index", 1), "state.session_index", minimum=1),
            tasks={task.id: task for task in tasks},
            slots=sorted(
                (WorkspaceSlot.from_dict(item) for item in slots_raw),
                key=lambda item: item.number,
            ),
            history=[dict(_as_mapping(item, "state.history[]")) for item in history_raw],  # type: ignore[misc]
            checkpoint_ids=list(_as_str_tuple(payload.get("checkpoint_ids"), "state.checkpoint_ids")),
            checkpoint_sequence=_as_int(payload.get("checkpoint_sequence", 0), "state.checkpoint_sequence"),
            stuck_reports=[StuckReport.from_dict(item) for item in reports_raw],
            merged_task_ids=list(_as_str_tuple(payload.get("merged_task_ids"), "state.merged_task_ids")),
            integration_skipped_task_ids=list(
                _as_str_tuple(
                    payload.get("integration_skipped_task_ids"), "state.integration_skipped_task_ids"
                )
            ),
            pending_conflict=dict(_as_mapping(pending_conflict, "state.pending_conflict"))  # type: ignore[arg-type]
            if pending_conflict is not None
            else None,
            verification=dict(_as_mapping(verification, "state.verification"))  # type: ignore[arg-type]
            if verification is not None
            else None,
        )
        for task in tasks:
            for dependency_id in task.depends_on:
                if dependency_id not in state.tasks:
                    _fail(f"state.tasks[{task.id}]", f"unknown dependency {dependency_id}")
        return state

    def copy(self) -> OrchestrationState:
        return OrchestrationState.from_dict(json.loads(json.dumps(self.to_dict())))


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot enabling resume after interruption."""

    id: str
    sequence: int
    created_at: datetime
    reason: str
    phase: Phase
    completed_task_ids: tuple[str, ...]
    pending_task_ids: tuple[str, ...]
    failed_task_ids: tuple[str, ...]
    skipped_task_ids: tuple[str, ...]
    partial_task_ids: tuple[str, ...]
    slot_snapshots: tuple[SlotSnapshot, ...]
    token_usage: Mapping[str, JSONValue]
    resume_hint: str
    state: Mapping[str, JSONValue]
    schema_version: int = CHECKPOINT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        if self.sequence < 1:
            _fail(f"checkpoint[{self.id}].sequence", "must be >= 1")
        if not self.reason.strip():
            _fail(f"checkpoint[{self.id}].reason", "must not be empty")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "id": self.id,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "reason": self.reason,
            "phase": self.phase.value,
            "completed_task_ids": list(self.completed_task_ids),
            "pending_task_ids": list(self.pending_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "skipped_task_ids": list(self.skipped_task_ids),
            "partial_task_ids": list(self.partial_task_ids),
            "slot_snapshots": [snapshot.to_dict() for snapshot in self.slot_snapshots],
            "token_usage": dict(self.token_usage),
            "resume_hint": self.resume_hint,
            "state": dict(self.state),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Checkpoint:
        payload = _as_mapping(data, "checkpoint")
        checkpoint_id = _as_str(payload.get("id"), "checkpoint.id")
        path = f"checkpoint[{checkpoint_id}]"
        version = _as_int(payload.get("schema_version"), f"{path}.schema_version", minimum=1)
        if version != CHECKPOINT_SCHEMA_VERSION:
            _fail(f"{path}.schema_version", f"unsupported version {version}")
        snapshots_raw = payload.get("slot_snapshots", [])
        if not isinstance(snapshots_raw, list):
            _fail(f"{path}.slot_snapshots", "expected list")
        return cls(
            id=checkpoint_id,
            sequence=_as_int(payload.get("sequence"), f"{path}.sequence", minimum=1),
            created_at=_as_datetime(payload.get("created_at"), f"{path}.created_at"),
            reason=_as_str(payload.get("reason"), f"{path}.reason"),
            phase=_as_enum(Phase, payload.get("phase"), f"{path}.phase"),
            completed_task_ids=_as_str_tuple(payload.get("completed_task_ids"), f"{path}.completed_task_ids"),
            pending_task_ids=_as_str_tuple(payload.get("pending_task_ids"), f"{path}.pending_task_ids"),
            failed_task_ids=_as_str_tuple(payload.get("failed_task_ids"), f"{path}.failed_task_ids"),
            skipped_task_ids=_as_str_tuple(payload.get("skipped_task_ids"), f"{path}.skipped_task_ids"),
            partial_task_ids=_as_str_tuple(payload.get("partial_task_ids"), f"{path}.partial_task_ids"),
            slot_snapshots=tuple(SlotSnapshot.from_dict(item) for item in snapshots_raw),
            token_usage=dict(_as_mapping(payload.get("token_usage", {}), f"{path}.token_usage")),  # type: ignore[arg-type]
            resume_hint=_as_str(payload.get("resume_hint", ""), f"{path}.resume_hint", allow_empty=True),
            state=dict(_as_mapping(payload.get("state"), f"{path}.state")),  # type: ignore[arg-type]
        )

    def restore_state(self) -> OrchestrationState:
        return OrchestrationState.from_dict(self.state)


def build_tasks(specs: Sequence[TaskSpec]) -> dict[str, Task]:
    return {spec.id: Task.from_spec(spec) for spec in specs}


def with_status(task: Task, status: TaskStatus, **changes: object) -> Task:
    return replace(task, status=status, **changes)  # type: ignore[arg-type]


__all__ = [
    "Checkpoint",
    "ErrorKind",
    "EscalationLevel",
    "FailureRecord",
    "JSONValue",
    "OrchestrationState",
    "Phase",
    "SlotSnapshot",
    "SlotStatus",
    "StuckReport",
    "TERMINAL_TASK_STATUSES",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "TokenBudget",
    "WorkspaceSlot",
    "build_tasks",
    "canonical_json",
    "natural_id_key",
    "sorted_ids",
    "utc_now",
    "validate_task_id",
    "with_status",
]
