"""
Shared test doubles and git helpers.

``FakeWorkspaceBackend`` keeps branches and checkouts in memory so pool and
scheduler tests run without git. ``ScriptedWorker`` replays per-task outcomes.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from autodev_orchestrator.config.schema import default_config, merge_config
from autodev_orchestrator.config.settings import RuntimeSettings
from autodev_orchestrator.control_plane.budgets import TokenBudgetMonitor
from autodev_orchestrator.control_plane.escalation import FailureEscalator
from autodev_orchestrator.control_plane.scheduler import Scheduler
from autodev_orchestrator.control_plane.workers import DispatchRequest, WorkerResult
from autodev_orchestrator.domain.models import (
    FailureRecord,
    OrchestrationState,
    TaskSpec,
    TokenBudget,
    build_tasks,
)
from autodev_orchestrator.integration_plane.workspace_pool import WorkspacePool
from autodev_orchestrator.observability.events import EventBus
from autodev_orchestrator.persistence.state_store import StateStore

Outcome = WorkerResult | BaseException | Callable[[Path, DispatchRequest], WorkerResult]


# ---------------------------------------------------------------------------
# Settings and specs
# ---------------------------------------------------------------------------


def make_settings(repo_root: Path, **sections: Mapping[str, object]) -> RuntimeSettings:
    """Runtime settings from defaults with per-section overrides (``pool={"size": 2}``)."""

    config = merge_config(default_config(), {key: dict(value) for key, value in sections.items()})
    return RuntimeSettings.from_config(config, repo_root=repo_root)


def fast_settings(repo_root: Path, **sections: Mapping[str, object]) -> RuntimeSettings:
    """Settings without back-off delays, for tests that exercise retries."""

    overrides: dict[str, Mapping[str, object]] = {
        "escalation": {
            "backoff_base_seconds": 0.0,
            "backoff_max_seconds": 0.0,
        },
        "scheduler": {"handoff_grace_seconds": 0.0},
    }
    for key, value in sections.items():
        overrides[key] = {**overrides.get(key, {}), **value}
    return make_settings(repo_root, **overrides)


def spec(task_id: str, *depends_on: str, files: Sequence[str] = (), verify: str | None = None) -> TaskSpec:
    return TaskSpec(
        id=task_id,
        description=f"implement {task_id}",
        files=tuple(files),
        depends_on=tuple(depends_on),
        verification_command=verify,
    )


def new_state(
    specs: Sequence[TaskSpec] = (),
    *,
    max_tokens: int = 10_000,
    warn_at: float = 0.7,
    handoff_at: float = 0.8,
) -> OrchestrationState:
    state = OrchestrationState.new(
        token_budget=TokenBudget(max_tokens=max_tokens, warn_at=warn_at, handoff_at=handoff_at),
        session_id="test-session",
    )
    state.tasks = build_tasks(specs)
    return state


# ---------------------------------------------------------------------------
# Workspace backend
# ---------------------------------------------------------------------------


class FakeWorkspaceBackend:
    """In-memory ``WorkspaceBackend``; commits are sequential ``c<n>`` ids."""

    def __init__(self) -> None:
        self.heads: dict[str, str] = {}
        self.checkouts: dict[Path, str | None] = {}
        self.removed: list[Path] = []
        self.commits = 0
        self.fail_materialize: dict[str, BaseException] = {}

    def materialize(self, path: Path, branch: str, *, base: str) -> Path:
        failure = self.fail_materialize.pop(branch, None)
        if failure is not None:
            raise failure
        self.heads.setdefault(branch, f"base:{base}")
        self.checkouts[path] = branch
        return path

    def finalize(self, path: Path, branch: str, *, keep: bool, message: str) -> str | None:
        if self.checkouts.get(path) != branch:
            return None
        commit = None
        if keep:
            self.commits += 1
            commit = f"c{self.commits}"
            self.heads[branch] = commit
        self.checkouts[path] = None
        return commit

    def remove(self, path: Path) -> None:
        self.checkouts.pop(path, None)
        self.removed.append(path)

    def branch_head(self, branch: str) -> str | None:
        return self.heads.get(branch)

    def current_branch(self, path: Path) -> str | None:
        return self.checkouts.get(path)

    def path_exists(self, path: Path) -> bool:
        return path in self.checkouts

    def delete_branches(self, prefix: str) -> tuple[str, ...]:
        doomed = tuple(sorted(name for name in self.heads if name.startswith(f"{prefix}/")))
        for name in doomed:
            del self.heads[name]
        return doomed

    def prune(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


class ScriptedWorker:
    """
    Replays scripted outcomes per task id; falls back to ``default``.

    An outcome is a ``WorkerResult``, an exception to raise, or a callable
    ``(path, request) -> WorkerResult``. Ids in ``hang`` block until cancelled.
    """

    def __init__(
        self,
        script: Mapping[str, Sequence[Outcome]] | None = None,
        *,
        default: Outcome | None = None,
        hang: Sequence[str] = (),
        delay: float = 0.0,
    ) -> None:
        self._script = {task_id: list(items) for task_id, items in (script or {}).items()}
        self._default = default if default is not None else WorkerResult.approved("ok")
        self._hang = set(hang)
        self._delay = delay
        self.calls: list[DispatchRequest] = []
        self.paths: list[Path] = []
        self.active = 0
        self.max_active = 0

    def attempts(self, task_id: str) -> list[DispatchRequest]:
        return [request for request in self.calls if request.task.id == task_id]

    async def run(self, workspace_path: Path, request: DispatchRequest) -> WorkerResult:
        self.calls.append(request)
        self.paths.append(workspace_path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if request.task.id in self._hang:
                await asyncio.Event().wait()
            if self._delay:
                await asyncio.sleep(self._delay)
            queue = self._script.get(request.task.id)
            outcome = queue.pop(0) if queue else self._default
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return outcome(workspace_path, request)
            return outcome
        finally:
            self.active -= 1


class FileWorker:
    """Writes one file per task into the workspace; ``contents`` overrides per task."""

    def __init__(
        self,
        contents: Mapping[str, Mapping[str, str]] | None = None,
        *,
        tokens_per_task: int = 0,
    ) -> None:
        self._contents = dict(contents or {})
        self._tokens = tokens_per_task
        self.calls: list[str] = []

    async def run(self, workspace_path: Path, request: DispatchRequest) -> WorkerResult:
        task_id = request.task.id
        self.calls.append(task_id)
        files = self._contents.get(task_id) or {f"{task_id.lower()}.txt": f"{task_id}\n"}
        for relative, text in files.items():
            target = workspace_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        return WorkerResult.approved(f"wrote {', '.join(sorted(files))}", tokens_used=self._tokens)


# ---------------------------------------------------------------------------
# Escalation collaborators
# ---------------------------------------------------------------------------


class RecordingFinder:
    def __init__(self, hint: str | None = "try another approach") -> None:
        self.hint = hint
        self.calls: list[tuple[str, FailureRecord]] = []

    def find_alternative(self, task: TaskSpec, record: FailureRecord) -> str | None:
        self.calls.append((task.id, record))
        return self.hint


class RecordingGatherer:
    def __init__(self, context: str | None = "relevant docs") -> None:
        self.context = context
        self.calls: list[tuple[str, FailureRecord]] = []

    def gather(self, task: TaskSpec, record: FailureRecord) -> str | None:
        self.calls.append((task.id, record))
        return self.context


class RecordingLearningStore:
    def __init__(self) -> None:
        self.findings: list[dict[str, Any]] = []

    def record_finding(self, task_id: str, *, context: str | None, record: FailureRecord) -> None:
        self.findings.append({"task_id": task_id, "context": context, "record": record})


# ---------------------------------------------------------------------------
# Scheduler wiring
# ---------------------------------------------------------------------------


class SchedulerHarness:
    """Scheduler plus every collaborator, over a fake backend and a temp state dir."""

    def __init__(
        self,
        tmp_path: Path,
        specs: Sequence[TaskSpec],
        worker: Any,
        *,
        settings: RuntimeSettings | None = None,
        pool_size: int = 2,
        max_tokens: int = 10_000,
        finder: Any | None = None,
        gatherer: Any | None = None,
        learning_store: Any | None = None,
    ) -> None:
        self.settings = settings if settings is not None else fast_settings(
            tmp_path, pool={"size": pool_size, "max_agents": pool_size}
        )
        self.state = new_state(
            specs,
            max_tokens=max_tokens,
            warn_at=self.settings.budget.warn_threshold,
            handoff_at=self.settings.budget.handoff_threshold,
        )
        self.store = StateStore(tmp_path / ".autodev")
        self.bus = EventBus()
        self.backend = FakeWorkspaceBackend()
        self.pool = WorkspacePool(
            self.state,
            self.store,
            self.backend,
            workspace_root=tmp_path / "worktrees",
            bus=self.bus,
        )
        self.pool.init(pool_size)
        self.budget = TokenBudgetMonitor(self.state.token_budget, self.bus)
        self.escalator = FailureEscalator(
            self.settings.escalation,
            finder,
            gatherer,
            learning_store,
            stuck_dir=tmp_path / ".autodev" / "stuck",
        )
        self.worker = worker
        self.scheduler = Scheduler(
            self.state,
            self.store,
            self.pool,
            worker,
            self.escalator,
            self.budget,
            self.bus,
            self.settings,
        )

    def event_types(self) -> list[str]:
        return [event.event_type.value for event in self.bus.history()]


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


def git(repo_root: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    result = subprocess.run(
        ["git", *args],
        cwd=repo_root,
        env=env,
        check=False,
        text=True,
        capture_output=True,
    )
    if check and result.returncode != 0:
        cmd = "git " + " ".join(args)
        detail = result.stderr.strip() or result.stdout.strip()
        raise RuntimeError(f"git command failed: {cmd}: {detail}")
    return result


def init_repo(tmp_path: Path, files: Mapping[str, str] | None = None) -> Path:
    """Create ``tmp_path/repo`` on branch ``main`` with one initial commit."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir(parents=True, exist_ok=True)
    git(repo_root, "init", "--initial-branch=main", "--quiet")
    git(repo_root, "config", "user.name", "Autodev Test")
    git(repo_root, "config", "user.email", "autodev-test@example.com")
    git(repo_root, "config", "commit.gpgsign", "false")

    seed = dict(files or {"README.md": "# seed\n"})
    for relative, text in seed.items():
        target = repo_root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    git(repo_root, "add", ".")
    git(repo_root, "commit", "--quiet", "-m", "initial")
    return repo_root


def show_file(repo_root: Path, ref: str, path: str) -> str:
    return git(repo_root, "show", f"{ref}:{path}").stdout


def branch_head(repo_root: Path, ref: str) -> str:
    return git(repo_root, "rev-parse", ref).stdout.strip()


def numbered_lines(count: int, *, overrides: Mapping[int, str] | None = None) -> str:
    """``count`` lines ``line 1``..``line N`` with 1-based replacements."""

    lines = [f"line {index}" for index in range(1, count + 1)]
    for number, text in (overrides or {}).items():
        lines[number - 1] = text
    return "\n".join(lines) + "\n"


__all__ = [
    "FakeWorkspaceBackend",
    "FileWorker",
    "RecordingFinder",
    "RecordingGatherer",
    "RecordingLearningStore",
    "SchedulerHarness",
    "ScriptedWorker",
    "branch_head",
    "fast_settings",
    "git",
    "init_repo",
    "make_settings",
    "new_state",
    "numbered_lines",
    "show_file",
    "spec",
]
