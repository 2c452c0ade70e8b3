"""Command-line interface router for autodev-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from autodev_orchestrator.config import RuntimeSettings, load_config
from autodev_orchestrator.control_plane import CommandWorker, Orchestrator, RunReport, RunStatus
from autodev_orchestrator.domain.errors import ConflictDetected
from autodev_orchestrator.domain.models import Phase
from autodev_orchestrator.integration_plane import Resolution
from autodev_orchestrator.observability.logging import setup_logging
from autodev_orchestrator.planning.task_graph import load_task_specs
from autodev_orchestrator.ui.render import CLIRenderer, create_renderer, error_document

WORKER_COMMAND_ENV: Final[str] = "AUTODEV_WORKER_COMMAND"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="autodev",
        description=(
            "autodev-orchestrator: run a dependency graph of coding tasks across git worktrees.\n\n"
            "Common workflows:\n"
            "  autodev run tasks.yaml --worker-command ./agent.sh\n"
            "  autodev status\n"
            "  autodev resume --worker-command ./agent.sh\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./autodev.toml if present).",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # pool ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Create the workspace slot pool"
    )
    init_parser.add_argument("size", nargs="?", type=int, default=None, help="Number of slots.")
    init_parser.set_defaults(handler=_cmd_init)

    acquire_parser = subparsers.add_parser(
        "acquire",
        parents=[common],
        help="Bind an idle slot to a task and print slot_id|path|branch",
    )
    acquire_parser.add_argument("task_id")
    acquire_parser.set_defaults(handler=_cmd_acquire)

    release_parser = subparsers.add_parser(
        "release", parents=[common], help="Return a slot to the pool"
    )
    release_parser.add_argument("slot_id")
    release_parser.add_argument(
        "--done",
        action="store_true",
        default=False,
        help="Commit the slot's changes to its branch before releasing.",
    )
    release_parser.set_defaults(handler=_cmd_release)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show phase, task counts, slots, and budget"
    )
    status_parser.set_defaults(handler=_cmd_status)

    merge_parser = subparsers.add_parser(
        "merge", parents=[common], help="Integrate Done task branches into the target branch"
    )
    merge_parser.add_argument("target", nargs="?", default=None)
    merge_parser.set_defaults(handler=_cmd_merge)

    cleanup_parser = subparsers.add_parser(
        "cleanup", parents=[common], help="Remove every worktree and work branch"
    )
    cleanup_parser.set_defaults(handler=_cmd_cleanup)

    health_parser = subparsers.add_parser(
        "health", parents=[common], help="Check busy slots against their worktrees"
    )
    health_parser.set_defaults(handler=_cmd_health)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Plan, execute, integrate, and verify a task graph",
        description=(
            "Run a JSON or YAML task graph to completion or handoff.\n\n"
            "Examples:\n"
            "  autodev run tasks.yaml --worker-command './agent.sh'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("graph", help="Task graph file (.json, .yaml, .yml).")
    run_parser.add_argument(
        "--worker-command",
        default=None,
        help=f"Command run inside each workspace (default: ${WORKER_COMMAND_ENV}).",
    )
    run_parser.set_defaults(handler=_cmd_run)

    resume_parser = subparsers.add_parser(
        "resume", parents=[common], help="Continue a run from a checkpoint in a new session"
    )
    resume_parser.add_argument("checkpoint_id", nargs="?", default=None)
    resume_parser.add_argument("--worker-command", default=None)
    resume_parser.set_defaults(handler=_cmd_resume)

    resolve_parser = subparsers.add_parser(
        "resolve",
        parents=[common],
        help="Settle the pending integration conflict and continue the run",
        description=(
            "Record how the halted merge was settled, then continue integration.\n\n"
            "  resolved  the branch was merged into the target by hand\n"
            "  skip      leave the branch out of the target\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resolve_parser.add_argument("task_id")
    resolve_parser.add_argument("resolution", choices=[item.value for item in Resolution])
    resolve_parser.set_defaults(handler=_cmd_resolve)

    # checkpoints -----------------------------------------------------------
    checkpoint_parser = subparsers.add_parser(
        "checkpoint", help="List or create checkpoints"
    )
    checkpoint_sub = checkpoint_parser.add_subparsers(dest="checkpoint_command", required=True)
    checkpoint_list = checkpoint_sub.add_parser("list", parents=[common], help="List checkpoints")
    checkpoint_list.set_defaults(handler=_cmd_checkpoint_list)
    checkpoint_create = checkpoint_sub.add_parser(
        "create", parents=[common], help="Create a checkpoint now"
    )
    checkpoint_create.add_argument("--reason", default="manual")
    checkpoint_create.set_defaults(handler=_cmd_checkpoint_create)

    handoff_parser = subparsers.add_parser(
        "handoff", parents=[common], help="Show (or consume) the pending handoff signal"
    )
    handoff_parser.add_argument("--consume", action="store_true", default=False)
    handoff_parser.set_defaults(handler=_cmd_handoff)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        sys.stderr.write(error_document("CLIError", exc.message, exc.exit_code) + "\n")
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Pool commands
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    settings = orchestrator.settings
    size = args.size if args.size is not None else settings.pool.size
    if size < 1:
        raise CLIError("pool size must be >= 1")
    excluded = orchestrator.prepare_repository()
    slots = orchestrator.pool.init(size)

    if _flag(args, "json"):
        _emit_json({"command": "init", "slots": [slot.to_dict() for slot in slots], "excluded": list(excluded)})
        return 0
    renderer = create_renderer()
    renderer.kv("Slots", len(slots))
    renderer.kv("Workspace root", settings.pool.workspace_root)
    return 0


def _cmd_acquire(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    pool = orchestrator.pool
    acquisition = pool.acquire(_require_str(args.task_id, "task_id"))
    try:
        pool.materialize(acquisition.slot_id)
    except BaseException:
        pool.release(acquisition.slot_id)
        raise

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "acquire",
                "slot_id": acquisition.slot_id,
                "path": acquisition.path,
                "branch": acquisition.branch,
            }
        )
        return 0
    print(acquisition.render())
    return 0


def _cmd_release(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    slot_id = _require_str(args.slot_id, "slot_id")
    try:
        info = orchestrator.pool.release_and_scrub(slot_id, done=_flag(args, "done"))
    except KeyError as exc:
        raise CLIError(f"unknown slot: {slot_id}") from exc

    if _flag(args, "json"):
        _emit_json({"command": "release", "slot": info.to_dict()})
        return 0
    print(f"{info.slot_id} released")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    payload = orchestrator.status()

    if _flag(args, "json"):
        _emit_json({"command": "status", **payload})
        return 0

    renderer = create_renderer()
    summary = payload["summary"]
    assert isinstance(summary, Mapping)
    renderer.kv("Phase", summary["phase"])
    renderer.kv("Session", summary["session_index"])
    renderer.kv("Tasks", _format_counts(summary["tasks"]))
    budget = payload["budget"]
    assert isinstance(budget, Mapping)
    renderer.kv("Tokens", f"{budget['used']}/{budget['max_tokens']} ({budget['ratio']:.0%})")
    slots = payload["slots"]
    assert isinstance(slots, list)
    renderer.table(
        ["SLOT", "STATUS", "TASK", "BRANCH"],
        [
            [
                str(slot["slot_id"]),
                str(slot["status"]),
                str(slot["assigned_task_id"] or "-"),
                str(slot["branch_ref"] or "-"),
            ]
            for slot in slots
        ],
        title="Slots:",
    )
    conflict = payload["pending_conflict"]
    if isinstance(conflict, Mapping):
        renderer.warning(f"pending conflict on task {conflict.get('task_id')}: {conflict.get('reason')}")
    if payload["handoff"] is not None:
        renderer.next_steps(["autodev resume --worker-command <cmd>"])
    return 0


def _cmd_merge(args: argparse.Namespace) -> int:
    target = _optional_str(args.target)
    orchestrator = _orchestrator(args, target_branch=target)
    phase = orchestrator.state.current_phase
    if phase is not Phase.INTEGRATE:
        raise CLIError(f"merge runs after execution completes; current phase is {phase.value}")
    report = asyncio.run(_merge(orchestrator))
    return _finish_report(args, "merge", report)


async def _merge(orchestrator: Orchestrator) -> RunReport:
    try:
        await orchestrator.integrate()
    except ConflictDetected as conflict:
        return orchestrator.report(RunStatus.CONFLICT, conflict=conflict)
    return orchestrator.report(RunStatus.COMPLETE)


def _cmd_cleanup(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    deleted = orchestrator.pool.cleanup()

    if _flag(args, "json"):
        _emit_json({"command": "cleanup", "deleted_branches": list(deleted)})
        return 0
    renderer = create_renderer()
    renderer.kv("Deleted branches", len(deleted))
    renderer.items(list(deleted))
    return 0


def _cmd_health(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    issues = orchestrator.pool.check_health()

    if _flag(args, "json"):
        _emit_json({"command": "health", "healthy": not issues, "issues": list(issues)})
    else:
        renderer = create_renderer()
        if issues:
            for issue in issues:
                renderer.fail(issue)
        else:
            renderer.ok("all busy slots match their worktrees")
    if issues:
        orchestrator.pool.health()
    return 0


# ---------------------------------------------------------------------------
# Run commands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    graph_path = Path(_require_str(args.graph, "graph")).expanduser()
    if not graph_path.is_absolute():
        graph_path = repo_root / graph_path
    graph = load_task_specs(graph_path)
    orchestrator = _orchestrator(args, worker_command=_worker_command(args, required=True))
    orchestrator.prepare_repository()
    report = asyncio.run(orchestrator.run(graph))
    return _finish_report(args, "run", report)


def _cmd_resume(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args, worker_command=_worker_command(args, required=False))
    checkpoint_id = _optional_str(args.checkpoint_id)
    report = asyncio.run(orchestrator.resume(checkpoint_id))
    return _finish_report(args, "resume", report)


def _cmd_resolve(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    task_id = _require_str(args.task_id, "task_id")
    pending = orchestrator.state.pending_conflict
    if pending is None:
        raise CLIError("no pending integration conflict")
    if pending.get("task_id") != task_id:
        raise CLIError(f"pending conflict belongs to task {pending.get('task_id')}, not {task_id}")
    report = asyncio.run(orchestrator.resolve_conflict(task_id, Resolution(args.resolution)))
    return _finish_report(args, "resolve", report)


def _finish_report(args: argparse.Namespace, command: str, report: RunReport) -> int:
    exit_code = _exit_code_for(report)
    if _flag(args, "json"):
        _emit_json({"command": command, **report.to_dict()})
        return exit_code

    renderer = create_renderer()
    _render_report(renderer, report)
    return exit_code


def _exit_code_for(report: RunReport) -> int:
    if report.status is RunStatus.HANDOFF:
        return 0
    if report.status is RunStatus.COMPLETE and not report.failed:
        return 0
    return 1


def _render_report(renderer: CLIRenderer, report: RunReport) -> None:
    renderer.kv("Status", report.status.value)
    renderer.kv("Phase", report.phase.value)
    renderer.kv("Session", report.session_index)
    renderer.kv("Tokens", f"{report.token_usage.get('used')}/{report.token_usage.get('max_tokens')}")
    rows = [
        [outcome.task_id, outcome.status.value, _truncate(outcome.evidence or outcome.reason or "", 60)]
        for outcome in (*report.done, *report.skipped, *report.failed)
    ]
    renderer.table(["TASK", "STATUS", "DETAIL"], rows, title="Tasks:")
    if report.stuck_reports:
        renderer.section("Stuck:")
        renderer.items(
            [f"{item['task_id']}: {_truncate(str(item['last_error']), 80)}" for item in report.stuck_reports]
        )
    if report.conflict is not None:
        renderer.warning(
            f"integration halted on task {report.conflict.get('task_id')}: "
            f"{report.conflict.get('reason')} ({', '.join(map(str, report.conflict.get('files') or []))})"
        )
        renderer.next_steps([f"autodev resolve {report.conflict.get('task_id')} resolved|skip"])
    if report.verification is not None and not report.verification.ok:
        renderer.section("Verification failures:")
        renderer.items([f"{check.task_id}: {check.command}" for check in report.verification.failures])
    notice = report.handoff_notice()
    if notice is not None:
        renderer.text(str(notice))
        renderer.kv("Checkpoint", notice.checkpoint_id)
        renderer.next_steps(["autodev resume --worker-command <cmd>"])


# ---------------------------------------------------------------------------
# Checkpoint commands
# ---------------------------------------------------------------------------


def _cmd_checkpoint_list(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    checkpoints = orchestrator.checkpoints.list()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "checkpoint list",
                "checkpoints": [
                    {
                        "id": item.id,
                        "reason": item.reason,
                        "phase": item.phase.value,
                        "created_at": item.created_at.isoformat(),
                    }
                    for item in checkpoints
                ],
            }
        )
        return 0
    renderer = create_renderer()
    if not checkpoints:
        renderer.text("no checkpoints")
        return 0
    renderer.table(
        ["ID", "PHASE", "REASON"],
        [[item.id, item.phase.value, item.reason] for item in checkpoints],
    )
    return 0


def _cmd_checkpoint_create(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    checkpoint = orchestrator.checkpoint(_require_str(args.reason, "reason"))

    if _flag(args, "json"):
        _emit_json({"command": "checkpoint create", "checkpoint_id": checkpoint.id})
        return 0
    print(checkpoint.id)
    return 0


def _cmd_handoff(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    signal = orchestrator.handoff_signal
    record = signal.consume() if _flag(args, "consume") else signal.read()

    if _flag(args, "json"):
        _emit_json({"command": "handoff", "handoff": record.to_dict() if record is not None else None})
        return 0
    renderer = create_renderer()
    if record is None:
        renderer.text("no handoff pending")
        return 0
    renderer.kv("Checkpoint", record.checkpoint_id)
    renderer.kv("Reason", record.reason)
    renderer.kv("Created", record.created_at)
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(
    args: argparse.Namespace,
    *,
    worker_command: str | None = None,
    target_branch: str | None = None,
) -> Orchestrator:
    repo_root = _repo_root(args)
    settings = _load_settings(args, repo_root)
    if target_branch is not None:
        settings = settings.with_overrides(target_branch=target_branch)
    observability = settings.observability
    setup_logging(
        level=observability.log_level,
        log_format=observability.log_format,
        log_dir=observability.log_dir,
    )
    worker = CommandWorker(worker_command) if worker_command is not None else None
    orchestrator = Orchestrator(repo_root, settings, worker)
    orchestrator.git.ensure_repository()
    orchestrator.load()
    return orchestrator


def _load_settings(args: argparse.Namespace, repo_root: Path) -> RuntimeSettings:
    config_path = _optional_str(getattr(args, "config_path", None))
    config = load_config(config_path, base_dir=repo_root)
    return RuntimeSettings.from_config(config, repo_root=repo_root)


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "repo_root", None), "repo_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}")
    return candidate


def _worker_command(args: argparse.Namespace, *, required: bool) -> str | None:
    command = _optional_str(getattr(args, "worker_command", None))
    if command is None:
        command = _optional_str(os.environ.get(WORKER_COMMAND_ENV))
    if command is None and required:
        raise CLIError(f"--worker-command is required (or set {WORKER_COMMAND_ENV})")
    return command


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str))


def _format_counts(counts: object) -> str:
    if not isinstance(counts, Mapping):
        return str(counts)
    return " ".join(f"{key}={value}" for key, value in counts.items() if value) or "none"


def _truncate(text: str, max_len: int) -> str:
    text = " ".join(text.split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string")
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty")
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument")
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
