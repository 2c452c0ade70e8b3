"""Unit tests for the worker contract and the external-command worker."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from autodev_orchestrator.control_plane.workers import (
    EX_TEMPFAIL,
    EX_UNAVAILABLE,
    CommandWorker,
    DispatchRequest,
    Worker,
    WorkerResult,
)
from autodev_orchestrator.domain.models import ErrorKind, EscalationLevel
from tests.support import ScriptedWorker, spec

if TYPE_CHECKING:
    from pathlib import Path


def _request(attempt: int = 1, **changes: object) -> DispatchRequest:
    return DispatchRequest(
        task=spec("T1", files=["src/a.py", "src/b.py"], verify="make test"),
        attempt=attempt,
        **changes,  # type: ignore[arg-type]
    )


def test_worker_result_factories() -> None:
    approved = WorkerResult.approved("all green", tokens_used=12, exit_code=0)
    rejected = WorkerResult.rejected("lint failed")

    assert approved.ok and approved.error_kind is None
    assert approved.metadata == {"exit_code": 0}
    assert not rejected.ok
    assert rejected.error_kind is ErrorKind.LOGIC


def test_worker_result_validation() -> None:
    with pytest.raises(ValueError, match="tokens_used"):
        WorkerResult(ok=True, tokens_used=-1)
    with pytest.raises(ValueError, match="error_kind"):
        WorkerResult(ok=True, error_kind=ErrorKind.TRANSIENT)

    assert WorkerResult(ok=False).error_kind is ErrorKind.LOGIC


def test_dispatch_request_rejects_attempt_zero() -> None:
    with pytest.raises(ValueError, match="attempt"):
        _request(attempt=0)


def test_dispatch_request_to_dict() -> None:
    payload = _request(attempt=2, level=EscalationLevel.PIVOT, strategy_hint="smaller steps").to_dict()

    assert payload["attempt"] == 2
    assert payload["level"] == "pivot"
    assert payload["strategy_hint"] == "smaller steps"
    assert payload["task"]["id"] == "T1"  # type: ignore[index]


def test_scripted_worker_satisfies_protocol() -> None:
    assert isinstance(ScriptedWorker(), Worker)
    assert isinstance(CommandWorker("true"), Worker)


def test_command_worker_rejects_empty_command() -> None:
    with pytest.raises(ValueError, match="empty"):
        CommandWorker("   ")


def test_build_env_describes_the_attempt(tmp_path: Path) -> None:
    worker = CommandWorker("true", env={"EXTRA": "1"})
    request = _request(attempt=3, level=EscalationLevel.RESEARCH, research_context="see docs")

    env = worker.build_env(tmp_path, request)

    assert env["AUTODEV_TASK_ID"] == "T1"
    assert env["AUTODEV_TASK_FILES"] == "src/a.py\nsrc/b.py"
    assert env["AUTODEV_VERIFICATION_COMMAND"] == "make test"
    assert env["AUTODEV_ATTEMPT"] == "3"
    assert env["AUTODEV_LEVEL"] == "research"
    assert env["AUTODEV_RESEARCH_CONTEXT"] == "see docs"
    assert env["AUTODEV_STRATEGY_HINT"] == ""
    assert env["AUTODEV_WORKSPACE"] == str(tmp_path)
    assert env["EXTRA"] == "1"


async def test_command_worker_approves_on_exit_zero(tmp_path: Path) -> None:
    worker = CommandWorker(
        "sh -c 'echo \"done $AUTODEV_TASK_ID\"; echo AUTODEV_TOKENS_USED=40; echo AUTODEV_TOKENS_USED=2'"
    )

    result = await worker.run(tmp_path, _request())

    assert result.ok
    assert result.evidence == "done T1"
    assert result.tokens_used == 42


async def test_command_worker_runs_inside_the_workspace(tmp_path: Path) -> None:
    worker = CommandWorker("sh -c 'echo generated > out.txt'")

    result = await worker.run(tmp_path, _request())

    assert result.ok
    assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "generated\n"


@pytest.mark.parametrize(
    ("exit_code", "kind"),
    [(1, ErrorKind.LOGIC), (EX_TEMPFAIL, ErrorKind.TRANSIENT), (EX_UNAVAILABLE, ErrorKind.RESOURCE)],
)
async def test_command_worker_classifies_exit_codes(tmp_path: Path, exit_code: int, kind: ErrorKind) -> None:
    worker = CommandWorker(f"sh -c 'echo broken >&2; exit {exit_code}'")

    result = await worker.run(tmp_path, _request())

    assert not result.ok
    assert result.error_kind is kind
    assert result.reason == f"worker exited with status {exit_code}: broken"
    assert result.metadata["exit_code"] == exit_code


async def test_command_worker_reports_missing_executable_as_resource(tmp_path: Path) -> None:
    worker = CommandWorker("definitely-not-an-autodev-binary --flag")

    result = await worker.run(tmp_path, _request())

    assert not result.ok
    assert result.error_kind is ErrorKind.RESOURCE
    assert "definitely-not-an-autodev-binary" in (result.reason or "")
