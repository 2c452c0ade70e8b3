"""
Workspace pool over real git worktrees.

Coverage:
- a slot checks out ``auto/<task>`` from the base branch
- keep commits onto the task branch; discard leaves the branch untouched
- a retried task gets its warm slot back with earlier commits present
- health detects a detached slot; cleanup removes worktrees and branches
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from autodev_orchestrator.integration_plane.git_engine import GitEngine
from autodev_orchestrator.integration_plane.workspace_pool import GitWorktreeBackend, WorkspacePool
from autodev_orchestrator.persistence.state_store import StateStore
from tests.support import branch_head, git, init_repo, new_state, spec

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is required"),
]


def _pool(tmp_path: Path, size: int = 2) -> tuple[Path, WorkspacePool, GitEngine]:
    repo = init_repo(tmp_path)
    engine = GitEngine(repo)
    workspace_root = tmp_path / "worktrees"
    pool = WorkspacePool(
        new_state([spec("T1"), spec("T2")]),
        StateStore(tmp_path / "state"),
        GitWorktreeBackend(engine, workspace_root=workspace_root),
        workspace_root=workspace_root,
    )
    pool.init(size)
    return repo, pool, engine


def test_materialize_checks_out_the_task_branch(tmp_path: Path) -> None:
    repo, pool, engine = _pool(tmp_path)
    acquired = pool.acquire("T1")

    path = pool.materialize(acquired.slot_id)

    assert path == tmp_path / "worktrees" / "wt-1"
    assert (path / "README.md").read_text(encoding="utf-8") == "# seed\n"
    assert engine.current_branch(path) == "auto/T1"
    assert branch_head(repo, "auto/T1") == branch_head(repo, "main")
    assert pool.check_health() == ()


def test_keep_commits_and_retry_reuses_the_warm_slot(tmp_path: Path) -> None:
    repo, pool, engine = _pool(tmp_path)
    acquired = pool.acquire("T1")
    path = pool.materialize(acquired.slot_id)
    (path / "t1.txt").write_text("first attempt\n", encoding="utf-8")

    commit = pool.finalize(acquired.slot_id, keep=True)
    pool.release(acquired.slot_id)

    assert commit is not None
    assert branch_head(repo, "auto/T1") == commit
    assert engine.current_branch(path) is None

    again = pool.acquire("T1")
    assert again.slot_id == "wt-1"
    path = pool.materialize(again.slot_id)
    assert (path / "t1.txt").read_text(encoding="utf-8") == "first attempt\n"


def test_discard_scrubs_the_worktree(tmp_path: Path) -> None:
    repo, pool, _ = _pool(tmp_path)
    acquired = pool.acquire("T2")
    path = pool.materialize(acquired.slot_id)
    (path / "scratch.txt").write_text("junk\n", encoding="utf-8")
    (path / "README.md").write_text("edited\n", encoding="utf-8")

    pool.release_and_scrub(acquired.slot_id, done=False)

    assert not (path / "scratch.txt").exists()
    assert (path / "README.md").read_text(encoding="utf-8") == "# seed\n"
    assert branch_head(repo, "auto/T2") == branch_head(repo, "main")


def test_a_slot_switches_branches_between_tasks(tmp_path: Path) -> None:
    _, pool, engine = _pool(tmp_path, size=1)
    first = pool.acquire("T1")
    pool.materialize(first.slot_id)
    pool.release_and_scrub(first.slot_id, done=True)

    second = pool.acquire("T2")
    path = pool.materialize(second.slot_id)

    assert second.slot_id == "wt-1"
    assert engine.current_branch(path) == "auto/T2"


def test_health_reports_a_detached_slot(tmp_path: Path) -> None:
    _, pool, _ = _pool(tmp_path)
    acquired = pool.acquire("T1")
    path = pool.materialize(acquired.slot_id)
    git(path, "checkout", "--quiet", "--detach")

    issues = pool.check_health()

    assert issues == ("wt-1: expected branch auto/T1, found detached HEAD",)


def test_cleanup_removes_worktrees_and_branches(tmp_path: Path) -> None:
    repo, pool, engine = _pool(tmp_path)
    for task_id in ("T1", "T2"):
        acquired = pool.acquire(task_id)
        pool.materialize(acquired.slot_id)
        pool.release_and_scrub(acquired.slot_id, done=False)

    deleted = pool.cleanup()

    assert deleted == ("auto/T1", "auto/T2")
    assert engine.list_branches("auto") == ()
    assert not (tmp_path / "worktrees" / "wt-1").exists()
    assert [record.path for record in engine.worktree_records()] == [repo.resolve()]
