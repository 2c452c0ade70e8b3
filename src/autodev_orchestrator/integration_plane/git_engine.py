"""Deterministic git CLI wrapper for worktree slots and branch integration."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_BRANCH_NAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class CheckoutBlockedError(GitEngineError):
    """Raised when a checkout holding the target branch cannot be fast-forwarded."""

    def __init__(self, *, branch: str, worktree: Path, detail: str) -> None:
        self.branch = branch
        self.worktree = worktree
        self.detail = detail
        message = (
            f"cannot advance {branch}: its checkout at {worktree} has local changes "
            "in files touched by the merge; commit or stash them and retry"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class WorktreeRecord:
    """One entry from ``git worktree list --porcelain``."""

    path: Path
    head: str | None
    branch: str | None


@dataclass(frozen=True, slots=True)
class ChangedFileEntry:
    """Diff entry with normalized status."""

    status: str
    path: str


@dataclass(frozen=True, slots=True)
class LineRange:
    """Half-open line range ``[start, end)`` in merge-base coordinates; empty for pure inserts."""

    start: int
    end: int

    def touches(self, other: LineRange) -> bool:
        # Adjacent edits conflict in git's three-way merge, so touching counts.
        return self.start <= other.end and other.start <= self.end


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Result for a ``--no-ff`` merge attempt."""

    source: str
    target: str
    clean: bool
    target_head: str
    conflicts: tuple[str, ...] = ()


class GitEngine:
    """Deterministic wrapper around the git CLI."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        identity: tuple[str, str] = ("autodev-orchestrator", "autodev@example.invalid"),
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self._env_overrides = dict(env_overrides or {})
        self._identity = identity

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    def is_repository(self) -> bool:
        if not self.repo_path.is_dir():
            return False
        return self._run_git(["rev-parse", "--git-dir"], check=False).returncode == 0

    def ensure_repository(self) -> None:
        """Verify the repository exists and carries a local commit identity."""
        self._run_git(["rev-parse", "--git-dir"])
        self._ensure_local_identity()

    def add_local_exclude(self, pattern: str) -> bool:
        """Append ``pattern`` to ``info/exclude``; returns ``False`` if already present."""
        raw = self._run_git(["rev-parse", "--git-path", "info/exclude"]).stdout.strip()
        exclude = Path(raw)
        if not exclude.is_absolute():
            exclude = self.repo_path / exclude
        existing = exclude.read_text(encoding="utf-8") if exclude.is_file() else ""
        if pattern in existing.splitlines():
            return False
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{pattern}\n")
        return True

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def branch_head(self, branch: str) -> str | None:
        """Return the commit SHA for ``branch`` or ``None`` when it does not exist."""
        if not self.branch_exists(branch):
            return None
        return self.rev_parse(f"refs/heads/{branch}")

    def rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", "--verify", ref]).stdout.strip()

    def list_branches(self, prefix: str) -> tuple[str, ...]:
        output = self._run_git(
            ["for-each-ref", "--format=%(refname:short)", f"refs/heads/{prefix.rstrip('/')}/"]
        ).stdout
        return tuple(sorted(line.strip() for line in output.splitlines() if line.strip()))

    def delete_branch(self, branch: str) -> None:
        self._run_git(["branch", "-D", branch])

    def create_branch(self, branch: str, base: str) -> None:
        _validate_branch_name(branch)
        self._run_git(["branch", branch, base])

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    def worktree_records(self) -> tuple[WorktreeRecord, ...]:
        output = self._run_git(["worktree", "list", "--porcelain"]).stdout
        records: list[WorktreeRecord] = []
        current_path: Path | None = None
        current_head: str | None = None
        current_branch: str | None = None

        def flush() -> None:
            if current_path is not None:
                records.append(WorktreeRecord(current_path, current_head, current_branch))

        for line in output.splitlines():
            if not line.strip():
                flush()
                current_path, current_head, current_branch = None, None, None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current_path = Path(value.strip()).resolve(strict=False)
            elif key == "HEAD":
                current_head = value.strip()
            elif key == "branch":
                ref = value.strip()
                current_branch = ref.removeprefix("refs/heads/")
        flush()
        return tuple(records)

    def worktree_for_branch(self, branch: str) -> Path | None:
        for record in self.worktree_records():
            if record.branch == branch:
                return record.path
        return None

    def is_registered_worktree(self, path: Path | str) -> bool:
        resolved = Path(path).resolve(strict=False)
        return any(record.path == resolved for record in self.worktree_records())

    def add_worktree(self, path: Path | str, branch: str, *, base: str) -> None:
        """Add a worktree at ``path`` on ``branch``, creating the branch from ``base``."""
        _validate_branch_name(branch)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            self._run_git(["worktree", "add", "--force", str(target), branch])
        else:
            self._run_git(["worktree", "add", "--quiet", "-b", branch, str(target), base])

    def switch_worktree(self, path: Path | str, branch: str, *, base: str) -> None:
        """Point an existing worktree at ``branch`` (created from ``base`` when missing)."""
        _validate_branch_name(branch)
        worktree = Path(path)
        if self.branch_exists(branch):
            self._run_git(["checkout", "--quiet", "--force", branch], cwd=worktree)
        else:
            self._run_git(["checkout", "--quiet", "--force", "-b", branch, base], cwd=worktree)

    def detach_worktree(self, path: Path | str) -> None:
        self._run_git(["checkout", "--quiet", "--detach"], cwd=Path(path))

    def remove_worktree(self, path: Path | str) -> None:
        """Remove a worktree path and prune stale entries."""
        target = Path(path)
        if self.is_registered_worktree(target):
            self._run_git(["worktree", "remove", "--force", str(target)])
        self.prune_worktrees()

    def prune_worktrees(self) -> None:
        self._run_git(["worktree", "prune"], check=False)

    def current_branch(self, worktree: Path | str) -> str | None:
        output = self._run_git(["branch", "--show-current"], cwd=Path(worktree), check=False)
        if output.returncode != 0:
            return None
        return output.stdout.strip() or None

    def has_changes(self, worktree: Path | str) -> bool:
        status = self._run_git(["status", "--porcelain"], cwd=Path(worktree)).stdout
        return bool(status.strip())

    def commit_all(self, worktree: Path | str, message: str) -> str | None:
        """Stage everything and commit; returns the new SHA or ``None`` when clean."""
        title = message.strip()
        if not title:
            raise GitEngineError("Commit message cannot be empty.")
        path = Path(worktree)
        self._run_git(["add", "--all"], cwd=path)
        staged = self._run_git(["diff", "--cached", "--name-only"], cwd=path).stdout.strip()
        if not staged:
            return None
        self._run_git(["commit", "--quiet", "--no-gpg-sign", "-m", title], cwd=path)
        return self._run_git(["rev-parse", "HEAD"], cwd=path).stdout.strip()

    def discard_changes(self, worktree: Path | str) -> None:
        path = Path(worktree)
        self._run_git(["reset", "--quiet", "--hard"], cwd=path)
        self._run_git(["clean", "-fdq"], cwd=path)

    # ------------------------------------------------------------------
    # Diffs and merges
    # ------------------------------------------------------------------

    def merge_base(self, left: str, right: str) -> str:
        return self._run_git(["merge-base", left, right]).stdout.strip()

    def changed_files(self, base_ref: str, head_ref: str) -> tuple[ChangedFileEntry, ...]:
        """Return changed file entries between refs with A/M/D statuses."""
        output = self._run_git(
            ["diff", "--no-renames", "--name-status", "--diff-filter=AMD", base_ref, head_ref]
        ).stdout

        entries: list[ChangedFileEntry] = []
        for line in output.splitlines():
            status_and_path = line.split("\t", 1)
            if len(status_and_path) != 2:
                continue
            status = status_and_path[0][:1]
            if status not in {"A", "M", "D"}:
                continue
            entries.append(ChangedFileEntry(status=status, path=status_and_path[1]))
        return tuple(entries)

    def changed_line_ranges(self, base_ref: str, head_ref: str, path: str) -> tuple[LineRange, ...]:
        """Return ``-U0`` hunk ranges of ``path`` in ``base_ref`` coordinates."""
        output = self._run_git(
            ["diff", "--no-renames", "--no-color", "-U0", base_ref, head_ref, "--", path]
        ).stdout
        ranges: list[LineRange] = []
        for line in output.splitlines():
            match = _HUNK_HEADER_RE.match(line)
            if match is None:
                continue
            start = int(match.group(1))
            count = int(match.group(2)) if match.group(2) is not None else 1
            if count == 0:
                # Pure insertion after line ``start``.
                ranges.append(LineRange(start + 1, start + 1))
            else:
                ranges.append(LineRange(start, start + count))
        return tuple(ranges)

    def merge_no_ff(self, source_branch: str, target_branch: str, *, message: str) -> MergeResult:
        """
        Merge ``source_branch`` into ``target_branch`` with ``--no-ff``.

        The merge runs in a private detached worktree. A checkout holding the target
        branch is only fast-forwarded afterwards, so its uncommitted edits are never
        reset. On conflict the merge is aborted and the target branch is left unchanged.
        """
        target_before = self.rev_parse(f"refs/heads/{target_branch}")
        with self._temporary_worktree(target_before) as worktree:
            result = self._run_git(
                ["merge", "--no-ff", "--no-edit", "--no-gpg-sign", "-m", message, source_branch],
                cwd=worktree,
                check=False,
            )
            if result.returncode != 0:
                conflict_output = self._run_git(
                    ["diff", "--name-only", "--diff-filter=U"], cwd=worktree, check=False
                ).stdout
                conflicts = tuple(
                    line.strip() for line in conflict_output.splitlines() if line.strip()
                )
                self._run_git(["merge", "--abort"], cwd=worktree, check=False)
                if not conflicts:
                    conflicts = (result.stderr.strip() or result.stdout.strip() or "merge failed",)
                return MergeResult(
                    source=source_branch,
                    target=target_branch,
                    clean=False,
                    target_head=target_before,
                    conflicts=conflicts,
                )
            merged_head = self._run_git(["rev-parse", "HEAD"], cwd=worktree).stdout.strip()

        self._advance_branch(target_branch, merged_head, expected=target_before)
        return MergeResult(
            source=source_branch,
            target=target_branch,
            clean=True,
            target_head=merged_head,
        )

    def run_shell(
        self,
        command: str,
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        """Run an arbitrary shell command (verification hooks) with captured output."""
        run_env = os.environ.copy()
        run_env.update(env or {})
        run_cwd = Path(cwd).resolve()
        completed = subprocess.run(
            command,
            shell=True,
            cwd=run_cwd,
            env=run_env,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
        return CommandResult(
            command=(command,),
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_local_identity(self) -> None:
        name, email = self._identity
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", name])
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", email])

    def _advance_branch(self, branch: str, new_head: str, *, expected: str) -> None:
        holder = self.worktree_for_branch(branch)
        if holder is None:
            self._run_git(["update-ref", f"refs/heads/{branch}", new_head, expected])
            return
        # ff-only refuses before touching files that carry local edits.
        result = self._run_git(["merge", "--ff-only", "--quiet", new_head], cwd=holder, check=False)
        if result.returncode != 0:
            raise CheckoutBlockedError(
                branch=branch,
                worktree=holder,
                detail=result.stderr.strip() or result.stdout.strip(),
            )

    @contextmanager
    def _temporary_worktree(self, commit: str) -> Iterator[Path]:
        temp_path = Path(tempfile.mkdtemp(prefix="autodev-git-engine-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", "--detach", str(temp_path), commit])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


def _validate_branch_name(branch: str) -> None:
    if (
        not branch
        or not _BRANCH_NAME_RE.fullmatch(branch)
        or ".." in branch
        or branch.startswith(("-", "/"))
        or branch.endswith(("/", ".lock"))
    ):
        raise GitEngineError(f"unsafe branch name: {branch!r}")


__all__ = [
    "ChangedFileEntry",
    "CheckoutBlockedError",
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "LineRange",
    "MergeResult",
    "WorktreeRecord",
]
