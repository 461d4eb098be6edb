"""Git subprocess operations."""

import os
import subprocess
from pathlib import Path
from typing import Sequence

from canopy.models import ParsedWorktree, StatusResult


class GitError(Exception):
    """Git command failed."""

    def __init__(self, cmd: Sequence[str], stderr: str) -> None:
        self.cmd = cmd
        self.stderr = stderr
        super().__init__(f"git {' '.join(cmd)}: {stderr}")


class SourceUnavailable(Exception):
    """The version-control data source could not be queried for a worktree."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


def run(args: Sequence[str], cwd: Path | None = None, strip: bool = True) -> str:
    """Run a git command and return stdout."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        raise GitError(args, (exc.stderr or "").strip()) from exc
    except OSError as exc:
        raise GitError(args, str(exc)) from exc
    return result.stdout.strip() if strip else result.stdout


def try_run(args: Sequence[str], cwd: Path | None = None) -> str | None:
    """Run a git command, returning None on failure."""
    try:
        return run(args, cwd=cwd)
    except GitError:
        return None


def get_repo_root(cwd: Path) -> Path | None:
    """Get the directory holding the shared .git of the repository."""
    common_dir = try_run(["rev-parse", "--git-common-dir"], cwd=cwd)
    if common_dir is None:
        return None
    common_path = Path(common_dir)
    if not common_path.is_absolute():
        common_path = (cwd / common_path).resolve()
    if common_path.name == ".git":
        return common_path.parent
    return common_path


def get_default_branch(repo_root: Path) -> str:
    """Get the default branch name (falls back to 'main')."""
    ref = try_run(["symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"], cwd=repo_root)
    if ref:
        return ref.split("/", 1)[1]
    for candidate in ("main", "master"):
        if try_run(["show-ref", "--verify", f"refs/heads/{candidate}"], cwd=repo_root) is not None:
            return candidate
    return "main"


def parse_worktrees(repo_root: Path) -> list[ParsedWorktree]:
    """Parse the output of git worktree list --porcelain."""
    output = run(["worktree", "list", "--porcelain"], cwd=repo_root)
    worktrees: list[ParsedWorktree] = []
    current_path = ""
    current_branch = ""
    current_head = ""
    current_is_bare = False

    for line in output.splitlines():
        if line.startswith("worktree "):
            if current_path and not current_is_bare and (current_branch or current_head):
                worktrees.append(
                    ParsedWorktree(
                        path=Path(current_path), branch=current_branch, head=current_head
                    )
                )
            current_path = line.split(" ", 1)[1]
            current_branch = ""
            current_head = ""
            current_is_bare = False
        elif line.startswith("branch "):
            ref = line.split(" ", 1)[1]
            current_branch = ref.removeprefix("refs/heads/")
        elif line.startswith("HEAD "):
            current_head = line.split(" ", 1)[1]
        elif line.startswith("detached"):
            current_branch = "(detached)"
        elif line.startswith("bare"):
            current_is_bare = True

    if current_path and not current_is_bare and (current_branch or current_head):
        worktrees.append(
            ParsedWorktree(path=Path(current_path), branch=current_branch, head=current_head)
        )

    return worktrees


def status(worktree_path: Path) -> StatusResult:
    """Group `git status --porcelain` entries by kind of change.

    Raises GitError if git cannot read the worktree.
    """
    output = run(["status", "--porcelain=v1", "-z", "--untracked-files=all"], cwd=worktree_path, strip=False)
    modified: list[str] = []
    created: list[str] = []
    deleted: list[str] = []
    renamed: list[tuple[str, str]] = []
    untracked: list[str] = []

    entries = output.split("\0")
    idx = 0
    while idx < len(entries):
        entry = entries[idx]
        idx += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        if code == "??":
            untracked.append(path)
        elif code == "!!":
            continue
        elif "R" in code or "C" in code:
            # -z puts the original path in the following field
            source = entries[idx] if idx < len(entries) else path
            idx += 1
            renamed.append((source, path))
        elif "D" in code:
            deleted.append(path)
        elif code[0] == "A":
            created.append(path)
        else:
            modified.append(path)

    return StatusResult(
        modified=tuple(modified),
        created=tuple(created),
        deleted=tuple(deleted),
        renamed=tuple(renamed),
        untracked=tuple(untracked),
    )


def numstat(worktree_path: Path, paths: Sequence[str] = ()) -> dict[str, tuple[int, int]]:
    """Insertions/deletions per file for the working tree against HEAD."""
    args = ["diff", "--numstat", "HEAD"]
    if paths:
        args.extend(["--", *paths])
    out = run(args, cwd=worktree_path)
    stats: dict[str, tuple[int, int]] = {}
    for line in out.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added = int(parts[0]) if parts[0].isdigit() else 0
        removed = int(parts[1]) if parts[1].isdigit() else 0
        stats[_numstat_path(parts[2])] = (added, removed)
    return stats


def _numstat_path(raw: str) -> str:
    # renames show up as "old => new" or "dir/{old => new}/file"
    if " => " not in raw:
        return raw
    if "{" in raw and "}" in raw:
        prefix, rest = raw.split("{", 1)
        inner, suffix = rest.split("}", 1)
        new = inner.split(" => ", 1)[1]
        return f"{prefix}{new}{suffix}".replace("//", "/")
    return raw.split(" => ", 1)[1]


def diff(worktree_path: Path, base_branch: str | None = None) -> str:
    """Diff of the working tree against the merge base with `base_branch` (or HEAD)."""
    target = "HEAD"
    if base_branch:
        target = try_run(["merge-base", base_branch, "HEAD"], cwd=worktree_path) or "HEAD"
    try:
        return run(["diff", target], cwd=worktree_path)
    except GitError:
        # no commits yet
        return run(["diff"], cwd=worktree_path)


def file_diff(worktree_path: Path, path: str) -> str:
    """Zero-context diff of a single file against HEAD."""
    return run(
        [
            "diff",
            "--unified=0",
            "--minimal",
            "--ignore-all-space",
            "--ignore-blank-lines",
            "HEAD",
            "--",
            path,
        ],
        cwd=worktree_path,
    )


def list_untracked(worktree_path: Path) -> list[str]:
    """List untracked, non-ignored files."""
    out = try_run(["ls-files", "--others", "--exclude-standard"], cwd=worktree_path) or ""
    return [line for line in out.splitlines() if line.strip()]


def is_within(path: Path, root: Path) -> bool:
    """Check if `path` lies inside `root`."""
    try:
        common = os.path.commonpath([path.resolve(), root.resolve()])
    except ValueError:
        return False
    return common == str(root.resolve())
