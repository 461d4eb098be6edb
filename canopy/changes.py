"""Collect file-level changes and prompt context for a worktree."""

import logging
import re
import time
from pathlib import Path

from canopy import git_ops
from canopy.git_ops import GitError, SourceUnavailable
from canopy.models import ContextPayload, FileChange, StatusResult, WorktreeChanges

logger = logging.getLogger(__name__)

MAX_CONTEXT_DIFF_CHARS = 10_000
MAX_README_CHARS = 2_000
SUMMARY_CHAR_LIMIT = 1_500
SKELETON_LINES = 15
BINARY_SNIFF_BYTES = 8192
README_NAMES = ("README.md", "readme.md", "README.txt")

IGNORED_PATTERNS = [
    re.compile(r"package-lock\.json$"),
    re.compile(r"yarn\.lock$"),
    re.compile(r"pnpm-lock\.yaml$"),
    re.compile(r"poetry\.lock$"),
    re.compile(r"uv\.lock$"),
    re.compile(r"\.map$"),
    re.compile(r"\.(svg|png|ico|jpe?g|gif)$"),
    re.compile(r"^(dist|build|\.next)/"),
]
SKELETON_PATTERN = re.compile(
    r"^(import|from|export|class|def|async def|function|interface|type|const|let|var)\s"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def read_status(root: Path) -> StatusResult:
    """Query git status, converting failures to SourceUnavailable."""
    if not root.is_dir():
        raise SourceUnavailable(root, "worktree directory does not exist")
    try:
        return git_ops.status(root)
    except GitError as exc:
        raise SourceUnavailable(root, exc.stderr or str(exc)) from exc


def collect_changes(
    root: Path, worktree_id: str | None = None, status: StatusResult | None = None
) -> WorktreeChanges:
    """Build the full change set of a worktree.

    Raises SourceUnavailable when git cannot be queried.
    """
    if status is None:
        status = read_status(root)

    stats: dict[str, tuple[int, int]] = {}
    tracked = [*status.modified, *status.created, *status.deleted, *(new for _, new in status.renamed)]
    if tracked:
        try:
            stats = git_ops.numstat(root)
        except GitError as exc:
            logger.warning("numstat failed for %s, continuing without line stats: %s", root, exc)

    changes: list[FileChange] = []
    seen: set[str] = set()

    def add(path: str, kind: str) -> None:
        if path in seen:
            return
        seen.add(path)
        if kind == "untracked":
            insertions, deletions = count_lines(root / path), 0
        else:
            insertions, deletions = stats.get(path, (0, 0))
        changes.append(
            FileChange(
                path=path,
                status=kind,  # type: ignore[arg-type]
                insertions=insertions,
                deletions=deletions,
                mtime_ms=_mtime_ms(root / path),
            )
        )

    for path in status.modified:
        add(path, "modified")
    for _, new in status.renamed:
        add(new, "renamed")
    for path in status.created:
        add(path, "added")
    for path in status.deleted:
        add(path, "deleted")
    for path in status.untracked:
        add(path, "untracked")

    return WorktreeChanges(
        worktree_id=worktree_id or str(root.resolve()),
        root_path=root,
        changes=tuple(changes),
        last_updated=_now_ms(),
    )


def _mtime_ms(path: Path) -> int | None:
    try:
        return int(path.stat().st_mtime * 1000)
    except OSError:
        return None


def count_lines(path: Path) -> int:
    """Count lines the way `git diff --numstat` would; binary or unreadable files count 0."""
    try:
        data = path.read_bytes()
    except OSError:
        return 0
    if b"\0" in data[:BINARY_SNIFF_BYTES]:
        return 0
    if not data:
        return 0
    lines = data.count(b"\n")
    if not data.endswith(b"\n"):
        lines += 1
    return lines


def read_readme(root: Path, limit: int = MAX_README_CHARS) -> str:
    """Return the head of the worktree README, or an empty string."""
    for name in README_NAMES:
        candidate = root / name
        if candidate.is_file():
            try:
                return candidate.read_text(encoding="utf-8", errors="replace")[:limit]
            except OSError:
                return ""
    return ""


def gather_context(root: Path) -> ContextPayload:
    """Diff (plus untracked listing) and README of a worktree for status prompts."""
    try:
        diff = git_ops.diff(root)
    except GitError:
        diff = ""

    untracked = git_ops.list_untracked(root)
    if untracked:
        if diff:
            diff += "\n\n"
        diff += "Untracked files:\n" + "\n".join(untracked)

    if len(diff) > MAX_CONTEXT_DIFF_CHARS:
        diff = diff[:MAX_CONTEXT_DIFF_CHARS] + "\n...(diff truncated)"

    return ContextPayload(diff=diff, readme=read_readme(root))


def is_high_value(path: str) -> bool:
    """False for lock files, build output and binary assets."""
    return not any(pattern.search(path) for pattern in IGNORED_PATTERNS)


def _priority(path: str) -> float:
    return (0 if path.startswith("src/") else 1) + len(path) * 0.01


def skeleton(text: str) -> str:
    """Keep only top-level definition lines of a new file."""
    lines = [line for line in text.splitlines() if SKELETON_PATTERN.match(line.strip())]
    return "\n".join(lines[:SKELETON_LINES])


def build_summary_input(root: Path, status: StatusResult, char_limit: int = SUMMARY_CHAR_LIMIT) -> str:
    """Bounded description of a worktree's changes for the summary prompt."""
    parts: list[str] = []
    if status.deleted:
        parts.append("\n".join(f"Deleted: {path}" for path in status.deleted) + "\n\n")
    if status.renamed:
        parts.append("\n".join(f"Renamed: {old} -> {new}" for old, new in status.renamed) + "\n\n")

    created = set(status.created) | set(status.untracked)
    candidates = dict.fromkeys([*status.created, *status.untracked, *status.modified, *(new for _, new in status.renamed)])
    files = sorted((path for path in candidates if is_high_value(path)), key=_priority)

    used = 0
    for path in files:
        if used >= char_limit:
            break
        try:
            if path in created:
                content = (root / path).read_text(encoding="utf-8", errors="replace")
                shape = skeleton(content)
                body = f"NEW FILE STRUCTURE:\n{shape}" if shape else f"NEW FILE: {path}"
            else:
                body = git_ops.file_diff(root, path)
        except (OSError, GitError):
            continue

        cleaned = "\n".join(
            line
            for line in body.splitlines()
            if not line.startswith("index ") and not line.startswith("diff --git")
        )
        if cleaned.strip():
            block = f"\nFile: {path}\n{cleaned}\n"
            parts.append(block)
            used += len(block)

    text = "".join(parts)
    return text if text.strip() else "Worktree changes"
