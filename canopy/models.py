"""Data models for canopy."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

FileStatus = Literal["modified", "added", "deleted", "renamed", "untracked"]
Mood = Literal["active", "cooldown", "idle"]


@dataclass
class Worktree:
    """A git worktree tracked by the dashboard."""

    id: str
    path: Path
    name: str
    branch: str | None
    is_current: bool = False
    summary: str | None = None
    modified_count: int | None = None
    summary_loading: bool = False
    issue_number: int | None = None

    @property
    def is_detached(self) -> bool:
        """Check if this worktree is in detached HEAD state."""
        return self.branch is None


@dataclass(frozen=True)
class FileChange:
    """A single changed file inside a worktree."""

    path: str
    status: FileStatus
    insertions: int = 0
    deletions: int = 0
    mtime_ms: int | None = None


@dataclass(frozen=True)
class WorktreeChanges:
    """All file changes of a worktree from one collection pass."""

    worktree_id: str
    root_path: Path
    changes: tuple[FileChange, ...]
    last_updated: int

    @property
    def changed_file_count(self) -> int:
        return len(self.changes)

    @property
    def total_insertions(self) -> int:
        return sum(change.insertions for change in self.changes)

    @property
    def total_deletions(self) -> int:
        return sum(change.deletions for change in self.changes)

    @property
    def latest_file_mtime(self) -> int:
        """Most recent mtime (ms) across changed files, 0 when unknown."""
        return max((c.mtime_ms for c in self.changes if c.mtime_ms), default=0)


@dataclass(frozen=True)
class StatusResult:
    """Raw `git status` grouped by kind of change."""

    modified: tuple[str, ...] = ()
    created: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    renamed: tuple[tuple[str, str], ...] = ()
    untracked: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return (
            len(self.modified)
            + len(self.created)
            + len(self.deleted)
            + len(self.renamed)
            + len(self.untracked)
        )


@dataclass(frozen=True)
class AIStatus:
    """Emoji plus a short sentence describing the active work."""

    emoji: str
    description: str


@dataclass(frozen=True)
class WorktreeSummary:
    """Summary line and modified-file count for one worktree."""

    summary: str
    modified_count: int


@dataclass(frozen=True)
class CacheEntry:
    """A cached AI result and the fingerprint it was computed from."""

    result: dict[str, Any]
    content_hash: str
    timestamp: int
    model_tag: str


@dataclass(frozen=True)
class ProjectIdentity:
    """Visual identity shown in the dashboard header."""

    emoji: str
    title: str
    gradient_start: str
    gradient_end: str


@dataclass(frozen=True)
class ContextPayload:
    """Diff and README text used to describe the active worktree."""

    diff: str
    readme: str = ""


@dataclass(frozen=True)
class ParsedWorktree:
    """Raw worktree data from git worktree list."""

    path: Path
    branch: str
    head: str
