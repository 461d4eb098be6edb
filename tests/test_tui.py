from __future__ import annotations

from pathlib import Path

from canopy.models import AIStatus, FileChange, ProjectIdentity, Worktree, WorktreeChanges
from canopy.tui import MOOD_DOT, MOOD_STYLES, format_changes, format_row, format_status, render_identity


def _worktree(**kwargs) -> Worktree:
    path = Path("/repo/feature")
    return Worktree(id=str(path), path=path, name="feature", branch="feature/login", **kwargs)


def _changes(*files: FileChange) -> WorktreeChanges:
    return WorktreeChanges("wt", Path("/repo/feature"), files, 1)


def test_format_changes() -> None:
    assert format_changes(None) == ""
    assert format_changes(_changes()) == "clean"
    assert format_changes(_changes(FileChange("a.py", "modified", 3, 1))) == "1 file +3 -1"
    assert (
        format_changes(_changes(FileChange("a.py", "modified", 3, 1), FileChange("b.py", "untracked", 10)))
        == "2 files +13 -1"
    )


def test_format_row() -> None:
    item = _worktree(summary="🔧 Fixing login bug", issue_number=42)
    row = format_row(item, _changes(FileChange("a.py", "modified", 3, 1)), "active")
    assert row == [
        (MOOD_DOT, MOOD_STYLES["active"]),
        ("feature/login", ""),
        ("#42", "cyan"),
        ("1 file +3 -1", ""),
        ("🔧 Fixing login bug", ""),
    ]


def test_format_row_current_and_loading() -> None:
    item = _worktree(is_current=True, summary_loading=True)
    row = format_row(item, None, "idle")
    assert row[1] == ("feature/login *", "bold")
    assert row[2] == ("", "cyan")
    assert row[4] == ("Summarizing...", "dim")


def test_format_row_detached() -> None:
    path = Path("/repo/scratch")
    item = Worktree(id=str(path), path=path, name="scratch", branch=None)
    assert format_row(item, None, "cooldown")[1] == ("scratch (detached)", "")


def test_format_status() -> None:
    assert format_status(None, False) == ""
    assert format_status(AIStatus("🚧", "Building filters"), True) == "Analyzing..."
    assert format_status(AIStatus("🚧", "Building filters"), False) == "🚧 Building filters"


def test_render_identity() -> None:
    text = render_identity(ProjectIdentity("🛒", "Shop Front", "#ff77aa", "#77ddff"))
    assert text.plain == "🛒 Shop Front"
