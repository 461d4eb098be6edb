from __future__ import annotations

from pathlib import Path

import pytest

from canopy import changes, git_ops
from canopy.git_ops import GitError, SourceUnavailable
from canopy.models import StatusResult


def test_repo_root_and_worktrees(repo: Path, git) -> None:
    git(["git", "worktree", "add", "-q", "-b", "feature", str(repo.parent / "feature")], cwd=repo)
    assert git_ops.get_repo_root(repo.parent / "feature") == repo.resolve()
    worktrees = git_ops.parse_worktrees(repo)
    branches = sorted(wt.branch for wt in worktrees)
    assert branches == ["feature", "main"]
    assert git_ops.get_default_branch(repo) == "main"


def test_status_groups_changes(repo: Path, git) -> None:
    (repo / "src").mkdir()
    (repo / "src" / "old.py").write_text("x = 1\n")
    (repo / "gone.txt").write_text("bye\n")
    git(["git", "add", "."], cwd=repo)
    git(["git", "commit", "-q", "-m", "more"], cwd=repo)

    (repo / "README.md").write_text("# demo\n\nChanged.\n")
    (repo / "gone.txt").unlink()
    git(["git", "mv", "src/old.py", "src/new.py"], cwd=repo)
    (repo / "staged.py").write_text("y = 2\n")
    git(["git", "add", "staged.py"], cwd=repo)
    (repo / "notes.txt").write_text("a\nb\n")

    result = git_ops.status(repo)
    assert result.modified == ("README.md",)
    assert result.deleted == ("gone.txt",)
    assert result.renamed == (("src/old.py", "src/new.py"),)
    assert result.created == ("staged.py",)
    assert result.untracked == ("notes.txt",)
    assert result.total == 5


def test_numstat_reports_line_counts(repo: Path) -> None:
    (repo / "README.md").write_text("# demo\n\nA small demo project.\nmore\nlines\n")
    stats = git_ops.numstat(repo)
    assert stats["README.md"] == (2, 0)


def test_numstat_path_handles_renames() -> None:
    assert git_ops._numstat_path("a.txt => b.txt") == "b.txt"
    assert git_ops._numstat_path("src/{old => new}/mod.py") == "src/new/mod.py"
    assert git_ops._numstat_path("plain.py") == "plain.py"


def test_run_wraps_failures(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        git_ops.run(["rev-parse", "--show-toplevel"], cwd=tmp_path)
    assert git_ops.try_run(["rev-parse", "--show-toplevel"], cwd=tmp_path) is None


def test_collect_changes(repo: Path) -> None:
    (repo / "README.md").write_text("# demo\n\nA small demo project.\nextra\n")
    (repo / "new.py").write_text("a = 1\nb = 2\nc = 3")

    result = changes.collect_changes(repo)
    by_path = {c.path: c for c in result.changes}
    assert result.changed_file_count == 2
    assert by_path["README.md"].status == "modified"
    assert by_path["README.md"].insertions == 1
    assert by_path["new.py"].status == "untracked"
    assert by_path["new.py"].insertions == 3
    assert result.total_insertions == 4
    assert result.latest_file_mtime > 0
    assert result.worktree_id == str(repo.resolve())


def test_collect_changes_clean(repo: Path) -> None:
    result = changes.collect_changes(repo, worktree_id="wt-1")
    assert result.changed_file_count == 0
    assert result.latest_file_mtime == 0
    assert result.worktree_id == "wt-1"


def test_read_status_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(SourceUnavailable):
        changes.read_status(tmp_path / "nope")


def test_read_status_not_a_repository(tmp_path: Path) -> None:
    with pytest.raises(SourceUnavailable):
        changes.read_status(tmp_path)


def test_count_lines(tmp_path: Path) -> None:
    text = tmp_path / "a.txt"
    text.write_text("one\ntwo\n")
    assert changes.count_lines(text) == 2
    text.write_text("one\ntwo")
    assert changes.count_lines(text) == 2
    binary = tmp_path / "b.bin"
    binary.write_bytes(b"abc\0def\n")
    assert changes.count_lines(binary) == 0
    assert changes.count_lines(tmp_path / "missing") == 0


def test_is_high_value() -> None:
    assert changes.is_high_value("src/app.py")
    assert not changes.is_high_value("package-lock.json")
    assert not changes.is_high_value("dist/bundle.js")
    assert not changes.is_high_value("assets/logo.png")


def test_skeleton_keeps_definitions() -> None:
    source = "import os\n\nx = 1\n\ndef main():\n    return x\n\nclass Thing:\n    pass\n"
    assert changes.skeleton(source) == "import os\ndef main():\nclass Thing:"


def test_build_summary_input(repo: Path) -> None:
    (repo / "README.md").write_text("# demo\n\nA small demo project.\nNow with auth.\n")
    (repo / "auth.py").write_text("import hmac\n\ndef login(user):\n    return True\n")
    (repo / "yarn.lock").write_text("lock\n")
    status = git_ops.status(repo)

    text = changes.build_summary_input(repo, status)
    assert "File: auth.py" in text
    assert "NEW FILE STRUCTURE:\nimport hmac\ndef login(user):" in text
    assert "File: README.md" in text
    assert "+Now with auth." in text
    assert "yarn.lock" not in text
    assert "diff --git" not in text


def test_build_summary_input_lists_deletions() -> None:
    status = StatusResult(deleted=("old.py",), renamed=(("a.py", "b.py"),))
    text = changes.build_summary_input(Path("/nonexistent"), status)
    assert "Deleted: old.py" in text
    assert "Renamed: a.py -> b.py" in text


def test_build_summary_input_respects_budget(repo: Path) -> None:
    for idx in range(20):
        (repo / f"module_{idx}.py").write_text("".join(f"def f{n}():\n    pass\n" for n in range(15)))
    status = git_ops.status(repo)
    text = changes.build_summary_input(repo, status, char_limit=300)
    # one block may overshoot the budget, but no more are added after it
    assert text.count("File: ") < 20


def test_gather_context(repo: Path) -> None:
    (repo / "README.md").write_text("# demo\n\n" + "line\n" * 5000)
    (repo / "extra.txt").write_text("x\n")
    context = changes.gather_context(repo)
    assert context.diff.endswith("...(diff truncated)")
    assert len(context.diff) == changes.MAX_CONTEXT_DIFF_CHARS + len("\n...(diff truncated)")
    assert context.readme.startswith("# demo")
    assert len(context.readme) == changes.MAX_README_CHARS


def test_gather_context_lists_untracked(repo: Path) -> None:
    (repo / "extra.txt").write_text("x\n")
    context = changes.gather_context(repo)
    assert context.diff == "Untracked files:\nextra.txt"


def test_diff_against_merge_base(repo: Path, git) -> None:
    git(["git", "checkout", "-q", "-b", "feature"], cwd=repo)
    (repo / "feature.py").write_text("def feature():\n    pass\n")
    git(["git", "add", "."], cwd=repo)
    git(["git", "commit", "-q", "-m", "feature"], cwd=repo)
    (repo / "README.md").write_text("# demo\n\nWork in progress.\n")

    assert "feature.py" not in git_ops.diff(repo)
    against_main = git_ops.diff(repo, "main")
    assert "+def feature():" in against_main
    assert "+Work in progress." in against_main
