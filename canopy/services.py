"""Business logic services for worktree enrichment."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from canopy import git_ops
from canopy.issues import IssueExtractor
from canopy.models import Worktree, WorktreeChanges, WorktreeSummary
from canopy.summaries import SummarySynthesizer

logger = logging.getLogger(__name__)

SUMMARY_UNAVAILABLE = "Summary unavailable"

UpdateCallback = Callable[[Worktree], None]


def load_worktrees(repo_root: Path, cwd: Path | None = None) -> list[Worktree]:
    """List the repository's worktrees, flagging the one containing `cwd`."""
    items: list[Worktree] = []
    for wt in git_ops.parse_worktrees(repo_root):
        if not wt.path.is_dir():
            continue
        branch = None if wt.branch in ("", "(detached)") else wt.branch
        path = wt.path.resolve()
        items.append(Worktree(id=str(path), path=path, name=path.name, branch=branch))

    if cwd is not None:
        # nested worktrees: the deepest match wins
        containing = [item for item in items if git_ops.is_within(cwd, item.path)]
        if containing:
            max(containing, key=lambda item: len(item.path.parts)).is_current = True
    return items


class EnrichmentOrchestrator:
    """Fan summary synthesis out over worktrees and stream the results.

    `on_update` is called with the worktree every time its visible state
    changes: once when it starts loading and once when it settles.
    """

    def __init__(
        self,
        synthesizer: SummarySynthesizer,
        issues: IssueExtractor | None = None,
        max_workers: int = 4,
        state_lock: threading.Lock | None = None,
    ) -> None:
        self.synthesizer = synthesizer
        self.issues = issues
        self.max_workers = max_workers
        self.state_lock = state_lock or threading.Lock()
        self._guard = threading.Lock()
        self._in_flight: set[str] = set()
        self._last_processed: dict[str, int] = {}

    def enrich(
        self,
        worktrees: Iterable[Worktree],
        main_branch: str,
        on_update: UpdateCallback,
    ) -> None:
        """Enrich every worktree not already being enriched; blocks until done."""
        with self._guard:
            batch = [wt for wt in worktrees if wt.id not in self._in_flight]
            self._in_flight.update(wt.id for wt in batch)
        if not batch:
            return

        try:
            for wt in batch:
                with self.state_lock:
                    wt.summary_loading = True
                self._emit(on_update, wt)

            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batch))) as executor:
                futures = {executor.submit(self._enrich_one, wt, main_branch): wt for wt in batch}
                for future in as_completed(futures):
                    wt = futures[future]
                    try:
                        result = future.result()
                    except Exception:
                        logger.exception("enrichment failed for %s", wt.path)
                        with self.state_lock:
                            if wt.summary is None:
                                wt.summary = SUMMARY_UNAVAILABLE
                            wt.summary_loading = False
                    else:
                        self._apply(wt, result)
                    self._emit(on_update, wt)
        finally:
            for wt in batch:
                with self.state_lock:
                    still_loading = wt.summary_loading
                    wt.summary_loading = False
                if still_loading:
                    self._emit(on_update, wt)
            with self._guard:
                self._in_flight.difference_update(wt.id for wt in batch)

    def _enrich_one(self, wt: Worktree, main_branch: str) -> WorktreeSummary | None:
        if self.issues is not None and wt.branch:
            issue = self.issues.extract(wt.branch)
            with self.state_lock:
                wt.issue_number = issue
        return self.synthesizer.generate_worktree_summary(wt.path, wt.branch, main_branch)

    def _apply(self, wt: Worktree, result: WorktreeSummary | None) -> None:
        with self.state_lock:
            # None means AI is off: keep whatever summary is already shown
            if result is not None:
                wt.summary = result.summary
                wt.modified_count = result.modified_count
            wt.summary_loading = False

    def _emit(self, on_update: UpdateCallback, wt: Worktree) -> None:
        try:
            on_update(wt)
        except Exception:
            logger.exception("update callback failed for %s", wt.path)

    def select_candidates(
        self, worktrees: Iterable[Worktree], changes_by_id: Mapping[str, WorktreeChanges]
    ) -> list[Worktree]:
        """Worktrees whose changes moved since they were last summarized."""
        candidates: list[Worktree] = []
        with self._guard:
            for wt in worktrees:
                changes = changes_by_id.get(wt.id)
                if changes is None:
                    continue
                last = self._last_processed.get(wt.id)
                if last is None:
                    candidates.append(wt)
                elif changes.changed_file_count == 0:
                    if last != 0:
                        candidates.append(wt)
                elif changes.latest_file_mtime != last:
                    candidates.append(wt)
        return candidates

    def mark_processed(self, wt: Worktree, changes: WorktreeChanges | None) -> None:
        """Remember the change state a settled worktree was summarized at."""
        if wt.summary_loading:
            return
        if changes is None:
            mtime = int(time.time() * 1000)
        elif changes.changed_file_count == 0:
            mtime = 0
        else:
            mtime = changes.latest_file_mtime
        with self._guard:
            self._last_processed[wt.id] = mtime

    def has_critical_update(self, worktrees: Iterable[Worktree], changes_by_id: Mapping[str, WorktreeChanges]) -> bool:
        """True when a worktree went clean since it was last summarized."""
        with self._guard:
            for wt in worktrees:
                changes = changes_by_id.get(wt.id)
                if changes is None:
                    continue
                if changes.changed_file_count == 0 and self._last_processed.get(wt.id) != 0:
                    return True
        return False

    def reset(self) -> None:
        """Forget processed state so every worktree is a candidate again."""
        with self._guard:
            self._last_processed.clear()
