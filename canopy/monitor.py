"""Route polled change sets to moods, the status trigger and enrichment."""

import logging
import threading
from collections.abc import Callable, Mapping

from canopy.fingerprint import changes_fingerprint
from canopy.models import Mood, Worktree, WorktreeChanges
from canopy.mood import MoodTracker
from canopy.scheduling import Scheduler, TimerHandle
from canopy.services import EnrichmentOrchestrator
from canopy.trigger import TriggerPolicy

logger = logging.getLogger(__name__)

ENRICH_DEBOUNCE_S = 10.0


class ChangeMonitor:
    """Owns the per-worktree view of the latest poll.

    A poll only counts as a change for a worktree when its change-set
    fingerprint differs from the previous poll; identical polls neither
    restart the trigger debounce nor the enrichment debounce.
    `start_enrichment` is called when enrichment is due, possibly from a
    timer thread.
    """

    def __init__(
        self,
        items: list[Worktree],
        orchestrator: EnrichmentOrchestrator,
        scheduler: Scheduler,
        start_enrichment: Callable[[], None],
        trigger: TriggerPolicy | None = None,
        on_mood_change: Callable[[], None] | None = None,
        enrich_debounce_s: float = ENRICH_DEBOUNCE_S,
    ) -> None:
        self.items = items
        self.orchestrator = orchestrator
        self.state_lock = orchestrator.state_lock
        self.trigger = trigger
        self.enrich_debounce_s = enrich_debounce_s
        self.changes_by_id: dict[str, WorktreeChanges] = {}
        self.moods = {
            item.id: MoodTracker(scheduler, on_change=lambda _mood: self._mood_changed())
            for item in items
        }
        self._scheduler = scheduler
        self._start_enrichment = start_enrichment
        self._on_mood_change = on_mood_change
        self._lock = threading.Lock()
        self._fingerprints: dict[str, str] = {}
        self._changed_at: dict[str, int] = {}
        self._enrich_timer: TimerHandle | None = None
        self._enrich_seq = 0

    def mood(self, item: Worktree) -> Mood:
        tracker = self.moods.get(item.id)
        return tracker.mood if tracker else "idle"

    @property
    def has_pending_enrichment(self) -> bool:
        return self._enrich_timer is not None

    def apply(self, collected: Mapping[str, WorktreeChanges]) -> None:
        """Take one poll's results."""
        with self.state_lock:
            self.changes_by_id.update(collected)
            snapshot = list(self.items)

        any_changed = False
        for item in snapshot:
            worktree_changes = collected.get(item.id)
            if worktree_changes is None:
                continue
            fingerprint = changes_fingerprint(worktree_changes, item.branch)
            changed = self._fingerprints.get(item.id) != fingerprint
            self._fingerprints[item.id] = fingerprint
            if changed:
                self._changed_at[item.id] = worktree_changes.last_updated
                any_changed = True

            tracker = self.moods.get(item.id)
            if tracker is not None:
                tracker.update(self.last_change_ms(item, worktree_changes))

            count = worktree_changes.changed_file_count
            # clearing is idempotent, so clean polls always go through
            if item.is_current and self.trigger is not None and (changed or count == 0):
                self.trigger.on_changes(count)

        self.schedule_enrichment(restart=any_changed)

    def last_change_ms(self, item: Worktree, worktree_changes: WorktreeChanges) -> int | None:
        """Newest file mtime; for deletion-only sets, when the set last changed."""
        if worktree_changes.latest_file_mtime:
            return worktree_changes.latest_file_mtime
        if worktree_changes.changed_file_count:
            return self._changed_at.get(item.id)
        return None

    def schedule_enrichment(self, restart: bool = True) -> None:
        """Start enrichment now on a critical update, else after the debounce.

        With `restart` False a pending debounce is left running.
        """
        with self.state_lock:
            changes_by_id = dict(self.changes_by_id)
        if not self.orchestrator.select_candidates(self.items, changes_by_id):
            return

        critical = self.orchestrator.has_critical_update(self.items, changes_by_id)
        with self._lock:
            if self._enrich_timer is not None:
                if not restart and not critical:
                    return
                self._enrich_timer.cancel()
                self._enrich_timer = None
            if not critical:
                self._enrich_seq += 1
                seq = self._enrich_seq
                self._enrich_timer = self._scheduler.call_later(
                    self.enrich_debounce_s, lambda: self._enrich_due(seq)
                )
                return
        self._start_enrichment()

    def _enrich_due(self, seq: int) -> None:
        with self._lock:
            if self._enrich_timer is None or seq != self._enrich_seq:
                return
            self._enrich_timer = None
        self._start_enrichment()

    def _mood_changed(self) -> None:
        if self._on_mood_change is None:
            return
        try:
            self._on_mood_change()
        except Exception:
            logger.exception("mood callback failed")

    def stop(self) -> None:
        with self._lock:
            if self._enrich_timer is not None:
                self._enrich_timer.cancel()
                self._enrich_timer = None
        if self.trigger is not None:
            self.trigger.stop()
        for tracker in self.moods.values():
            tracker.stop()
