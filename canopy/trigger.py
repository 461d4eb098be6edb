"""Debounced re-analysis of the active worktree.

The policy runs the analysis once at startup, then again after changes have
quieted: 60 s when a status is already shown, 2 s when there is none. An
empty change set clears the status straight away (except while the startup
run is still going). At most one analysis is in flight; a request arriving
meanwhile is queued as a single rerun.
"""

import logging
import threading
from collections.abc import Callable

from canopy.models import AIStatus
from canopy.scheduling import Runner, Scheduler, ThreadingScheduler, TimerHandle, run_in_thread

logger = logging.getLogger(__name__)

DEBOUNCE_WITH_STATUS_S = 60.0
DEBOUNCE_WITHOUT_STATUS_S = 2.0

Analyzer = Callable[[], AIStatus | None]
StatusCallback = Callable[[AIStatus | None, bool], None]


class TriggerPolicy:
    """Decides when `analyze` runs and owns the resulting status.

    `analyze` returns None to keep the current status.
    `on_change(status, is_analyzing)` fires after every visible transition.
    """

    def __init__(
        self,
        analyze: Analyzer,
        on_change: StatusCallback | None = None,
        scheduler: Scheduler | None = None,
        runner: Runner = run_in_thread,
    ) -> None:
        self._analyze = analyze
        self._on_change = on_change
        self._scheduler = scheduler or ThreadingScheduler()
        self._runner = runner
        self._lock = threading.Lock()
        self._timer: TimerHandle | None = None
        self._timer_seq = 0
        self._generation = 0
        self._running = False
        self._rerun = False
        self._startup = False
        self.status: AIStatus | None = None
        self.is_analyzing = False

    @property
    def state(self) -> str:
        return "analyzing" if self._running else "idle"

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        """Run the startup evaluation immediately."""
        with self._lock:
            self._startup = True
        self._request_run()

    def on_changes(self, changed_count: int) -> None:
        """Feed the latest changed-file count of the worktree."""
        if changed_count > 0:
            with self._lock:
                self._cancel_timer()
                delay = DEBOUNCE_WITH_STATUS_S if self.status is not None else DEBOUNCE_WITHOUT_STATUS_S
                self._arm_timer(delay)
            return

        with self._lock:
            self._cancel_timer()
            if self._startup:
                return
            changed = self.status is not None or self.is_analyzing
            # invalidate whatever is still in flight
            self._generation += 1
            self._rerun = False
            self.status = None
            self.is_analyzing = False
        if changed:
            self._notify()

    def stop(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._rerun = False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_timer(self, delay: float) -> None:
        self._timer_seq += 1
        seq = self._timer_seq
        self._timer = self._scheduler.call_later(delay, lambda: self._on_timer(seq))

    def _on_timer(self, seq: int) -> None:
        with self._lock:
            # a cancelled timer may still fire once it has started
            if self._timer is None or seq != self._timer_seq:
                return
            self._timer = None
        self._request_run()

    def _request_run(self) -> None:
        with self._lock:
            if self._running:
                self._rerun = True
                return
            self._running = True
            self.is_analyzing = True
            generation = self._generation
        self._notify()
        self._runner(lambda: self._run(generation))

    def _run(self, generation: int) -> None:
        result: AIStatus | None = None
        try:
            result = self._analyze()
        except Exception:
            logger.exception("status analysis failed")
        finally:
            with self._lock:
                if generation == self._generation and result is not None:
                    self.status = result
                elif generation != self._generation:
                    logger.debug("discarding stale status result (generation %s)", generation)
                self._running = False
                self.is_analyzing = False
                self._startup = False
                rerun, self._rerun = self._rerun, False
            self._notify()
        if rerun:
            self._request_run()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.status, self.is_analyzing)
        except Exception:
            logger.exception("status callback failed")
