"""Textual dashboard for canopy."""

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Static

from canopy import changes, identity, summaries
from canopy.ai_client import AIClient
from canopy.cache_db import SummaryCache
from canopy.git_ops import SourceUnavailable
from canopy.models import AIStatus, Mood, ProjectIdentity, Worktree, WorktreeChanges
from canopy.monitor import ChangeMonitor
from canopy.scheduling import ThreadingScheduler
from canopy.services import EnrichmentOrchestrator
from canopy.trigger import TriggerPolicy

logger = logging.getLogger(__name__)

HEADERS = ["", "BRANCH", "ISSUE", "CHANGES", "SUMMARY"]
COMMAND_BAR = "Enter: open  |  r: re-summarize  |  q/Esc: quit"

MOOD_STYLES: dict[Mood, str] = {
    "active": "bold green",
    "cooldown": "yellow",
    "idle": "grey50",
}
MOOD_DOT = "●"

CSS = """
Screen {
    layout: vertical;
}

#identity {
    padding: 0 1;
    height: 1;
    text-style: bold;
}

#command_bar {
    padding: 0 1;
    height: 1;
    color: $text-muted;
}

#status_line {
    padding: 0 1;
    height: 1;
}

#table {
    height: 1fr;
}
"""


def format_changes(worktree_changes: WorktreeChanges | None) -> str:
    if worktree_changes is None:
        return ""
    count = worktree_changes.changed_file_count
    if count == 0:
        return "clean"
    noun = "file" if count == 1 else "files"
    return f"{count} {noun} +{worktree_changes.total_insertions} -{worktree_changes.total_deletions}"


def format_row(
    item: Worktree, worktree_changes: WorktreeChanges | None, mood: Mood
) -> list[tuple[str, str]]:
    """Format a worktree as (text, style) cells."""
    branch = item.branch or f"{item.name} (detached)"
    if item.is_current:
        branch = f"{branch} *"
    issue = f"#{item.issue_number}" if item.issue_number is not None else ""
    summary = item.summary or ("Summarizing..." if item.summary_loading else "")

    return [
        (MOOD_DOT, MOOD_STYLES[mood]),
        (branch, "bold" if item.is_current else ""),
        (issue, "cyan"),
        (format_changes(worktree_changes), ""),
        (summary, "dim" if item.summary_loading else ""),
    ]


def format_status(status: AIStatus | None, is_analyzing: bool) -> str:
    if is_analyzing:
        return "Analyzing..."
    if status is None:
        return ""
    return f"{status.emoji} {status.description}"


def render_identity(project: ProjectIdentity) -> Text:
    return Text(f"{project.emoji} {project.title}", style=f"bold {project.gradient_start}")


class TuiApp(App[Path | None]):
    """Main textual application."""

    CSS = CSS
    BINDINGS = [
        Binding("q", "quit_picker", "Quit"),
        Binding("escape", "quit_picker", "Quit"),
        Binding("enter", "choose", "Open"),
        Binding("r", "refresh", "Re-summarize"),
    ]

    def __init__(
        self,
        repo_root: Path,
        items: list[Worktree],
        main_branch: str,
        orchestrator: EnrichmentOrchestrator,
        client: AIClient | None,
        cache: SummaryCache | None,
        identity_model: str | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        super().__init__()
        self.repo_root = repo_root
        self.items = items
        self.main_branch = main_branch
        self.orchestrator = orchestrator
        self.client = client
        self.cache = cache
        self.identity_model = identity_model
        self.poll_interval = poll_interval
        self.state_lock = orchestrator.state_lock

        self.project = identity.default_identity(repo_root)
        self.monitor: ChangeMonitor | None = None
        self.selected_path: Path | None = None

        self._scheduler = ThreadingScheduler()
        self._ui_thread: int | None = None
        self._polling = False

    def compose(self) -> ComposeResult:
        yield Static(render_identity(self.project), id="identity")
        yield Static(COMMAND_BAR, id="command_bar")
        yield Static("", id="status_line")
        yield DataTable(id="table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        table = self.query_one("#table", DataTable)
        table.zebra_stripes = True
        table.add_columns(*HEADERS)

        trigger = None
        current = next((item for item in self.items if item.is_current), None)
        if current is not None:
            synthesizer = self.orchestrator.synthesizer
            trigger = TriggerPolicy(
                analyze=lambda: summaries.analyze_worktree_status(current.path, synthesizer),
                on_change=lambda status, busy: self._dispatch(self._set_status, format_status(status, busy)),
                scheduler=self._scheduler,
            )
        self.monitor = ChangeMonitor(
            self.items,
            self.orchestrator,
            self._scheduler,
            start_enrichment=lambda: self._dispatch(self._start_enrich_thread),
            trigger=trigger,
            on_mood_change=lambda: self._dispatch(self._populate_table),
        )
        if trigger is not None:
            trigger.start()

        self._populate_table()
        self._start_identity_thread()
        self._start_poll_thread()
        self.set_interval(self.poll_interval, self._start_poll_thread)

    def on_unmount(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()

    def _dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run `fn` on the UI thread, whichever thread we are called from."""
        if threading.get_ident() == self._ui_thread:
            fn(*args)
            return
        try:
            self.call_from_thread(fn, *args)
        except RuntimeError:
            # app already shut down
            logger.debug("dropping UI update after shutdown")

    def _set_status(self, message: str | None) -> None:
        self.query_one("#status_line", Static).update(message or "")

    def _set_identity(self, project: ProjectIdentity) -> None:
        self.project = project
        self.query_one("#identity", Static).update(render_identity(project))

    def _populate_table(self) -> None:
        table = self.query_one("#table", DataTable)
        selected = self._current_item()
        selected_id = selected.id if selected else None

        monitor = self.monitor
        with self.state_lock:
            snapshot = list(self.items)
            rows = [
                format_row(
                    item,
                    monitor.changes_by_id.get(item.id) if monitor else None,
                    monitor.mood(item) if monitor else "idle",
                )
                for item in snapshot
            ]

        table.clear(columns=False)
        for item, values in zip(snapshot, rows):
            table.add_row(*(Text(text, style=style) for text, style in values), key=item.id)

        if not snapshot:
            return

        row_index = next((idx for idx, item in enumerate(snapshot) if item.id == selected_id), 0)
        table.move_cursor(row=row_index)

    def _current_item(self) -> Worktree | None:
        table = self.query_one("#table", DataTable)
        row = table.cursor_row
        with self.state_lock:
            if row < 0 or row >= len(self.items):
                return None
            return self.items[row]

    def _start_identity_thread(self) -> None:
        def runner() -> None:
            project = identity.resolve_identity(self.repo_root, self.client, self.cache, self.identity_model)
            self._dispatch(self._set_identity, project)

        threading.Thread(target=runner, daemon=True).start()

    def _start_poll_thread(self) -> None:
        if self._polling:
            return
        self._polling = True

        with self.state_lock:
            snapshot = list(self.items)

        def runner() -> None:
            collected: dict[str, WorktreeChanges] = {}
            try:
                for item in snapshot:
                    try:
                        collected[item.id] = changes.collect_changes(item.path, worktree_id=item.id)
                    except SourceUnavailable as exc:
                        logger.warning("skipping %s: %s", item.path, exc)
            finally:
                self._dispatch(self._apply_changes, collected)

        threading.Thread(target=runner, daemon=True).start()

    def _apply_changes(self, collected: dict[str, WorktreeChanges]) -> None:
        self._polling = False
        if self.monitor is None:
            return
        self.monitor.apply(collected)
        self._populate_table()

    def _start_enrich_thread(self) -> None:
        if self.monitor is None:
            return
        with self.state_lock:
            changes_by_id = dict(self.monitor.changes_by_id)
        candidates = self.orchestrator.select_candidates(self.items, changes_by_id)
        if not candidates:
            return

        def on_update(item: Worktree) -> None:
            self.orchestrator.mark_processed(item, changes_by_id.get(item.id))
            self._dispatch(self._populate_table)

        def runner() -> None:
            self.orchestrator.enrich(candidates, self.main_branch, on_update)

        threading.Thread(target=runner, daemon=True).start()

    def action_quit_picker(self) -> None:
        self.exit(None)

    def action_choose(self) -> None:
        current = self._current_item()
        if current is None:
            self.exit(None)
            return
        self.selected_path = current.path
        self.exit(current.path)

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Open selected worktree when DataTable handles Enter."""
        if event.data_table.id != "table":
            return
        self.action_choose()

    def action_refresh(self) -> None:
        self.orchestrator.reset()
        self._set_status("Re-summarizing...")
        self._start_enrich_thread()


def run_tui(
    repo_root: Path,
    items: list[Worktree],
    main_branch: str,
    orchestrator: EnrichmentOrchestrator,
    client: AIClient | None,
    cache: SummaryCache | None,
    identity_model: str | None = None,
    poll_interval: float = 2.0,
) -> Path | None:
    """Run the textual dashboard; returns the chosen worktree path."""
    app = TuiApp(repo_root, items, main_branch, orchestrator, client, cache, identity_model, poll_interval)
    return app.run()
