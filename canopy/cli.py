"""canopy command line: worktree dashboard and AI summaries."""

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from canopy import git_ops, services
from canopy.ai_client import AIClient, get_ai_client
from canopy.cache_db import SummaryCache
from canopy.config import ConfigError, Settings, load_settings
from canopy.issues import IssueExtractor
from canopy.models import Worktree
from canopy.services import EnrichmentOrchestrator
from canopy.summaries import SummarySynthesizer
from canopy.tui import run_tui

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    """Shared state handed to subcommands through the click context."""

    repo_root: Path
    cwd: Path
    settings: Settings

    @property
    def main_branch(self) -> str:
        return self.settings.main_branch or git_ops.get_default_branch(self.repo_root)

    def client(self) -> AIClient | None:
        return get_ai_client(self.settings)

    def cache(self) -> SummaryCache:
        return SummaryCache(self.repo_root, self.settings.cache_dir)

    def orchestrator(self) -> EnrichmentOrchestrator:
        client = self.client()
        synthesizer = SummarySynthesizer(
            client,
            self.cache(),
            attempts=self.settings.ai_attempts,
            retry_delay=self.settings.retry_delay,
        )
        return EnrichmentOrchestrator(
            synthesizer, IssueExtractor(client), max_workers=self.settings.max_workers
        )


def configure_logging(settings: Settings, verbose: bool, interactive: bool) -> None:
    """Route canopy logs to a file and, outside the dashboard, to stderr."""
    root = logging.getLogger("canopy")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False

    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(file_handler)

    # the full-screen dashboard owns the terminal
    if not interactive:
        console_handler = RichHandler(console=Console(stderr=True), show_path=False)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        root.addHandler(console_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())


def _write_selection(path: Path) -> None:
    output_file = os.environ.get("CANOPY_OUTPUT_FILE")
    if output_file:
        with open(output_file, "w", encoding="utf-8") as handle:
            handle.write(str(path))
    else:
        click.echo(path)


def _summary_line(item: Worktree) -> str:
    branch = item.branch or f"{item.name} (detached)"
    issue = f"#{item.issue_number}" if item.issue_number is not None else "-"
    count = item.modified_count if item.modified_count is not None else "?"
    return f"{branch}\t{issue}\t{count}\t{item.summary or ''}"


def _summary_json(item: Worktree) -> str:
    return json.dumps(
        {
            "path": str(item.path),
            "branch": item.branch,
            "issue": item.issue_number,
            "modifiedCount": item.modified_count,
            "summary": item.summary,
        },
        ensure_ascii=False,
    )


@click.group(context_settings={"help_option_names": ["-h", "--help"]}, invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """canopy: worktree dashboard with AI summaries."""
    if ctx.invoked_subcommand == "shell-init":
        return

    cwd = Path.cwd()
    repo_root = git_ops.get_repo_root(cwd)
    if repo_root is None:
        click.echo("canopy: not inside a git repository", err=True)
        raise SystemExit(1)

    try:
        settings = load_settings(repo_root)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    interactive = ctx.invoked_subcommand is None and sys.stdin.isatty() and sys.stdout.isatty()
    configure_logging(settings, verbose, interactive)
    logger.debug("repository %s, cache %s", repo_root, settings.cache_dir)
    ctx.obj = CliState(repo_root=repo_root, cwd=cwd, settings=settings)

    if ctx.invoked_subcommand is not None:
        return

    items = services.load_worktrees(repo_root, cwd)
    if not interactive:
        for item in items:
            click.echo(item.path)
        return

    state: CliState = ctx.obj
    orchestrator = state.orchestrator()
    selected_path = run_tui(
        repo_root,
        items,
        state.main_branch,
        orchestrator,
        orchestrator.synthesizer.client,
        orchestrator.synthesizer.cache,
        settings.identity_model,
        settings.poll_interval,
    )
    if selected_path:
        _write_selection(selected_path)


@main.command("summary")
@click.option("--json", "as_json", is_flag=True, help="Emit one JSON object per line.")
@click.pass_obj
def summary(state: CliState, as_json: bool) -> None:
    """Summarize every worktree, printing each as it completes."""
    if not state.settings.ai_configured:
        click.echo("OPENAI_API_KEY is not set: only clean/unavailable states are reported", err=True)

    items = services.load_worktrees(state.repo_root, state.cwd)
    orchestrator = state.orchestrator()

    def on_update(item: Worktree) -> None:
        if item.summary_loading:
            return
        click.echo(_summary_json(item) if as_json else _summary_line(item))

    orchestrator.enrich(items, state.main_branch, on_update)


@main.command("issue")
@click.argument("branch")
@click.pass_obj
def issue(state: CliState, branch: str) -> None:
    """Print the issue number referenced by BRANCH, or `none`."""
    number = IssueExtractor(state.client()).extract(branch)
    click.echo(number if number is not None else "none")


@main.group("cache")
def cache_group() -> None:
    """Manage the AI result cache."""


@cache_group.command("clear")
@click.pass_obj
def cache_clear(state: CliState) -> None:
    """Drop every cached AI result for this repository."""
    cache = state.cache()
    cache.clear()
    click.echo(f"Cleared {cache.db_path}")


@main.command("shell-init")
def shell_init() -> None:
    """Print shell helpers for canopy (bash/zsh + fish)."""
    bash_zsh = r'''canopy() {
  if [ "$#" -gt 0 ]; then
    command canopy "$@"
    return $?
  fi
  local tmp dest
  tmp="$(mktemp)" || return $?
  CANOPY_OUTPUT_FILE="$tmp" command canopy </dev/tty >/dev/tty
  dest="$(cat "$tmp" 2>/dev/null)"
  rm -f "$tmp"
  if [ -n "$dest" ]; then
    cd "$dest" || return $?
  fi
}
'''
    fish = r'''function canopy
  if test (count $argv) -gt 0
    command canopy $argv
    return $status
  end
  set -l tmp (mktemp)
  if test -z "$tmp"
    return 1
  end
  env CANOPY_OUTPUT_FILE=$tmp command canopy </dev/tty >/dev/tty
  set -l dest (cat $tmp 2>/dev/null)
  rm -f $tmp
  if test -n "$dest"
    cd "$dest"
  end
end
'''
    click.echo("# bash/zsh\n" + bash_zsh + "\n# fish\n" + fish)


if __name__ == "__main__":
    main()
