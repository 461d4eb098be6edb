"""Turn worktree changes into short natural-language status lines."""

import contextlib
import json
import logging
import re
import sqlite3
from pathlib import Path

from canopy import cache_db, changes
from canopy.ai_client import (
    AIClient,
    AIExhausted,
    AIMalformedOutput,
    call_with_retry,
    error_snippet,
    require_client,
)
from canopy.cache_db import SummaryCache
from canopy.fingerprint import changes_fingerprint, text_fingerprint
from canopy.git_ops import SourceUnavailable
from canopy.models import AIStatus, CacheEntry, StatusResult, WorktreeSummary

logger = logging.getLogger(__name__)

MAX_WORDS = 10
MAX_STATUS_DIFF_CHARS = 2_000
MAX_STATUS_CONTEXT_CHARS = 500
MIN_DIFF_CHARS = 50

SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "One emoji followed by up to 10 words describing the feature or bug fix, no newlines",
            "maxLength": 100,
        }
    },
    "required": ["summary"],
    "additionalProperties": False,
}

SUMMARY_INSTRUCTIONS = """Summarize the git diffs into a single active-tense sentence (max 10 words).
Ignore imports, formatting, and minor refactors.
Focus on the feature being added or the bug being fixed.
Start with an emoji.
Respond with JSON: {"summary":"emoji + description"}
No newlines in your response.
Examples:
{"summary":"🚧 Building dashboard filters"}
{"summary":"🔧 Optimizing CLI flag parsing"}
{"summary":"✅ Fixing auth handshake bug"}
{"summary":"🎨 Redesigning settings page"}"""

STATUS_SCHEMA = {
    "type": "object",
    "properties": {
        "emoji": {"type": "string", "description": "A single relevant emoji representing the work."},
        "description": {
            "type": "string",
            "description": "A concise sentence (max 10 words) describing the active changes.",
        },
    },
    "required": ["emoji", "description"],
    "additionalProperties": False,
}

STATUS_INSTRUCTIONS = (
    "You are a CLI file manager observer. Analyze the Git Diff and README to identify "
    '"What is being updated?". Describe the active work in one sentence (max 10 words) '
    "and pick one emoji for it."
)

_QUOTED_SUMMARY_PATTERNS = [
    re.compile(r'"summary"\s*:\s*"([^"]+)"'),
    re.compile(r"\"summary\"\s*:\s*'([^']+)'"),
    re.compile(r"'summary'\s*:\s*\"([^\"]+)\""),
    re.compile(r"'summary'\s*:\s*'([^']+)'"),
    re.compile(r"\"summary\"[^\"']*[\"']([^\"']+)[\"']"),
]
_EMOJI_THEN_WORD = re.compile(r"([\u0080-\U0010ffff])([A-Za-z0-9])")


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def parse_resilient_json(text: str) -> str | None:
    """Pull the `summary` field out of model output, even from broken JSON."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("summary"), str):
        return _collapse(parsed["summary"])

    for pattern in _QUOTED_SUMMARY_PATTERNS:
        match = pattern.search(text)
        if match:
            return _collapse(match.group(1))
    return None


def normalize_summary(text: str) -> str:
    """First line only, single spaces, a space after a leading emoji, at most 10 words."""
    first_line = re.split(r"\r?\n", text, maxsplit=1)[0]
    compressed = _collapse(first_line)
    if not compressed:
        return ""
    compressed = _EMOJI_THEN_WORD.sub(r"\1 \2", compressed)
    return " ".join(compressed.split(" ")[:MAX_WORDS])


def parse_status(text: str) -> AIStatus:
    """Validate an `{emoji, description}` payload."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AIMalformedOutput(f"status is not JSON: {error_snippet(text)}") from exc
    if not isinstance(data, dict):
        raise AIMalformedOutput(f"status is not an object: {error_snippet(text)}")
    emoji = data.get("emoji")
    description = data.get("description")
    if not isinstance(emoji, str) or not isinstance(description, str):
        raise AIMalformedOutput(f"status fields missing: {error_snippet(text)}")
    description = _collapse(description)
    if not emoji.strip() or not description:
        raise AIMalformedOutput(f"status fields empty: {error_snippet(text)}")
    return AIStatus(emoji=emoji.strip(), description=description)


def clean_summary(branch: str | None) -> str:
    return f"Clean: {branch}" if branch else "No changes"


def exhausted_summary(branch: str | None) -> str:
    return f"{branch} (analysis unavailable)" if branch else "Analysis unavailable"


def git_unavailable_summary(branch: str | None) -> str:
    return f"{branch} (git unavailable)" if branch else "Git status unavailable"


class SummarySynthesizer:
    """Produce per-worktree summaries and active-work statuses."""

    def __init__(
        self,
        client: AIClient | None,
        cache: SummaryCache | None = None,
        attempts: int = 3,
        retry_delay: float = 0.3,
    ) -> None:
        self.client = client
        self.cache = cache
        self.attempts = attempts
        self.retry_delay = retry_delay

    @property
    def model_tag(self) -> str:
        return self.client.model if self.client else ""

    def generate_worktree_summary(
        self,
        worktree_path: Path,
        branch: str | None,
        main_branch: str = "main",
    ) -> WorktreeSummary | None:
        """Summarize one worktree; returns None only when AI is not configured."""
        try:
            status = changes.read_status(worktree_path)
            worktree_changes = changes.collect_changes(worktree_path, status=status)
        except SourceUnavailable as exc:
            logger.warning("git status failed for %s: %s", worktree_path, exc)
            return WorktreeSummary(git_unavailable_summary(branch), 0)

        modified_count = worktree_changes.changed_file_count
        if modified_count == 0:
            return WorktreeSummary(clean_summary(branch), 0)

        if self.client is None:
            return None

        key = cache_db.worktree_key(worktree_path)
        content_hash = changes_fingerprint(worktree_changes, branch)
        with self._hold(key):
            return self._summarize(worktree_path, branch, main_branch, status, key, content_hash, modified_count)

    def _hold(self, key: str) -> contextlib.AbstractContextManager:
        if self.cache is None:
            return contextlib.nullcontext()
        return self.cache.locks.hold(key)

    def _summarize(
        self,
        worktree_path: Path,
        branch: str | None,
        main_branch: str,
        status: StatusResult,
        key: str,
        content_hash: str,
        modified_count: int,
    ) -> WorktreeSummary:
        entry = self._cached(key, content_hash)
        if entry is not None and isinstance(entry.result.get("summary"), str):
            logger.debug("summary cache hit for %s", worktree_path)
            return WorktreeSummary(entry.result["summary"], modified_count)

        prompt = changes.build_summary_input(worktree_path, status)
        try:
            summary = call_with_retry(
                lambda: self._request_summary(prompt),
                attempts=self.attempts,
                delay=self.retry_delay,
            )
        except AIExhausted as exc:
            logger.error("worktree summary retries exhausted for %s (base %s): %s", worktree_path, main_branch, exc)
            return WorktreeSummary(exhausted_summary(branch), modified_count)

        self._remember(key, {"summary": summary}, content_hash)
        return WorktreeSummary(summary, modified_count)

    def _cached(self, key: str, content_hash: str) -> CacheEntry | None:
        """Cache lookup; an unreadable cache counts as a miss."""
        if self.cache is None:
            return None
        try:
            return self.cache.lookup(key, content_hash)
        except sqlite3.Error as exc:
            logger.warning("cache lookup failed for %s: %s", key, exc)
            return None

    def _remember(self, key: str, result: dict, content_hash: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.store(key, result, content_hash, self.model_tag)
        except sqlite3.Error as exc:
            logger.warning("cache write failed for %s: %s", key, exc)

    def _request_summary(self, prompt: str) -> str:
        client = require_client(self.client)
        text = client.request_json(
            instructions=SUMMARY_INSTRUCTIONS,
            input=prompt,
            schema_name="worktree_summary",
            schema=SUMMARY_SCHEMA,
            max_output_tokens=128,
        )
        summary = parse_resilient_json(re.sub(r"[\r\n]+", "", text))
        if not summary:
            raise AIMalformedOutput(f"failed to parse summary. Raw: {error_snippet(text)}")
        normalized = normalize_summary(summary)
        if not normalized:
            raise AIMalformedOutput(f"empty normalized summary. Raw: {error_snippet(summary)}")
        return normalized

    def generate_status(self, diff: str, context: str = "", cache_key: str | None = None) -> AIStatus | None:
        """Describe the active work from a diff; None when there is nothing to say."""
        if not diff.strip() or self.client is None:
            return None

        diff = diff[:MAX_STATUS_DIFF_CHARS]
        context = context[:MAX_STATUS_CONTEXT_CHARS]
        content_hash = text_fingerprint(diff, context)
        entry = self._cached(cache_key, content_hash) if cache_key is not None else None
        if entry is not None:
            try:
                return AIStatus(emoji=entry.result["emoji"], description=entry.result["description"])
            except (KeyError, TypeError):
                logger.debug("ignoring malformed cached status for %s", cache_key)

        prompt = f"PROJECT CONTEXT:\n{context}\n\nRECENT CHANGES:\n{diff}"
        try:
            status = call_with_retry(
                lambda: self._request_status(prompt),
                attempts=self.attempts,
                delay=self.retry_delay,
            )
        except AIExhausted as exc:
            logger.error("status generation retries exhausted: %s", exc)
            return None

        if cache_key is not None:
            self._remember(cache_key, {"emoji": status.emoji, "description": status.description}, content_hash)
        return status

    def _request_status(self, prompt: str) -> AIStatus:
        client = require_client(self.client)
        text = client.request_json(
            instructions=STATUS_INSTRUCTIONS,
            input=prompt,
            schema_name="status_update",
            schema=STATUS_SCHEMA,
            max_output_tokens=100,
        )
        return parse_status(text)


def analyze_worktree_status(
    root: Path, synthesizer: SummarySynthesizer, min_diff_chars: int = MIN_DIFF_CHARS
) -> AIStatus | None:
    """Analysis step for the active worktree; trivial diffs skip the model."""
    context = changes.gather_context(root)
    if len(context.diff) <= min_diff_chars:
        return None
    return synthesizer.generate_status(context.diff, context.readme, cache_key=cache_db.status_key(root))
