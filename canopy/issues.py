"""Map branch names to issue numbers."""

import json
import logging
import re
import threading
from enum import Enum

from canopy.ai_client import AIClient, AIError
from canopy.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Tried in order before falling back to the model
ISSUE_PATTERNS = [
    re.compile(r"issue-(\d+)", re.IGNORECASE),  # feature/issue-158-description
    re.compile(r"issues?/(\d+)", re.IGNORECASE),  # fix/issues/42
    re.compile(r"#(\d+)"),  # feature/#42-description
    re.compile(r"gh-(\d+)", re.IGNORECASE),  # fix/GH-42-login-bug
    re.compile(r"jira-(\d+)", re.IGNORECASE),  # feature/jira-456-task
]

# Mainline branches never carry an issue number
SKIP_BRANCHES = ("main", "master", "develop", "staging", "production", "release", "hotfix")

ISSUE_SCHEMA = {
    "type": "object",
    "properties": {
        "issueNumber": {
            "anyOf": [{"type": "number"}, {"type": "null"}],
            "description": "The extracted issue number, or null if none found",
        }
    },
    "required": ["issueNumber"],
    "additionalProperties": False,
}

ISSUE_INSTRUCTIONS = """Extract the GitHub issue number from this git branch name.
Return JSON: {"issueNumber": <number or null>}

Rules:
- Look for numbers that represent issue references (like "issue-123", "#42", "GH-15")
- If multiple numbers exist, prefer the one that looks like an issue reference
- Return null if no issue number is found or the branch doesn't reference an issue
- Common non-issue branches: main, develop, feature/general-refactor

Examples:
"feature/issue-158-add-button" -> {"issueNumber": 158}
"fix/GH-42-login-bug" -> {"issueNumber": 42}
"feature/add-dark-mode" -> {"issueNumber": null}
"refactor/cleanup-v2" -> {"issueNumber": null}"""

LAX_ISSUE_PATTERN = re.compile(r'"issueNumber"\s*:\s*(\d+)')


class Resolution(Enum):
    """Marker for a branch the synchronous lookup could not decide."""

    UNRESOLVED = "unresolved"


UNRESOLVED = Resolution.UNRESOLVED


class IssueCache:
    """Branch name -> issue number, or None for "no issue"."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, int | None] = {}

    def get(self, branch: str) -> int | None | Resolution:
        with self._lock:
            return self._entries.get(branch, UNRESOLVED)

    def set(self, branch: str, issue: int | None) -> None:
        with self._lock:
            self._entries[branch] = issue

    def __contains__(self, branch: str) -> bool:
        with self._lock:
            return branch in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def is_skipped_branch(branch: str) -> bool:
    lower = branch.lower()
    return any(lower == skip or lower.startswith(f"{skip}/") for skip in SKIP_BRANCHES)


def _positive_int(raw: str) -> int | None:
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def parse_issue_response(text: str) -> int | None:
    """Read `issueNumber` from model output, tolerating broken JSON."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = LAX_ISSUE_PATTERN.search(text)
        return _positive_int(match.group(1)) if match else None
    if not isinstance(data, dict):
        return None
    value = data.get("issueNumber")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0 or int(value) != value:
        return None
    return int(value)


class IssueExtractor:
    """Resolve issue numbers with regex first and the model as a fallback."""

    def __init__(self, client: AIClient | None, cache: IssueCache | None = None) -> None:
        self.client = client
        self.cache = cache if cache is not None else IssueCache()
        self._locks = KeyedLocks()

    def match_patterns(self, branch: str) -> int | None:
        """First positive issue number found by the fast-path patterns."""
        for pattern in ISSUE_PATTERNS:
            match = pattern.search(branch)
            if match:
                number = _positive_int(match.group(1))
                if number is not None:
                    return number
        return None

    def extract_sync(self, branch_name: str | None) -> int | None | Resolution:
        """Cache, skip list and patterns only; never touches the network.

        Returns UNRESOLVED when only the model could answer.
        """
        branch = (branch_name or "").strip()
        if not branch:
            return None

        cached = self.cache.get(branch)
        if cached is not UNRESOLVED:
            return cached

        if is_skipped_branch(branch):
            self.cache.set(branch, None)
            return None

        number = self.match_patterns(branch)
        if number is not None:
            self.cache.set(branch, number)
            return number
        return UNRESOLVED

    def extract(self, branch_name: str | None) -> int | None:
        """Resolve a branch, asking the model when no pattern matches."""
        branch = (branch_name or "").strip()
        if not branch:
            return None

        # one resolution per branch even with concurrent callers
        with self._locks.hold(branch):
            result = self.extract_sync(branch)
            if result is not UNRESOLVED:
                return result

            if self.client is None:
                self.cache.set(branch, None)
                return None

            try:
                number = self._extract_with_ai(self.client, branch)
            except AIError as exc:
                logger.debug("AI issue extraction failed for %s: %s", branch, exc)
                return None

            self.cache.set(branch, number)
            return number

    def _extract_with_ai(self, client: AIClient, branch: str) -> int | None:
        text = client.request_json(
            instructions=ISSUE_INSTRUCTIONS,
            input=branch,
            schema_name="issue_extraction",
            schema=ISSUE_SCHEMA,
            max_output_tokens=64,
        )
        return parse_issue_response(text)

    def clear(self) -> None:
        self.cache.clear()
        self._locks.clear()
