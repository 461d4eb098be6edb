from __future__ import annotations

import openai
import pytest

from canopy import issues
from canopy.issues import UNRESOLVED, IssueCache, IssueExtractor


@pytest.mark.parametrize(
    "branch",
    ["main", "master", "develop", "staging", "production", "release", "hotfix", "release/1.2", "hotfix/issue-5", "Main"],
)
def test_skip_list_never_reaches_model(branch: str, make_client) -> None:
    client, responses = make_client('{"issueNumber": 99}')
    extractor = IssueExtractor(client)
    assert extractor.extract(branch) is None
    assert responses.calls == []


def test_skip_list_needs_exact_prefix() -> None:
    assert not issues.is_skipped_branch("mainline-issue-3")
    assert IssueExtractor(None).extract("mainline-issue-3") == 3


@pytest.mark.parametrize(
    ("branch", "expected"),
    [
        ("feature/issue-158-add-button", 158),
        ("fix/issues/42", 42),
        ("fix/issue/7", 7),
        ("feature/#42-description", 42),
        ("fix/GH-42-login-bug", 42),
        ("feature/jira-456-task", 456),
    ],
)
def test_fast_path_patterns(branch: str, expected: int, make_client) -> None:
    client, responses = make_client('{"issueNumber": 1}')
    extractor = IssueExtractor(client)
    assert extractor.extract(branch) == expected
    assert branch in extractor.cache
    assert responses.calls == []


def test_cached_branch_skips_patterns(monkeypatch: pytest.MonkeyPatch) -> None:
    extractor = IssueExtractor(None)
    calls: list[str] = []
    original = extractor.match_patterns

    def spy(branch: str) -> int | None:
        calls.append(branch)
        return original(branch)

    monkeypatch.setattr(extractor, "match_patterns", spy)
    assert extractor.extract("feature/issue-12-x") == 12
    assert extractor.extract("feature/issue-12-x") == 12
    assert extractor.extract_sync("feature/issue-12-x") == 12
    assert calls == ["feature/issue-12-x"]


def test_zero_is_not_an_issue(make_client) -> None:
    client, responses = make_client('{"issueNumber": null}')
    extractor = IssueExtractor(client)
    assert extractor.extract_sync("feature/issue-0") is UNRESOLVED
    assert extractor.extract("feature/issue-0") is None
    assert len(responses.calls) == 1


def test_model_fallback(make_client) -> None:
    client, responses = make_client('{"issueNumber": 77}')
    extractor = IssueExtractor(client)
    assert extractor.extract("feature/ticket-77-refactor") == 77
    assert extractor.extract("feature/ticket-77-refactor") == 77
    assert len(responses.calls) == 1
    call = responses.calls[0]
    assert call["input"] == "feature/ticket-77-refactor"
    assert call["max_output_tokens"] == 64
    assert call["text"]["format"]["name"] == "issue_extraction"


def test_model_says_no_issue_is_cached(make_client) -> None:
    client, responses = make_client('{"issueNumber": null}')
    extractor = IssueExtractor(client)
    assert extractor.extract("feature/add-dark-mode") is None
    assert extractor.extract("feature/add-dark-mode") is None
    assert len(responses.calls) == 1


def test_transport_failure_is_not_cached(make_client) -> None:
    client, responses = make_client(openai.OpenAIError("down"), '{"issueNumber": 5}')
    extractor = IssueExtractor(client)
    assert extractor.extract("feature/five") is None
    assert "feature/five" not in extractor.cache
    assert extractor.extract("feature/five") == 5
    assert len(responses.calls) == 2


def test_without_client_caches_no_issue() -> None:
    extractor = IssueExtractor(None)
    assert extractor.extract("feature/add-dark-mode") is None
    assert "feature/add-dark-mode" in extractor.cache


def test_blank_branch() -> None:
    extractor = IssueExtractor(None)
    assert extractor.extract("") is None
    assert extractor.extract(None) is None
    assert extractor.extract_sync("  ") is None
    assert len(extractor.cache) == 0


def test_clear_forgets_results() -> None:
    cache = IssueCache()
    extractor = IssueExtractor(None, cache)
    extractor.extract("feature/issue-3")
    assert len(cache) == 1
    extractor.clear()
    assert len(cache) == 0
    assert cache.get("feature/issue-3") is UNRESOLVED


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"issueNumber": 12}', 12),
        ('{"issueNumber": 12.0}', 12),
        ('{"issueNumber": null}', None),
        ('{"issueNumber": -3}', None),
        ('{"issueNumber": 1.5}', None),
        ('{"issueNumber": true}', None),
        ('{"issueNumber": 31', 31),
        ("[]", None),
        ("garbage", None),
    ],
)
def test_parse_issue_response(raw: str, expected: int | None) -> None:
    assert issues.parse_issue_response(raw) == expected
