from __future__ import annotations

from pathlib import Path

import openai

from canopy.cache_db import SummaryCache
from canopy.identity import resolve_identity
from canopy.models import ProjectIdentity

IDENTITY_JSON = '{"emoji": "🛒", "title": "Shop Front", "gradientStart": "#ff77aa", "gradientEnd": "#77ddff"}'


def test_default_without_client(tmp_path: Path) -> None:
    root = tmp_path / "shop-front"
    assert resolve_identity(root, None) == ProjectIdentity("🌲", "shop-front", "#42b883", "#258b5f")


def test_generated_identity_is_cached(tmp_path: Path, make_client) -> None:
    root = tmp_path / "shop-front"
    cache = SummaryCache(root, tmp_path / "cache")
    client, responses = make_client(IDENTITY_JSON)

    expected = ProjectIdentity("🛒", "Shop Front", "#ff77aa", "#77ddff")
    assert resolve_identity(root, client, cache, model="gpt-5-mini") == expected
    assert resolve_identity(root, client, cache, model="gpt-5-mini") == expected
    assert len(responses.calls) == 1

    call = responses.calls[0]
    assert call["model"] == "gpt-5-mini"
    assert call["max_output_tokens"] == 96
    assert call["input"] == 'Project path: "shop-front"'
    assert call["text"]["format"]["name"] == "project_identity"


def test_failures_use_default(tmp_path: Path, make_client) -> None:
    root = tmp_path / "blog"
    default = ProjectIdentity("🌲", "blog", "#42b883", "#258b5f")
    for outcome in (
        openai.OpenAIError("down"),
        "not json",
        '{"emoji": "📝", "title": "Blog", "gradientStart": "navy", "gradientEnd": "#ffffff"}',
        '{"emoji": "📝", "title": ""}',
    ):
        client, _ = make_client(outcome)
        assert resolve_identity(root, client) == default
