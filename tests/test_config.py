from __future__ import annotations

import json
from pathlib import Path

import pytest

from canopy.config import ConfigError, Settings, load_settings

ENV_VARS = ("OPENAI_API_KEY", "CANOPY_MODEL", "CANOPY_CACHE_DIR", "CANOPY_MAX_WORKERS", "CANOPY_LOG_FILE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write_settings(root: Path, data: object) -> None:
    (root / ".canopy").mkdir(parents=True, exist_ok=True)
    (root / ".canopy" / "settings.json").write_text(json.dumps(data))


def test_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path)
    assert settings == Settings()
    assert settings.model == "gpt-5-nano"
    assert settings.identity_model == "gpt-5-mini"
    assert settings.ai_attempts == 3
    assert not settings.ai_configured


def test_settings_file(tmp_path: Path) -> None:
    _write_settings(
        tmp_path,
        {"model": "gpt-5-mini", "maxWorkers": 8, "pollInterval": 5, "mainBranch": "trunk", "unknown": 1},
    )
    settings = load_settings(tmp_path)
    assert settings.model == "gpt-5-mini"
    assert settings.max_workers == 8
    assert settings.poll_interval == 5.0
    assert settings.main_branch == "trunk"


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_settings(tmp_path, {"model": "gpt-5-mini", "maxWorkers": 8})
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("CANOPY_MODEL", "gpt-5")
    monkeypatch.setenv("CANOPY_MAX_WORKERS", "2")
    monkeypatch.setenv("CANOPY_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("CANOPY_LOG_FILE", str(tmp_path / "canopy.log"))

    settings = load_settings(tmp_path)
    assert settings.ai_configured
    assert settings.model == "gpt-5"
    assert settings.max_workers == 2
    assert settings.cache_dir == tmp_path / "cache"
    assert settings.log_file == tmp_path / "canopy.log"


def test_without_repository(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert load_settings().openai_api_key == "sk-test"


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_invalid_file(tmp_path: Path, content: str) -> None:
    (tmp_path / ".canopy").mkdir()
    (tmp_path / ".canopy" / "settings.json").write_text(content)
    with pytest.raises(ConfigError):
        load_settings(tmp_path)


@pytest.mark.parametrize("data", [{"maxWorkers": "many"}, {"maxWorkers": 0}, {"aiAttempts": 0}])
def test_invalid_values(tmp_path: Path, data: dict[str, object]) -> None:
    _write_settings(tmp_path, data)
    with pytest.raises(ConfigError):
        load_settings(tmp_path)


def test_invalid_env_workers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CANOPY_MAX_WORKERS", "lots")
    with pytest.raises(ConfigError):
        load_settings(tmp_path)
