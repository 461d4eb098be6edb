"""Configuration management."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

DEFAULT_MODEL = "gpt-5-nano"
DEFAULT_IDENTITY_MODEL = "gpt-5-mini"


class ConfigError(Exception):
    """Settings file is invalid."""


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "canopy"


@dataclass
class Settings:
    """Application configuration."""

    openai_api_key: str | None = None
    model: str = DEFAULT_MODEL
    identity_model: str = DEFAULT_IDENTITY_MODEL
    cache_dir: Path = field(default_factory=_default_cache_dir)
    max_workers: int = 4
    ai_attempts: int = 3
    retry_delay: float = 0.3
    poll_interval: float = 2.0
    main_branch: str | None = None
    log_file: Path | None = None

    @property
    def ai_configured(self) -> bool:
        return bool(self.openai_api_key)


# settings.json key -> (attribute, converter)
_FILE_KEYS = {
    "model": ("model", str),
    "identityModel": ("identity_model", str),
    "cacheDir": ("cache_dir", lambda v: Path(v).expanduser()),
    "maxWorkers": ("max_workers", int),
    "aiAttempts": ("ai_attempts", int),
    "retryDelay": ("retry_delay", float),
    "pollInterval": ("poll_interval", float),
    "mainBranch": ("main_branch", str),
    "logFile": ("log_file", lambda v: Path(v).expanduser()),
}


def _settings_path(repo_root: Path) -> Path:
    return repo_root / ".canopy" / "settings.json"


def _load_settings_file(repo_root: Path) -> dict[str, object]:
    path = _settings_path(repo_root)
    if not path.is_file():
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid settings format in {path}")
    return cast(dict[str, object], raw)


def load_settings(repo_root: Path | None = None) -> Settings:
    """Build settings from `.canopy/settings.json`, then environment overrides."""
    settings = Settings()

    if repo_root is not None:
        for key, value in _load_settings_file(repo_root).items():
            if key not in _FILE_KEYS or value is None:
                continue
            attr, convert = _FILE_KEYS[key]
            try:
                setattr(settings, attr, convert(value))
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {key!r}: {value!r}") from exc

    settings.openai_api_key = os.getenv("OPENAI_API_KEY") or None
    settings.model = os.getenv("CANOPY_MODEL", settings.model)

    cache_dir = os.getenv("CANOPY_CACHE_DIR")
    if cache_dir:
        settings.cache_dir = Path(cache_dir).expanduser()

    max_workers = os.getenv("CANOPY_MAX_WORKERS")
    if max_workers:
        try:
            settings.max_workers = int(max_workers)
        except ValueError as exc:
            raise ConfigError(f"CANOPY_MAX_WORKERS must be an integer, got {max_workers!r}") from exc

    log_file = os.getenv("CANOPY_LOG_FILE")
    if log_file:
        settings.log_file = Path(log_file).expanduser()

    if settings.max_workers < 1:
        raise ConfigError("maxWorkers must be at least 1")
    if settings.ai_attempts < 1:
        raise ConfigError("aiAttempts must be at least 1")
    return settings
