"""Project identity (emoji, title, gradient) for the dashboard header."""

import json
import logging
import re
import sqlite3
from pathlib import Path

from canopy import cache_db
from canopy.ai_client import AIClient, AIError
from canopy.cache_db import SummaryCache
from canopy.fingerprint import project_fingerprint
from canopy.models import ProjectIdentity

logger = logging.getLogger(__name__)

DEFAULT_EMOJI = "🌲"
DEFAULT_GRADIENT = ("#42b883", "#258b5f")

IDENTITY_SCHEMA = {
    "type": "object",
    "properties": {
        "emoji": {"type": "string"},
        "title": {"type": "string"},
        "gradientStart": {"type": "string"},
        "gradientEnd": {"type": "string"},
    },
    "required": ["emoji", "title", "gradientStart", "gradientEnd"],
    "additionalProperties": False,
}

IDENTITY_INSTRUCTIONS = (
    "You create visual identities for projects. Choose a representative emoji, convert folder "
    "name to Title Case (remove hyphens/underscores), and pick two bright/neon/pastel gradient "
    "colors. Avoid dark colors."
)

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def default_identity(root: Path) -> ProjectIdentity:
    return ProjectIdentity(DEFAULT_EMOJI, root.name, *DEFAULT_GRADIENT)


def _from_mapping(data: object) -> ProjectIdentity | None:
    if not isinstance(data, dict):
        return None
    values = [data.get(name) for name in ("emoji", "title", "gradientStart", "gradientEnd")]
    if not all(isinstance(value, str) and value.strip() for value in values):
        return None
    emoji, title, start, end = (value.strip() for value in values)  # type: ignore[union-attr]
    if not _HEX_COLOR.match(start) or not _HEX_COLOR.match(end):
        return None
    return ProjectIdentity(emoji, title, start, end)


def _to_mapping(identity: ProjectIdentity) -> dict[str, str]:
    return {
        "emoji": identity.emoji,
        "title": identity.title,
        "gradientStart": identity.gradient_start,
        "gradientEnd": identity.gradient_end,
    }


def resolve_identity(
    root: Path,
    client: AIClient | None,
    cache: SummaryCache | None = None,
    model: str | None = None,
) -> ProjectIdentity:
    """Cached identity when the project is unchanged, else ask the model.

    Any failure yields the default identity.
    """
    if client is None:
        return default_identity(root)

    key = cache_db.identity_key(root)
    content_hash = project_fingerprint(root)
    if cache is not None:
        try:
            entry = cache.lookup(key, content_hash)
        except sqlite3.Error as exc:
            logger.warning("identity cache lookup failed: %s", exc)
            entry = None
        if entry is not None:
            cached = _from_mapping(entry.result)
            if cached is not None:
                return cached

    try:
        text = client.request_json(
            instructions=IDENTITY_INSTRUCTIONS,
            input=f'Project path: "{root.name}"',
            schema_name="project_identity",
            schema=IDENTITY_SCHEMA,
            max_output_tokens=96,
            model=model,
        )
    except AIError as exc:
        logger.warning("project identity generation failed: %s", exc)
        return default_identity(root)

    try:
        identity = _from_mapping(json.loads(text))
    except json.JSONDecodeError:
        identity = None
    if identity is None:
        logger.warning("project identity response unusable: %s", text[:200])
        return default_identity(root)

    if cache is not None:
        try:
            cache.store(key, _to_mapping(identity), content_hash, model or client.model)
        except sqlite3.Error as exc:
            logger.warning("identity cache write failed: %s", exc)
    return identity
