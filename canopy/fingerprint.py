"""Content fingerprints deciding whether a cached AI result is still valid."""

import hashlib
import json
from pathlib import Path

from canopy.models import WorktreeChanges


def changes_fingerprint(changes: WorktreeChanges, branch: str | None = None) -> str:
    """Hash the change set of a worktree.

    Only file identity, status, line stats and mtimes are hashed; the collection
    timestamp is not, so an untouched worktree keeps its fingerprint.
    """
    rows = sorted(
        [c.path, c.status, c.insertions, c.deletions, c.mtime_ms or 0] for c in changes.changes
    )
    payload = json.dumps({"branch": branch or "", "changes": rows}, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def text_fingerprint(*parts: str) -> str:
    """Hash one or more text blobs (diff, README context)."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def project_fingerprint(root: Path) -> str:
    """Hash the project folder name; the identity only depends on it."""
    return hashlib.sha256(root.name.encode("utf-8")).hexdigest()
