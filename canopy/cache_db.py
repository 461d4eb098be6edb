"""SQLite cache for AI results keyed by target identity."""

import hashlib
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Self

from canopy.locks import KeyedLocks
from canopy.models import CacheEntry

logger = logging.getLogger(__name__)

_SCHEMA_ENSURED: set[str] = set()
_SCHEMA_LOCK = threading.Lock()


def worktree_key(path: Path) -> str:
    return f"worktree:{path}"


def status_key(path: Path) -> str:
    return f"status:{path}"


def identity_key(path: Path) -> str:
    return f"identity:{path}"


def _get_db_path(repo_root: Path, cache_root: Path) -> Path:
    """Get the database path for a repository."""
    repo_id = hashlib.sha1(str(repo_root).encode("utf-8")).hexdigest()
    return cache_root / f"{repo_id}.sqlite"


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """Ensure the database schema exists."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ai_cache (
          key TEXT PRIMARY KEY,
          result TEXT NOT NULL,
          content_hash TEXT NOT NULL,
          timestamp INTEGER NOT NULL,
          model TEXT NOT NULL
        )
        """
    )
    conn.commit()


def _row_to_entry(row: sqlite3.Row) -> CacheEntry | None:
    try:
        result = json.loads(row["result"])
    except json.JSONDecodeError:
        logger.warning("Dropping unreadable cache row %s", row["key"])
        return None
    if not isinstance(result, dict):
        return None
    return CacheEntry(
        result=result,
        content_hash=row["content_hash"],
        timestamp=row["timestamp"],
        model_tag=row["model"],
    )


class CacheDB:
    """Context manager for one SQLite connection to the cache."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def __enter__(self) -> Self:
        self._conn = sqlite3.connect(str(self.db_path), timeout=5)
        try:
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

            db_key = str(self.db_path)
            with _SCHEMA_LOCK:
                if db_key not in _SCHEMA_ENSURED:
                    _ensure_schema(self._conn)
                    _SCHEMA_ENSURED.add(db_key)
            return self
        except Exception:
            self._conn.close()
            self._conn = None
            raise

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.commit()
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        """Get the connection (must be inside context)."""
        if self._conn is None:
            raise RuntimeError("CacheDB must be used as a context manager")
        return self._conn


class SummaryCache:
    """Persistent key -> CacheEntry store, one database per repository.

    Every call opens its own connection, so worker threads never share one.
    Read-then-write sequences for a key go through `locks.hold(key)`.
    """

    def __init__(self, repo_root: Path, cache_root: Path) -> None:
        self.repo_root = repo_root
        self.cache_root = cache_root
        self.cache_root.mkdir(parents=True, exist_ok=True)
        self.db_path = _get_db_path(repo_root, cache_root)
        self.locks = KeyedLocks()

    def _db(self) -> CacheDB:
        return CacheDB(self.db_path)

    def load(self) -> dict[str, CacheEntry]:
        """Load every entry."""
        with self._db() as db:
            rows = db.conn.execute(
                "SELECT key, result, content_hash, timestamp, model FROM ai_cache"
            ).fetchall()
        entries: dict[str, CacheEntry] = {}
        for row in rows:
            entry = _row_to_entry(row)
            if entry is not None:
                entries[row["key"]] = entry
        return entries

    def save(self, mapping: Mapping[str, CacheEntry]) -> None:
        """Replace the whole store with `mapping` in one transaction."""
        with self._db() as db:
            with db.conn:
                db.conn.execute("DELETE FROM ai_cache")
                db.conn.executemany(
                    """
                    INSERT INTO ai_cache (key, result, content_hash, timestamp, model)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            key,
                            json.dumps(entry.result),
                            entry.content_hash,
                            entry.timestamp,
                            entry.model_tag,
                        )
                        for key, entry in mapping.items()
                    ],
                )

    def get(self, key: str) -> CacheEntry | None:
        with self._db() as db:
            row = db.conn.execute(
                "SELECT key, result, content_hash, timestamp, model FROM ai_cache WHERE key = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        return _row_to_entry(row)

    def lookup(self, key: str, content_hash: str) -> CacheEntry | None:
        """Return the entry only if it was computed from `content_hash`."""
        entry = self.get(key)
        if entry is None or entry.content_hash != content_hash:
            return None
        return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        with self._db() as db:
            db.conn.execute(
                """
                INSERT INTO ai_cache (key, result, content_hash, timestamp, model)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  result = excluded.result,
                  content_hash = excluded.content_hash,
                  timestamp = excluded.timestamp,
                  model = excluded.model
                """,
                (key, json.dumps(entry.result), entry.content_hash, entry.timestamp, entry.model_tag),
            )

    def store(self, key: str, result: dict, content_hash: str, model_tag: str) -> CacheEntry:
        """Build an entry stamped with the current time and persist it."""
        entry = CacheEntry(
            result=result,
            content_hash=content_hash,
            timestamp=int(time.time() * 1000),
            model_tag=model_tag,
        )
        self.put(key, entry)
        return entry

    def delete(self, key: str) -> None:
        with self._db() as db:
            db.conn.execute("DELETE FROM ai_cache WHERE key = ?", (key,))

    def clear(self) -> None:
        with self._db() as db:
            db.conn.execute("DELETE FROM ai_cache")
