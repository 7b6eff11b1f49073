"""SQLite-backed knowledge store.

Namespaced key/value cache that survives across tasks and process restarts.
Keys take the form `namespace::key`; values must be JSON-serializable.
Writers may interleave; the last write for a key wins.
"""

import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from taskpilot.core.errors import KnowledgeError
from taskpilot.core.models import KnowledgeEntry

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "::"
KNOWLEDGE_NAMESPACE = "knowledge"

_TOKEN_RE = re.compile(r"[a-z0-9_]+")
# Words carrying no signal for overlap ranking
_STOPWORDS = frozenset(
    "a an and are as at be by for from how i in is it of on or that the this to what with".split()
)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def namespaced_key(namespace: str, key: str) -> str:
    """Join namespace and key. Neither part may be empty."""
    if not namespace or not key:
        raise KnowledgeError("Namespace and key must be non-empty")
    if NAMESPACE_SEPARATOR in namespace:
        raise KnowledgeError(f"Namespace must not contain '{NAMESPACE_SEPARATOR}': {namespace}")
    return f"{namespace}{NAMESPACE_SEPARATOR}{key}"


def _tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if t not in _STOPWORDS}


class KnowledgeStore:
    """Persistent namespaced key/value store.

    Uses a fresh connection per operation so one store can be shared by
    concurrently running tasks.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS knowledge (
        key TEXT PRIMARY KEY,
        value JSON NOT NULL,
        tags JSON,
        timestamp TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_knowledge_timestamp ON knowledge(timestamp);
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
        return KnowledgeEntry(
            key=row["key"],
            value=json.loads(row["value"]),
            tags=json.loads(row["tags"]) if row["tags"] else None,
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def get(self, key: str) -> KnowledgeEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, value, tags, timestamp FROM knowledge WHERE key = ?", (key,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def set(self, key: str, value: Any, tags: list[str] | None = None) -> KnowledgeEntry:
        """Insert or replace an entry.

        Raises:
            KnowledgeError: If the key is not namespaced or the value is not JSON-serializable
        """
        if NAMESPACE_SEPARATOR not in key:
            raise KnowledgeError(f"Key must be namespaced as 'namespace{NAMESPACE_SEPARATOR}key': {key}")
        try:
            value_json = json.dumps(value, cls=_SafeJSONEncoder)
        except (TypeError, ValueError) as e:
            raise KnowledgeError(f"Value for '{key}' is not JSON-serializable: {e}") from e

        entry = KnowledgeEntry(key=key, value=json.loads(value_json), tags=tags)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO knowledge (key, value, tags, timestamp) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    tags = excluded.tags,
                    timestamp = excluded.timestamp
                """,
                (
                    key,
                    value_json,
                    json.dumps(tags) if tags is not None else None,
                    entry.timestamp.isoformat(),
                ),
            )
        return entry

    def delete(self, key: str) -> bool:
        """Delete an entry. Returns True if it existed."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM knowledge WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def list_entries(self, prefix: str | None = None) -> list[KnowledgeEntry]:
        """List entries, optionally restricted to a key prefix, newest first."""
        with self._connect() as conn:
            if prefix:
                escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                rows = conn.execute(
                    "SELECT key, value, tags, timestamp FROM knowledge "
                    "WHERE key LIKE ? ESCAPE '\\' ORDER BY timestamp DESC",
                    (escaped + "%",),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT key, value, tags, timestamp FROM knowledge ORDER BY timestamp DESC"
                ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def append_knowledge(
        self,
        prompt: str,
        answer: str,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry:
        """Record a prompt/answer pair under the knowledge namespace."""
        key = namespaced_key(KNOWLEDGE_NAMESPACE, uuid.uuid4().hex[:16])
        value = {"prompt": prompt, "answer": answer, "metadata": metadata or {}}
        entry = self.set(key, value)
        logger.info(f"Stored knowledge entry {key}")
        return entry

    def query_knowledge(self, query: str, limit: int = 5) -> list[KnowledgeEntry]:
        """Rank prompt/answer entries by token overlap with the query.

        Entries sharing no token with the query are never returned.
        """
        query_tokens = _tokenize(query)
        if not query_tokens:
            return []

        scored: list[tuple[float, datetime, KnowledgeEntry]] = []
        for entry in self.list_entries(prefix=KNOWLEDGE_NAMESPACE + NAMESPACE_SEPARATOR):
            if not isinstance(entry.value, dict):
                continue
            prompt_tokens = _tokenize(str(entry.value.get("prompt", "")))
            answer_tokens = _tokenize(str(entry.value.get("answer", "")))
            # Prompt matches weigh more than answer matches
            score = 2.0 * len(query_tokens & prompt_tokens) + len(query_tokens & answer_tokens)
            if score > 0:
                scored.append((score, entry.timestamp, entry))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [entry for _, _, entry in scored[:limit]]

    def close(self) -> None:
        """No pooled connections are held; present for symmetric teardown."""
        logger.debug(f"Knowledge store {self.db_path} closed")
