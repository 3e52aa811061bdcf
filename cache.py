"""
Resolved-metadata cache keyed by normalized URL.

CacheStore sits on a CacheBackend (a flat document collection). Expiry is
lazy: stale documents are filtered out at read time by timestamp and only
physically removed when sweep_expired() happens to run.

There is no uniqueness constraint on normalizedUrl. Two concurrent misses
for the same URL both insert, and get_exact() returns the first fresh
document in store order.
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol

from errors import CacheWriteError
from models import CacheEntry
from urls import url_similarity

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_SIMILARITY_THRESHOLD = 0.8

Document = dict


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class CacheBackend(Protocol):
    """Flat document collection. Documents are iterated in insertion order."""

    def first_fresh(self, normalized_url: str, min_timestamp: int) -> tuple[str, Document] | None: ...

    def iter_fresh(self, min_timestamp: int) -> Iterator[tuple[str, Document]]: ...

    def insert(self, doc: Document) -> str: ...

    def update(self, doc_id: str, fields: Document) -> None:
        """Merge ``fields`` into an existing document; KeyError if it's gone."""
        ...

    def stale_ids(self, cutoff: int, limit: int) -> list[str]: ...

    def delete(self, doc_id: str) -> bool: ...

    def count(self, min_timestamp: int | None = None) -> int: ...


class MemoryCacheBackend:
    """Insertion-ordered in-process collection."""

    def __init__(self):
        self._docs: dict[str, Document] = {}
        self._lock = threading.Lock()

    def first_fresh(self, normalized_url: str, min_timestamp: int) -> tuple[str, Document] | None:
        with self._lock:
            for doc_id, doc in self._docs.items():
                if doc["normalizedUrl"] == normalized_url and doc["timestamp"] >= min_timestamp:
                    return doc_id, dict(doc)
        return None

    def iter_fresh(self, min_timestamp: int) -> Iterator[tuple[str, Document]]:
        with self._lock:
            snapshot = [(k, dict(v)) for k, v in self._docs.items() if v["timestamp"] >= min_timestamp]
        yield from snapshot

    def insert(self, doc: Document) -> str:
        doc_id = uuid.uuid4().hex
        with self._lock:
            self._docs[doc_id] = dict(doc)
        return doc_id

    def update(self, doc_id: str, fields: Document) -> None:
        with self._lock:
            if doc_id not in self._docs:
                raise KeyError(doc_id)
            self._docs[doc_id].update(fields)

    def stale_ids(self, cutoff: int, limit: int) -> list[str]:
        with self._lock:
            stale = [(v["timestamp"], k) for k, v in self._docs.items() if v["timestamp"] < cutoff]
        return [k for _, k in sorted(stale)[:limit]]

    def delete(self, doc_id: str) -> bool:
        with self._lock:
            return self._docs.pop(doc_id, None) is not None

    def count(self, min_timestamp: int | None = None) -> int:
        with self._lock:
            if min_timestamp is None:
                return len(self._docs)
            return sum(1 for v in self._docs.values() if v["timestamp"] >= min_timestamp)


# Document key -> column name
_COLUMNS = {
    "url": "url",
    "normalizedUrl": "normalized_url",
    "urlHash": "url_hash",
    "productId": "product_id",
    "metadata": "metadata",
    "timestamp": "timestamp",
    "hitCount": "hit_count",
    "imageUrl": "image_url",
    "friendlyName": "friendly_name",
    "friendlyDescription": "friendly_description",
}
_SELECT = "SELECT id, " + ", ".join(_COLUMNS.values()) + " FROM url_cache"


class SqliteCacheBackend:
    """One row per document in a local SQLite file; rowid gives store order."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        # A private in-memory database dies with its connection
        self._memory_con: sqlite3.Connection | None = None
        if self.db_path == ":memory:":
            self._memory_con = sqlite3.connect(":memory:", check_same_thread=False)
        self._lock = threading.Lock()
        self.ensure_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._memory_con is not None:
            with self._lock, self._memory_con as con:
                yield con
            return
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(sqlite3.connect(self.db_path)) as con:
            with con:
                yield con

    def ensure_db(self) -> None:
        with self._connect() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS url_cache (
                    id TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    normalized_url TEXT NOT NULL,
                    url_hash TEXT NOT NULL,
                    product_id TEXT,
                    metadata TEXT NOT NULL,   -- JSON-encoded ProductMetadata
                    timestamp INTEGER NOT NULL,
                    hit_count INTEGER NOT NULL DEFAULT 1,
                    image_url TEXT,
                    friendly_name TEXT,
                    friendly_description TEXT
                )
            """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_url_cache_normalized ON url_cache (normalized_url)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_url_cache_hash ON url_cache (url_hash)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_url_cache_timestamp ON url_cache (timestamp)")

    @staticmethod
    def _row_to_doc(row: tuple) -> tuple[str, Document]:
        doc_id, *values = row
        doc = {key: value for key, value in zip(_COLUMNS, values) if value is not None}
        return doc_id, doc

    def first_fresh(self, normalized_url: str, min_timestamp: int) -> tuple[str, Document] | None:
        with self._connect() as con:
            row = con.execute(
                f"{_SELECT} WHERE normalized_url=? AND timestamp>=? ORDER BY rowid LIMIT 1",
                (normalized_url, min_timestamp),
            ).fetchone()
        return self._row_to_doc(row) if row else None

    def iter_fresh(self, min_timestamp: int) -> Iterator[tuple[str, Document]]:
        with self._connect() as con:
            rows = con.execute(
                f"{_SELECT} WHERE timestamp>=? ORDER BY rowid", (min_timestamp,)
            ).fetchall()
        for row in rows:
            yield self._row_to_doc(row)

    def insert(self, doc: Document) -> str:
        doc_id = uuid.uuid4().hex
        keys = [k for k in _COLUMNS if k in doc]
        columns = ", ".join(["id"] + [_COLUMNS[k] for k in keys])
        placeholders = ", ".join("?" * (len(keys) + 1))
        with self._connect() as con:
            con.execute(
                f"INSERT INTO url_cache ({columns}) VALUES ({placeholders})",
                [doc_id] + [doc[k] for k in keys],
            )
        return doc_id

    def update(self, doc_id: str, fields: Document) -> None:
        keys = [k for k in _COLUMNS if k in fields]
        if not keys:
            return
        assignments = ", ".join(f"{_COLUMNS[k]}=?" for k in keys)
        with self._connect() as con:
            cur = con.execute(
                f"UPDATE url_cache SET {assignments} WHERE id=?",
                [fields[k] for k in keys] + [doc_id],
            )
            if cur.rowcount == 0:
                raise KeyError(doc_id)

    def stale_ids(self, cutoff: int, limit: int) -> list[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT id FROM url_cache WHERE timestamp<? ORDER BY timestamp LIMIT ?",
                (cutoff, limit),
            ).fetchall()
        return [r[0] for r in rows]

    def delete(self, doc_id: str) -> bool:
        with self._connect() as con:
            cur = con.execute("DELETE FROM url_cache WHERE id=?", (doc_id,))
            return cur.rowcount > 0

    def count(self, min_timestamp: int | None = None) -> int:
        with self._connect() as con:
            if min_timestamp is None:
                row = con.execute("SELECT COUNT(*) FROM url_cache").fetchone()
            else:
                row = con.execute(
                    "SELECT COUNT(*) FROM url_cache WHERE timestamp>=?", (min_timestamp,)
                ).fetchone()
        return row[0] if row and row[0] is not None else 0


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass
class CacheMatch:
    entry: CacheEntry
    similarity: float


class CacheStore:
    """Cache operations on top of a backend: lookups, writes, lazy expiry."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_ms: int = DEFAULT_TTL_MS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        clock: Callable[[], int] = _now_ms,
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_ms = ttl_ms
        self.similarity_threshold = similarity_threshold
        self._clock = clock

    def now(self) -> int:
        return self._clock()

    def _fresh_cutoff(self) -> int:
        return self._clock() - self.ttl_ms

    def get_exact(self, normalized_url: str) -> CacheEntry | None:
        """First non-expired entry whose normalizedUrl matches exactly.

        A backend that can't be read behaves like an empty cache.
        """
        try:
            found = self.backend.first_fresh(normalized_url, self._fresh_cutoff())
        except (sqlite3.Error, OSError):
            logger.warning(f"Cache lookup failed for {normalized_url}", exc_info=True)
            return None
        if found is None:
            return None
        doc_id, doc = found
        return CacheEntry.from_document(doc, doc_id)

    def get_similar(self, raw_url: str) -> CacheMatch | None:
        """Best-scoring non-expired entry at or above the similarity threshold.

        Ties on score go to the more recently written entry; remaining ties
        keep the first one in store order.
        """
        try:
            candidates = list(self.backend.iter_fresh(self._fresh_cutoff()))
        except (sqlite3.Error, OSError):
            logger.warning(f"Similarity scan failed for {raw_url}", exc_info=True)
            return None

        best: CacheMatch | None = None
        for doc_id, doc in candidates:
            score = url_similarity(raw_url, doc["url"])
            if score < self.similarity_threshold:
                continue
            if (
                best is None
                or score > best.similarity
                or (score == best.similarity and doc["timestamp"] > best.entry.timestamp)
            ):
                best = CacheMatch(CacheEntry.from_document(doc, doc_id), score)
        return best

    def put(self, entry: CacheEntry) -> CacheEntry:
        """Create (no id) or update (by id) ``entry``; always stamps it with now.

        The caller decides hitCount: 1 on create, previous + 1 on a hit.
        Backend failures surface as CacheWriteError.
        """
        stamped = entry.model_copy(update={"timestamp": self._clock()})
        doc = stamped.to_document()
        try:
            if stamped.id is None:
                doc_id = self.backend.insert(doc)
                return stamped.model_copy(update={"id": doc_id})
            self.backend.update(stamped.id, doc)
            return stamped
        except (sqlite3.Error, KeyError, OSError) as e:
            raise CacheWriteError(f"failed to persist cache entry for {entry.normalized_url}: {e}") from e

    def annotate(
        self,
        entry_id: str,
        friendly_name: str | None = None,
        friendly_description: str | None = None,
    ) -> None:
        """Attach the text-rewrite output to an entry without touching hitCount or timestamp."""
        fields = {}
        if friendly_name is not None:
            fields["friendlyName"] = friendly_name
        if friendly_description is not None:
            fields["friendlyDescription"] = friendly_description
        try:
            self.backend.update(entry_id, fields)
        except (sqlite3.Error, KeyError, OSError) as e:
            raise CacheWriteError(f"failed to annotate cache entry {entry_id}: {e}") from e

    def sweep_expired(self, max_batch: int) -> int:
        """Delete up to ``max_batch`` expired entries, oldest first. Returns the count."""
        stale = self.backend.stale_ids(self._fresh_cutoff(), max_batch)
        deleted = sum(1 for doc_id in stale if self.backend.delete(doc_id))
        if deleted:
            logger.info(f"Swept {deleted} expired cache entries")
        return deleted

    def count(self) -> int:
        return self.backend.count()

    def count_fresh(self) -> int:
        return self.backend.count(self._fresh_cutoff())
