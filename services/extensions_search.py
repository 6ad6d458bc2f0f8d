from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from services.errors import SearchQueryError
from services.extensions_store import Extension, ExtensionStore


SORT_RELEVANCE = "relevance"
SORT_TIMESTAMP = "timestamp"
SORT_DOWNLOAD_COUNT = "downloadCount"
SORT_AVERAGE_RATING = "averageRating"
SORT_KEYS = {SORT_RELEVANCE, SORT_TIMESTAMP, SORT_DOWNLOAD_COUNT, SORT_AVERAGE_RATING}

ORDER_ASC = "asc"
ORDER_DESC = "desc"
SORT_ORDERS = {ORDER_ASC, ORDER_DESC}

MAX_PAGE_SIZE = 100
MAX_QUERY_LENGTH = 256

# Per-field weights for relevance scoring
_W_NAME = 5.0
_W_DISPLAY_NAME = 4.0
_W_TAG = 3.0
_W_NAMESPACE = 2.0
_W_DESCRIPTION = 1.0

_log = logging.getLogger("marketplace")


@dataclass(frozen=True)
class PageRequest:
    page: int  # zero-based
    size: int

    @property
    def offset(self) -> int:
        return self.page * self.size


@dataclass(frozen=True)
class SearchHit:
    id: int
    score: float


@dataclass(frozen=True)
class SearchPage:
    hits: List[SearchHit]
    total: int


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS search_entries (
        extension_id INTEGER PRIMARY KEY,
        namespace TEXT NOT NULL,
        name TEXT NOT NULL,
        display_name TEXT,
        description TEXT,
        categories TEXT NOT NULL DEFAULT '[]',
        tags TEXT NOT NULL DEFAULT '[]',
        download_count INTEGER NOT NULL DEFAULT 0,
        average_rating REAL,
        timestamp TEXT NOT NULL
    )
"""


class ExtensionSearch:
    """
    Search index over the latest version of every extension.

    Entries live in a `search_entries` table next to the record store tables and
    are refreshed by `update_search_entry` / `rebuild`. Scoring is a weighted
    substring match; it stands in for a real full-text engine.
    """

    def __init__(self, store: ExtensionStore, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled
        self._init_lock = threading.Lock()
        self._inited = False

    def is_enabled(self) -> bool:
        return self.enabled

    def _conn(self) -> sqlite3.Connection:
        conn = self.store.connection()
        if not self._inited:
            with self._init_lock:
                if not self._inited:
                    conn.execute(_SCHEMA)
                    self._inited = True
        return conn

    # =========================
    # indexing
    # =========================

    def update_search_entry(self, extension: Extension) -> None:
        # Re-read the extension so the entry carries the current counters
        current = self.store.find_extension_by_id(extension.id)
        conn = self._conn()
        latest = self.store.find_latest_version(current) if current is not None else None

        conn.execute("BEGIN IMMEDIATE")
        try:
            if current is None or latest is None:
                conn.execute("DELETE FROM search_entries WHERE extension_id=?", (extension.id,))
            else:
                conn.execute(
                    """
                    INSERT INTO search_entries(extension_id, namespace, name, display_name, description,
                                               categories, tags, download_count, average_rating, timestamp)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(extension_id) DO UPDATE SET
                        namespace=excluded.namespace, name=excluded.name,
                        display_name=excluded.display_name, description=excluded.description,
                        categories=excluded.categories, tags=excluded.tags,
                        download_count=excluded.download_count, average_rating=excluded.average_rating,
                        timestamp=excluded.timestamp
                    """,
                    (
                        current.id,
                        current.namespace.name,
                        current.name,
                        latest.display_name,
                        latest.description,
                        json.dumps(latest.categories),
                        json.dumps(latest.tags),
                        current.download_count,
                        current.average_rating,
                        latest.timestamp.isoformat(),
                    ),
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def rebuild(self) -> int:
        # Drop and re-create every entry from the record store
        conn = self._conn()
        conn.execute("DELETE FROM search_entries")
        count = 0
        for ext in self.store.iter_extensions():
            self.update_search_entry(ext)
            count += 1
        _log.info("search_index_rebuilt entries=%s", count)
        return count

    # =========================
    # querying
    # =========================

    @staticmethod
    def _validate(text: Optional[str], page_request: PageRequest, sort_order: str, sort_by: str) -> None:
        if page_request.page < 0:
            raise SearchQueryError("Page number must not be less than one.")
        if page_request.size < 1 or page_request.size > MAX_PAGE_SIZE:
            raise SearchQueryError(f"Page size must be between 1 and {MAX_PAGE_SIZE}.")
        if sort_order not in SORT_ORDERS:
            raise SearchQueryError(f"sortOrder parameter must be either '{ORDER_ASC}' or '{ORDER_DESC}'.")
        if sort_by not in SORT_KEYS:
            raise SearchQueryError("sortBy parameter must be 'relevance', 'timestamp', 'downloadCount' or 'averageRating'.")
        if text is not None and len(text) > MAX_QUERY_LENGTH:
            raise SearchQueryError(f"Query text must not exceed {MAX_QUERY_LENGTH} characters.")

    @staticmethod
    def _score(entry: Dict[str, Any], tokens: List[str]) -> float:
        name = entry["name"].lower()
        display = (entry["display_name"] or "").lower()
        namespace = entry["namespace"].lower()
        description = (entry["description"] or "").lower()
        tags = [t.lower() for t in entry["tags"]]

        score = 0.0
        for tok in tokens:
            if tok in name:
                score += _W_NAME
            if tok in display:
                score += _W_DISPLAY_NAME
            if tok in tags:
                score += _W_TAG
            if tok in namespace:
                score += _W_NAMESPACE
            if tok in description:
                score += _W_DESCRIPTION
        return score

    def search(
        self,
        text: Optional[str],
        category: Optional[str],
        page_request: PageRequest,
        sort_order: str,
        sort_by: str,
    ) -> SearchPage:
        self._validate(text, page_request, sort_order, sort_by)

        rows = self._conn().execute("SELECT * FROM search_entries ORDER BY extension_id").fetchall()
        tokens = [t for t in (text or "").lower().split() if t]
        cat = (category or "").strip().lower()

        matches: List[Dict[str, Any]] = []
        for r in rows:
            entry: Dict[str, Any] = dict(r)
            entry["categories"] = json.loads(entry["categories"] or "[]")
            entry["tags"] = json.loads(entry["tags"] or "[]")
            if cat and cat not in {c.lower() for c in entry["categories"]}:
                continue
            if tokens:
                entry["score"] = self._score(entry, tokens)
                if entry["score"] <= 0:
                    continue
            else:
                entry["score"] = 1.0
            matches.append(entry)

        if sort_by == SORT_DOWNLOAD_COUNT:
            key = lambda e: e["download_count"]  # noqa: E731
        elif sort_by == SORT_TIMESTAMP:
            key = lambda e: e["timestamp"]  # noqa: E731
        elif sort_by == SORT_AVERAGE_RATING:
            key = lambda e: e["average_rating"] if e["average_rating"] is not None else 0.0  # noqa: E731
        else:
            key = lambda e: (e["score"], e["download_count"])  # noqa: E731

        # rows arrive ordered by id, and sorted() is stable in both directions
        matches = sorted(matches, key=key, reverse=(sort_order == ORDER_DESC))

        start = page_request.offset
        window = matches[start : start + page_request.size]
        hits = [SearchHit(id=int(e["extension_id"]), score=float(e["score"])) for e in window]
        return SearchPage(hits=hits, total=len(matches))
