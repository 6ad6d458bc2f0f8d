from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from services.versions import max_version


# File resource types
DOWNLOAD = "download"
MANIFEST = "manifest"
README = "readme"
LICENSE = "license"
ICON = "icon"

FILE_TYPES = (DOWNLOAD, MANIFEST, README, LICENSE, ICON)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _ts_to_db(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts.replace(microsecond=0).strftime(_TS_FORMAT)


def _ts_from_db(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


@dataclass(frozen=True)
class Namespace:
    id: int
    name: str


@dataclass(frozen=True)
class Extension:
    id: int
    name: str
    namespace: Namespace
    download_count: int
    average_rating: Optional[float]
    latest_id: Optional[int]

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace.name}.{self.name}"


@dataclass(frozen=True)
class ExtensionReference:
    # Dependency / bundled-extension pointer
    namespace: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"


@dataclass(frozen=True)
class ExtensionVersion:
    id: int
    extension: Extension
    version: str
    timestamp: datetime
    display_name: Optional[str] = None
    description: Optional[str] = None
    preview: bool = False
    engines: Optional[List[str]] = None
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    gallery_color: Optional[str] = None
    gallery_theme: Optional[str] = None
    repository: Optional[str] = None
    dependencies: List[ExtensionReference] = field(default_factory=list)
    bundled_extensions: List[ExtensionReference] = field(default_factory=list)


@dataclass(frozen=True)
class FileResource:
    id: int
    version_id: int
    type: str
    name: str
    content: bytes


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS namespaces (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS extensions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        namespace_id INTEGER NOT NULL REFERENCES namespaces(id),
        name TEXT NOT NULL,
        download_count INTEGER NOT NULL DEFAULT 0,
        average_rating REAL,
        latest_id INTEGER,
        UNIQUE (namespace_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS versions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        extension_id INTEGER NOT NULL REFERENCES extensions(id),
        version TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        display_name TEXT,
        description TEXT,
        preview INTEGER NOT NULL DEFAULT 0,
        engines TEXT,
        categories TEXT NOT NULL DEFAULT '[]',
        tags TEXT NOT NULL DEFAULT '[]',
        gallery_color TEXT,
        gallery_theme TEXT,
        repository TEXT,
        dependencies TEXT NOT NULL DEFAULT '[]',
        bundled_extensions TEXT NOT NULL DEFAULT '[]',
        UNIQUE (extension_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_resources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        version_id INTEGER NOT NULL REFERENCES versions(id),
        type TEXT NOT NULL,
        name TEXT NOT NULL,
        content BLOB NOT NULL,
        UNIQUE (version_id, type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        extension_id INTEGER NOT NULL REFERENCES extensions(id),
        username TEXT NOT NULL,
        rating INTEGER NOT NULL,
        comment TEXT,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_versions_ext ON versions(extension_id)",
    "CREATE INDEX IF NOT EXISTS idx_files_version ON file_resources(version_id)",
    "CREATE INDEX IF NOT EXISTS idx_reviews_ext ON reviews(extension_id)",
)

_EXTENSION_SELECT = """
    SELECT e.id, e.name, e.download_count, e.average_rating, e.latest_id,
           n.id AS namespace_id, n.name AS namespace_name
    FROM extensions e JOIN namespaces n ON n.id = e.namespace_id
"""


def _refs_to_db(refs: Sequence[ExtensionReference]) -> str:
    return json.dumps([[r.namespace, r.name] for r in refs])


def _refs_from_db(raw: Optional[str]) -> List[ExtensionReference]:
    if not raw:
        return []
    return [ExtensionReference(str(ns), str(nm)) for ns, nm in json.loads(raw)]


def _list_from_db(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [str(x) for x in json.loads(raw)]


class ExtensionStore:
    """
    SQLite-backed record store for namespaces, extensions, versions,
    file resources and reviews.

    Connections are thread-local; writes run inside BEGIN IMMEDIATE so
    concurrent writers serialize on the database lock. `transaction()` groups
    several writes into one commit.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._inited = False

    def _conn(self) -> sqlite3.Connection:
        # Thread-local connection
        c = getattr(self._local, "conn", None)
        if c is not None:
            return c

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        self._local.conn = conn
        return conn

    def _db(self) -> sqlite3.Connection:
        if not self._inited:
            self.init_schema()
        return self._conn()

    def connection(self) -> sqlite3.Connection:
        # Shared with the search index, which keeps its table in the same file
        return self._db()

    def init_schema(self) -> None:
        with self._init_lock:
            if self._inited:
                return
            conn = self._conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            self._inited = True

    def close(self) -> None:
        c = getattr(self._local, "conn", None)
        if c is not None:
            c.close()
            self._local.conn = None

    # =========================
    # row mapping
    # =========================

    @staticmethod
    def _extension_from_row(r: sqlite3.Row) -> Extension:
        return Extension(
            id=int(r["id"]),
            name=str(r["name"]),
            namespace=Namespace(int(r["namespace_id"]), str(r["namespace_name"])),
            download_count=int(r["download_count"]),
            average_rating=float(r["average_rating"]) if r["average_rating"] is not None else None,
            latest_id=int(r["latest_id"]) if r["latest_id"] is not None else None,
        )

    @staticmethod
    def _version_from_row(r: sqlite3.Row, extension: Extension) -> ExtensionVersion:
        engines_raw = r["engines"]
        return ExtensionVersion(
            id=int(r["id"]),
            extension=extension,
            version=str(r["version"]),
            timestamp=_ts_from_db(str(r["timestamp"])),
            display_name=r["display_name"],
            description=r["description"],
            preview=bool(r["preview"]),
            engines=_list_from_db(engines_raw) if engines_raw is not None else None,
            categories=_list_from_db(r["categories"]),
            tags=_list_from_db(r["tags"]),
            gallery_color=r["gallery_color"],
            gallery_theme=r["gallery_theme"],
            repository=r["repository"],
            dependencies=_refs_from_db(r["dependencies"]),
            bundled_extensions=_refs_from_db(r["bundled_extensions"]),
        )

    # =========================
    # reads
    # =========================

    def find_extension_by_id(self, extension_id: int) -> Optional[Extension]:
        r = self._db().execute(_EXTENSION_SELECT + " WHERE e.id=?", (int(extension_id),)).fetchone()
        return self._extension_from_row(r) if r else None

    def find_extension(self, name: str, namespace: str) -> Optional[Extension]:
        # Case-insensitive match, as clients send mixed-case publisher names
        r = self._db().execute(
            _EXTENSION_SELECT + " WHERE lower(e.name)=lower(?) AND lower(n.name)=lower(?)",
            (name, namespace),
        ).fetchone()
        return self._extension_from_row(r) if r else None

    def iter_extensions(self) -> Iterator[Extension]:
        rows = self._db().execute(_EXTENSION_SELECT + " ORDER BY e.id").fetchall()
        for r in rows:
            yield self._extension_from_row(r)

    def find_version_by_id(self, version_id: int, extension: Optional[Extension] = None) -> Optional[ExtensionVersion]:
        r = self._db().execute("SELECT * FROM versions WHERE id=?", (int(version_id),)).fetchone()
        if not r:
            return None
        if extension is None or extension.id != int(r["extension_id"]):
            extension = self.find_extension_by_id(int(r["extension_id"]))
            if extension is None:
                return None
        return self._version_from_row(r, extension)

    def find_latest_version(self, extension: Extension) -> Optional[ExtensionVersion]:
        if extension.latest_id is None:
            return None
        return self.find_version_by_id(extension.latest_id, extension)

    def find_version(self, version: str, extension_name: str, namespace: str) -> Optional[ExtensionVersion]:
        extension = self.find_extension(extension_name, namespace)
        if extension is None:
            return None
        r = self._db().execute(
            "SELECT * FROM versions WHERE extension_id=? AND version=?",
            (extension.id, version),
        ).fetchone()
        return self._version_from_row(r, extension) if r else None

    def find_versions(self, extension: Extension) -> List[ExtensionVersion]:
        # Unordered; callers apply the version comparator
        rows = self._db().execute("SELECT * FROM versions WHERE extension_id=?", (extension.id,)).fetchall()
        return [self._version_from_row(r, extension) for r in rows]

    def _file_from_row(self, r: sqlite3.Row) -> FileResource:
        return FileResource(
            id=int(r["id"]),
            version_id=int(r["version_id"]),
            type=str(r["type"]),
            name=str(r["name"]),
            content=bytes(r["content"]),
        )

    def find_file(self, version: ExtensionVersion, file_type: str) -> Optional[FileResource]:
        r = self._db().execute(
            "SELECT * FROM file_resources WHERE version_id=? AND type=?",
            (version.id, file_type),
        ).fetchone()
        return self._file_from_row(r) if r else None

    def find_file_by_name(self, version: ExtensionVersion, name: str) -> Optional[FileResource]:
        r = self._db().execute(
            "SELECT * FROM file_resources WHERE version_id=? AND name=? ORDER BY id LIMIT 1",
            (version.id, name),
        ).fetchone()
        return self._file_from_row(r) if r else None

    def list_file_names(self, version: ExtensionVersion) -> Dict[str, str]:
        # type -> stored file name, without loading blobs
        rows = self._db().execute(
            "SELECT type, name FROM file_resources WHERE version_id=?",
            (version.id,),
        ).fetchall()
        return {str(r["type"]): str(r["name"]) for r in rows}

    def count_active_reviews(self, extension: Extension) -> int:
        r = self._db().execute(
            "SELECT COUNT(*) AS c FROM reviews WHERE extension_id=? AND active=1",
            (extension.id,),
        ).fetchone()
        return int(r["c"])

    # =========================
    # writes
    # =========================

    @contextmanager
    def transaction(self) -> Iterator[None]:
        # Writes issued inside join this transaction; nested calls join the outer one
        if getattr(self._local, "in_tx", False):
            yield
            return
        conn = self._db()
        conn.execute("BEGIN IMMEDIATE")
        self._local.in_tx = True
        try:
            yield
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.in_tx = False

    def _write(self, sql: str, params: Sequence) -> int:
        conn = self._db()
        if getattr(self._local, "in_tx", False):
            return int(conn.execute(sql, tuple(params)).lastrowid or 0)
        conn.execute("BEGIN IMMEDIATE")
        try:
            cur = conn.execute(sql, tuple(params))
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return int(cur.lastrowid or 0)

    def increment_download_count(self, extension: Extension) -> Extension:
        # Single UPDATE statement; the database serializes concurrent increments
        self._write("UPDATE extensions SET download_count = download_count + 1 WHERE id=?", (extension.id,))
        refreshed = self.find_extension_by_id(extension.id)
        return refreshed if refreshed is not None else extension

    def create_namespace(self, name: str) -> Namespace:
        nm = (name or "").strip()
        if not nm:
            raise ValueError("empty namespace name")
        existing = self._db().execute("SELECT id, name FROM namespaces WHERE name=?", (nm,)).fetchone()
        if existing:
            return Namespace(int(existing["id"]), str(existing["name"]))
        ns_id = self._write("INSERT INTO namespaces(name) VALUES(?)", (nm,))
        return Namespace(ns_id, nm)

    def create_extension(self, namespace: Namespace, name: str) -> Extension:
        nm = (name or "").strip()
        if not nm:
            raise ValueError("empty extension name")
        existing = self.find_extension(nm, namespace.name)
        if existing is not None:
            return existing
        ext_id = self._write("INSERT INTO extensions(namespace_id, name) VALUES(?, ?)", (namespace.id, nm))
        ext = self.find_extension_by_id(ext_id)
        assert ext is not None
        return ext

    def add_version(
        self,
        extension: Extension,
        version: str,
        *,
        timestamp: Optional[datetime] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        preview: bool = False,
        engines: Optional[Sequence[str]] = None,
        categories: Sequence[str] = (),
        tags: Sequence[str] = (),
        gallery_color: Optional[str] = None,
        gallery_theme: Optional[str] = None,
        repository: Optional[str] = None,
        dependencies: Sequence[ExtensionReference] = (),
        bundled_extensions: Sequence[ExtensionReference] = (),
    ) -> ExtensionVersion:
        ver = (version or "").strip()
        if not ver:
            raise ValueError("empty version")
        ts = timestamp or _utcnow()

        version_id = self._write(
            """
            INSERT INTO versions(extension_id, version, timestamp, display_name, description, preview, engines,
                                 categories, tags, gallery_color, gallery_theme, repository,
                                 dependencies, bundled_extensions)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                extension.id,
                ver,
                _ts_to_db(ts),
                display_name,
                description,
                1 if preview else 0,
                json.dumps(list(engines)) if engines is not None else None,
                json.dumps(list(categories)),
                json.dumps(list(tags)),
                gallery_color,
                gallery_theme,
                repository,
                _refs_to_db(dependencies),
                _refs_to_db(bundled_extensions),
            ),
        )
        self._update_latest(extension)
        ev = self.find_version_by_id(version_id)
        assert ev is not None
        return ev

    def _update_latest(self, extension: Extension) -> None:
        latest = max_version(self.find_versions(extension))
        self._write(
            "UPDATE extensions SET latest_id=? WHERE id=?",
            (latest.id if latest is not None else None, extension.id),
        )

    def add_file(self, version: ExtensionVersion, file_type: str, name: str, content: bytes) -> FileResource:
        if file_type not in FILE_TYPES:
            raise ValueError(f"unknown file type: {file_type}")
        self._write(
            """
            INSERT INTO file_resources(version_id, type, name, content) VALUES(?, ?, ?, ?)
            ON CONFLICT(version_id, type) DO UPDATE SET name=excluded.name, content=excluded.content
            """,
            (version.id, file_type, name, sqlite3.Binary(content)),
        )
        stored = self.find_file(version, file_type)
        assert stored is not None
        return stored

    def add_review(self, extension: Extension, username: str, rating: int, comment: Optional[str] = None, active: bool = True) -> None:
        self._write(
            "INSERT INTO reviews(extension_id, username, rating, comment, active) VALUES(?, ?, ?, ?, ?)",
            (extension.id, username, int(rating), comment, 1 if active else 0),
        )
        # Average over active reviews; NULL when none remain
        self._write(
            """
            UPDATE extensions
            SET average_rating = (SELECT AVG(rating) FROM reviews WHERE extension_id=? AND active=1)
            WHERE id=?
            """,
            (extension.id, extension.id),
        )
