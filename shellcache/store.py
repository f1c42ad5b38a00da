"""SQLite-backed durable store of named cache generations."""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from .models import CachedResponse, RequestKey

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a cache store operation fails."""

    pass


class CacheHandle:
    """Handle on a single named cache generation.

    Obtained from CacheStore.open_or_create(). All access goes through the
    owning store's lock, so handles may be shared between threads.
    """

    def __init__(self, store: "CacheStore", name: str) -> None:
        self._store = store
        self.name = name

    def match(self, key: RequestKey) -> CachedResponse | None:
        """Return the stored response for a key, or None when absent.

        Raises:
            StoreError: If the lookup fails.
        """
        try:
            with self._store._lock:
                row = self._store._conn.execute(
                    """
                    SELECT status, reason, headers, body, response_url, opaque
                    FROM entries
                    WHERE cache_name = ? AND method = ? AND url = ?
                    """,
                    (self.name, key.method, key.url),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to match {key} in cache '{self.name}': {e}")

        if row is None:
            return None

        return CachedResponse(
            status=row["status"],
            reason=row["reason"] or "",
            headers=json.loads(row["headers"]) if row["headers"] else {},
            body=bytes(row["body"]) if row["body"] is not None else b"",
            url=row["response_url"] or key.url,
            opaque=bool(row["opaque"]),
        )

    def put(self, key: RequestKey, response: CachedResponse) -> None:
        """Store a response under a key, replacing any previous entry.

        A single put is atomic; concurrent writers to the same key leave the
        last writer's response in place. Writes into a generation that has
        been deleted are refused rather than resurrecting it.

        Raises:
            StoreError: If the write fails or the generation no longer exists.
        """
        try:
            with self._store._lock:
                cursor = self._store._conn.execute(
                    """
                    INSERT OR REPLACE INTO entries
                    (cache_name, method, url, status, reason, headers, body, response_url, opaque, stored_at)
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE EXISTS (SELECT 1 FROM caches WHERE name = ?)
                    """,
                    (
                        self.name,
                        key.method,
                        key.url,
                        response.status,
                        response.reason,
                        json.dumps(response.headers),
                        sqlite3.Binary(response.body),
                        response.url or None,
                        1 if response.opaque else 0,
                        datetime.now(UTC).isoformat(),
                        self.name,
                    ),
                )
                self._store._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to put {key} in cache '{self.name}': {e}")

        if cursor.rowcount == 0:
            raise StoreError(f"Cache '{self.name}' no longer exists")

    def keys(self) -> list[RequestKey]:
        """Return the keys of every stored entry, oldest first."""
        try:
            with self._store._lock:
                rows = self._store._conn.execute(
                    "SELECT method, url FROM entries WHERE cache_name = ? ORDER BY stored_at, url",
                    (self.name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list keys of cache '{self.name}': {e}")
        return [RequestKey(method=row["method"], url=row["url"]) for row in rows]

    def __repr__(self) -> str:
        return f"CacheHandle(name={self.name!r})"


class CacheStore:
    """Durable store of named cache generations.

    Thread-safe: a single connection is shared by every handle and guarded by
    one lock. SQLite allows only one writer at a time anyway.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def open_or_create(self, name: str) -> CacheHandle:
        """Open the cache generation with this name, creating it if absent.

        Raises:
            StoreError: If the generation cannot be created.
        """
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (name, datetime.now(UTC).isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open cache '{name}': {e}")
        return CacheHandle(self, name)

    def list_names(self) -> list[str]:
        """Return the names of all stored cache generations, oldest first."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT name FROM caches ORDER BY created_at, name").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list caches: {e}")
        return [row["name"] for row in rows]

    def has(self, name: str) -> bool:
        return name in self.list_names()

    def delete(self, name: str) -> bool:
        """Delete a cache generation and all of its entries.

        Returns:
            True if a generation with this name existed, False otherwise.

        Raises:
            StoreError: If the deletion fails.
        """
        with self._lock:
            try:
                self._conn.execute("DELETE FROM entries WHERE cache_name = ?", (name,))
                cursor = self._conn.execute("DELETE FROM caches WHERE name = ?", (name,))
                self._conn.commit()
                return cursor.rowcount > 0
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"Failed to delete cache '{name}': {e}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def init_store(store_path: str) -> CacheStore:
    """Initialize the cache store and create tables if they don't exist.

    Args:
        store_path: Path to the SQLite database file.

    Returns:
        CacheStore over a connection with WAL mode enabled.

    Raises:
        StoreError: If store initialization fails.
    """
    try:
        parent_dir = Path(store_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(store_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS caches (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                cache_name TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                reason TEXT,
                headers TEXT,
                body BLOB,
                response_url TEXT,
                opaque INTEGER NOT NULL DEFAULT 0,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (cache_name, method, url)
            )
        """)

        # Migrations: add columns if they don't exist (for existing stores)
        cursor = conn.execute("PRAGMA table_info(entries)")
        columns = {row[1] for row in cursor.fetchall()}
        if "response_url" not in columns:
            conn.execute("ALTER TABLE entries ADD COLUMN response_url TEXT")

        conn.commit()
        logger.debug("Cache store ready at %s", store_path)
        return CacheStore(conn)

    except sqlite3.Error as e:
        raise StoreError(f"Failed to initialize cache store: {e}")
    except OSError as e:
        raise StoreError(f"Failed to create cache store directory: {e}")
