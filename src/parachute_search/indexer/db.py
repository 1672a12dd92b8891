"""Shared SQLite connection handling for the index stores.

All stores live in one ``index.db`` file. Each store owns its own
connection; blocking calls run in a worker thread behind a per-store lock so
the event loop is never blocked.
"""

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .errors import StoreReadFailure, StoreWriteFailure

T = TypeVar("T")

INDEX_DB_FILENAME = "index.db"


class SQLiteStore:
    """Base class for stores backed by the shared index database."""

    store_name = "store"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @classmethod
    def in_dir(cls, index_dir: Path, **kwargs: Any):
        """Open the store inside ``index_dir/index.db``."""
        return cls(Path(index_dir) / INDEX_DB_FILENAME, **kwargs)

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            try:
                self._prepare_connection(conn)
                self._ensure_schema(conn)
            except Exception:
                conn.close()
                raise
            self._conn = conn
        return self._conn

    def _prepare_connection(self, conn: sqlite3.Connection) -> None:
        """Hook for loading extensions before the schema is created."""

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return fn(self._get_connection(), *args)

    async def _read(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(self._call, fn, *args)
        except sqlite3.Error as e:
            raise StoreReadFailure(f"{self.store_name} read failed: {e}") from e

    async def _write(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(self._call, fn, *args)
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"{self.store_name} write failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
