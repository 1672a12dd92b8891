"""Fingerprint stores: what content each record had when last indexed."""

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional, Set

from .db import SQLiteStore


class FingerprintStore(ABC):
    """Key-value store of record_id -> content fingerprint."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[str]:
        """Return the stored fingerprint, or None."""

    @abstractmethod
    async def set(self, record_id: str, digest: str, chunk_count: int = 0) -> None:
        """Store the fingerprint of a freshly indexed record."""

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Forget a record. Deleting an absent record is a no-op."""

    @abstractmethod
    async def record_ids(self) -> Set[str]:
        """Return every record id with a stored fingerprint."""

    async def clear(self) -> None:
        for record_id in await self.record_ids():
            await self.delete(record_id)


class SQLiteFingerprintStore(SQLiteStore, FingerprintStore):
    """Fingerprints kept in the ``index_manifest`` table of the index database."""

    store_name = "index manifest"

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS index_manifest (
                record_id    TEXT PRIMARY KEY,
                content_hash TEXT NOT NULL,
                indexed_at   TEXT NOT NULL,
                chunk_count  INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.commit()

    def _get(self, conn: sqlite3.Connection, record_id: str) -> Optional[str]:
        row = conn.execute(
            "SELECT content_hash FROM index_manifest WHERE record_id = ?", (record_id,)
        ).fetchone()
        return row["content_hash"] if row else None

    async def get(self, record_id: str) -> Optional[str]:
        return await self._read(self._get, record_id)

    def _set(self, conn: sqlite3.Connection, record_id: str, digest: str, chunk_count: int) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO index_manifest (record_id, content_hash, indexed_at, chunk_count)
            VALUES (?, ?, ?, ?)
            """,
            (record_id, digest, datetime.now(timezone.utc).isoformat(), chunk_count),
        )
        conn.commit()

    async def set(self, record_id: str, digest: str, chunk_count: int = 0) -> None:
        await self._write(self._set, record_id, digest, chunk_count)

    def _delete(self, conn: sqlite3.Connection, record_id: str) -> None:
        conn.execute("DELETE FROM index_manifest WHERE record_id = ?", (record_id,))
        conn.commit()

    async def delete(self, record_id: str) -> None:
        await self._write(self._delete, record_id)

    def _record_ids(self, conn: sqlite3.Connection) -> Set[str]:
        return {row["record_id"] for row in conn.execute("SELECT record_id FROM index_manifest")}

    async def record_ids(self) -> Set[str]:
        return await self._read(self._record_ids)

    def _clear(self, conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM index_manifest")
        conn.commit()

    async def clear(self) -> None:
        await self._write(self._clear)

    def _stats(self, conn: sqlite3.Connection) -> dict[str, Any]:
        row = conn.execute(
            """
            SELECT COUNT(*) AS records, COALESCE(SUM(chunk_count), 0) AS chunks,
                   MAX(indexed_at) AS last_indexed
            FROM index_manifest
            """
        ).fetchone()
        return {
            "record_count": row["records"],
            "chunk_count": row["chunks"],
            "last_indexed_at": row["last_indexed"],
        }

    async def get_stats(self) -> dict[str, Any]:
        """Return record_count, chunk_count and last_indexed_at."""
        return await self._read(self._stats)
