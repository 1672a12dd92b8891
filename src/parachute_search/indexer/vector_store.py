"""Vector store for semantic retrieval using sqlite-vec.

Chunks are stored in two tables:
- chunks_vec: sqlite-vec virtual table for vector KNN search
- chunks_meta: regular table with the owning record, field and chunk text

Vectors are unit-normalized, so the L2 distance returned by sqlite-vec maps
to cosine similarity as ``1 - d²/2``.
"""

import sqlite3
import struct
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .db import SQLiteStore
from .errors import StoreReadFailure
from .models import ScoredChunk, StoredChunk


class VectorStore(ABC):
    """Persists chunk embeddings and answers nearest-neighbour queries."""

    @abstractmethod
    async def upsert(self, chunk_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        """Insert or replace one chunk.

        ``metadata`` carries record_id, field, chunk_index, text and token_count.
        """

    async def upsert_many(self, items: Iterable[tuple[str, list[float], dict[str, Any]]]) -> int:
        """Insert or replace several chunks; returns the number written."""
        written = 0
        for chunk_id, vector, metadata in items:
            await self.upsert(chunk_id, vector, metadata)
            written += 1
        return written

    @abstractmethod
    async def query(self, vector: list[float], top_k: int) -> list[ScoredChunk]:
        """Return up to ``top_k`` chunks ordered by descending cosine similarity."""

    @abstractmethod
    async def delete_by_record(self, record_id: str) -> int:
        """Delete every chunk of a record; returns the number deleted."""

    @abstractmethod
    async def list_chunks(self) -> list[StoredChunk]:
        """Return the text of every stored chunk (the keyword corpus)."""

    @abstractmethod
    async def indexed_record_ids(self) -> set[str]:
        """Return the ids of all records that have at least one chunk."""

    async def count(self) -> int:
        return len(await self.list_chunks())

    async def write_generation(self) -> Optional[int]:
        """Counter that moves on every write; None when the store does not track it."""
        return None


def _serialize_vector(vector: list[float]) -> bytes:
    """Serialize a vector to bytes for sqlite-vec storage."""
    return struct.pack(f"{len(vector)}f", *vector)


def _distance_to_similarity(distance: float) -> float:
    return 1.0 - (distance * distance) / 2.0


def _bump_generation(conn: sqlite3.Connection) -> None:
    """Advance the write counter inside the caller's transaction."""
    conn.execute(
        """
        INSERT INTO index_info (key, value) VALUES ('write_generation', '1')
        ON CONFLICT(key) DO UPDATE SET value = CAST(value AS INTEGER) + 1
        """
    )


class SQLiteVectorStore(SQLiteStore, VectorStore):
    """sqlite-vec implementation of VectorStore.

    Usage:
        with SQLiteVectorStore.in_dir(index_dir, dimensions=256) as store:
            await store.upsert(chunk_id, vector, metadata)
            hits = await store.query(query_vec, top_k=10)
    """

    store_name = "vector store"

    def __init__(self, db_path, dimensions: int):
        super().__init__(db_path)
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.dimensions = dimensions

    def _prepare_connection(self, conn: sqlite3.Connection) -> None:
        """Load the sqlite-vec extension."""
        try:
            import sqlite_vec
        except ImportError as e:
            raise StoreReadFailure(
                "sqlite-vec extension not available. Install with: pip install sqlite-vec"
            ) from e

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            raise StoreReadFailure(
                f"Failed to load sqlite-vec extension: {e}\n"
                "Note: some system Python builds do not support SQLite extensions."
            ) from e

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Create the schema, refusing to reuse a table of another dimension."""
        conn.execute(
            "CREATE TABLE IF NOT EXISTS index_info (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )
        row = conn.execute("SELECT value FROM index_info WHERE key = 'dimensions'").fetchone()
        if row is not None and int(row["value"]) != self.dimensions:
            raise StoreReadFailure(
                f"Index was built with {row['value']}-dim vectors but {self.dimensions} "
                "are configured. Delete the index directory and sync again."
            )

        conn.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS chunks_vec USING vec0(
                chunk_id TEXT PRIMARY KEY,
                embedding float[{self.dimensions}]
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chunks_meta (
                chunk_id     TEXT PRIMARY KEY,
                record_id    TEXT NOT NULL,
                field        TEXT NOT NULL,
                chunk_index  INTEGER NOT NULL,
                text         TEXT NOT NULL,
                token_count  INTEGER NOT NULL DEFAULT 0,
                indexed_at   TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chunks_meta_record_id ON chunks_meta(record_id)"
        )
        conn.execute(
            "INSERT OR IGNORE INTO index_info (key, value) VALUES ('dimensions', ?)",
            (str(self.dimensions),),
        )
        conn.commit()

    def _upsert_rows(
        self,
        conn: sqlite3.Connection,
        items: list[tuple[str, list[float], dict[str, Any]]],
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        try:
            for chunk_id, vector, metadata in items:
                if len(vector) != self.dimensions:
                    raise sqlite3.IntegrityError(
                        f"Vector for {chunk_id} has {len(vector)} dimensions, "
                        f"expected {self.dimensions}"
                    )
                # vec0 has no upsert: delete then insert
                conn.execute("DELETE FROM chunks_vec WHERE chunk_id = ?", (chunk_id,))
                conn.execute(
                    "INSERT INTO chunks_vec (chunk_id, embedding) VALUES (?, ?)",
                    (chunk_id, _serialize_vector(vector)),
                )
                conn.execute(
                    """
                    INSERT OR REPLACE INTO chunks_meta (
                        chunk_id, record_id, field, chunk_index, text, token_count, indexed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk_id,
                        metadata.get("record_id", ""),
                        metadata.get("field", ""),
                        int(metadata.get("chunk_index", 0)),
                        metadata.get("text", ""),
                        int(metadata.get("token_count", 0)),
                        now,
                    ),
                )
            _bump_generation(conn)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return len(items)

    async def upsert(self, chunk_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        await self._write(self._upsert_rows, [(chunk_id, vector, metadata)])

    async def upsert_many(self, items: Iterable[tuple[str, list[float], dict[str, Any]]]) -> int:
        return await self._write(self._upsert_rows, list(items))

    def _knn(self, conn: sqlite3.Connection, vector: list[float], top_k: int) -> list[ScoredChunk]:
        cursor = conn.execute(
            """
            SELECT v.chunk_id, v.distance, m.record_id, m.field, m.text
            FROM chunks_vec v
            JOIN chunks_meta m ON v.chunk_id = m.chunk_id
            WHERE v.embedding MATCH ? AND k = ?
            ORDER BY v.distance
            """,
            (_serialize_vector(vector), top_k),
        )
        return [
            ScoredChunk(
                chunk_id=row["chunk_id"],
                score=_distance_to_similarity(row["distance"]),
                record_id=row["record_id"],
                field=row["field"],
                text=row["text"],
            )
            for row in cursor
        ]

    async def query(self, vector: list[float], top_k: int) -> list[ScoredChunk]:
        if top_k <= 0:
            return []
        if len(vector) != self.dimensions:
            raise StoreReadFailure(
                f"Query vector has {len(vector)} dimensions, expected {self.dimensions}"
            )
        return await self._read(self._knn, vector, top_k)

    def _delete_record(self, conn: sqlite3.Connection, record_id: str) -> int:
        try:
            chunk_ids = [
                row["chunk_id"]
                for row in conn.execute(
                    "SELECT chunk_id FROM chunks_meta WHERE record_id = ?", (record_id,)
                )
            ]
            for chunk_id in chunk_ids:
                conn.execute("DELETE FROM chunks_vec WHERE chunk_id = ?", (chunk_id,))
            conn.execute("DELETE FROM chunks_meta WHERE record_id = ?", (record_id,))
            if chunk_ids:
                _bump_generation(conn)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return len(chunk_ids)

    async def delete_by_record(self, record_id: str) -> int:
        return await self._write(self._delete_record, record_id)

    def _list_chunks(self, conn: sqlite3.Connection) -> list[StoredChunk]:
        cursor = conn.execute(
            """
            SELECT chunk_id, record_id, field, chunk_index, text, token_count
            FROM chunks_meta
            ORDER BY record_id, field, chunk_index
            """
        )
        return [
            StoredChunk(
                chunk_id=row["chunk_id"],
                record_id=row["record_id"],
                field=row["field"],
                chunk_index=row["chunk_index"],
                text=row["text"],
                token_count=row["token_count"],
            )
            for row in cursor
        ]

    async def list_chunks(self) -> list[StoredChunk]:
        return await self._read(self._list_chunks)

    def _record_ids(self, conn: sqlite3.Connection) -> set[str]:
        cursor = conn.execute("SELECT DISTINCT record_id FROM chunks_meta")
        return {row["record_id"] for row in cursor}

    async def indexed_record_ids(self) -> set[str]:
        return await self._read(self._record_ids)

    def _count(self, conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) AS cnt FROM chunks_meta").fetchone()["cnt"]

    async def count(self) -> int:
        return await self._read(self._count)

    def _stats(self, conn: sqlite3.Connection) -> dict[str, Any]:
        chunk_count = self._count(conn)
        record_count = conn.execute(
            "SELECT COUNT(DISTINCT record_id) AS cnt FROM chunks_meta"
        ).fetchone()["cnt"]
        fields = {
            row["field"]: row["cnt"]
            for row in conn.execute(
                "SELECT field, COUNT(*) AS cnt FROM chunks_meta GROUP BY field ORDER BY field"
            )
        }
        row = conn.execute("SELECT MAX(indexed_at) AS last_indexed FROM chunks_meta").fetchone()
        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {
            "chunk_count": chunk_count,
            "record_count": record_count,
            "fields": fields,
            "dimensions": self.dimensions,
            "db_size_bytes": db_size,
            "last_indexed_at": row["last_indexed"] if row else None,
        }

    async def get_stats(self) -> dict[str, Any]:
        """Return chunk_count, record_count, fields, dimensions, db_size_bytes, last_indexed_at."""
        return await self._read(self._stats)

    def _write_generation(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM index_info WHERE key = 'write_generation'"
        ).fetchone()
        return int(row["value"]) if row else 0

    async def write_generation(self) -> Optional[int]:
        return await self._read(self._write_generation)
