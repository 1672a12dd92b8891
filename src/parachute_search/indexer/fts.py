"""Full-text keyword index using SQLite FTS5.

BM25 statistics are corpus-global, so the index is rebuilt as a whole from
the chunk texts held by the vector store rather than updated per record.
KeywordIndexManager tracks when that rebuild is due.
"""

import asyncio
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from .db import SQLiteStore
from .models import ScoredChunk, StoredChunk
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

MAX_QUERY_TERMS = 16


def query_terms(text: str) -> list[str]:
    """Extract normalized, de-duplicated query terms (2+ characters)."""
    tokens = (t.strip("-_") for t in re.findall(r"[\w-]+", text.lower()))
    # Preserve order while deduplicating
    return list(dict.fromkeys(t for t in tokens if len(t) >= 2))


def build_match_query(text: str) -> str:
    """Quote each term and OR them together to avoid FTS syntax edge cases."""
    terms = query_terms(text)[:MAX_QUERY_TERMS]
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


class KeywordIndex(ABC):
    """Classic inverted-index term search over chunk texts."""

    @abstractmethod
    async def rebuild(
        self, corpus: Iterable[StoredChunk], source_generation: Optional[int] = None
    ) -> int:
        """Replace the whole index with ``corpus``; returns the row count.

        ``source_generation`` is the corpus owner's write counter at the time
        the corpus was read, when known.
        """

    @abstractmethod
    async def query(self, text: str, top_k: int) -> list[ScoredChunk]:
        """Return up to ``top_k`` matching chunks, best first (higher score is better)."""

    async def built_from_generation(self) -> Optional[int]:
        """Write counter the current contents were built from; None if unknown."""
        return None


class FTSKeywordIndex(SQLiteStore, KeywordIndex):
    """FTS5 implementation of KeywordIndex with BM25 ranking.

    Usage:
        with FTSKeywordIndex.in_dir(index_dir) as index:
            await index.rebuild(chunks)
            hits = await index.query("project alpha", top_k=10)
    """

    store_name = "keyword index"

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Create the FTS5 virtual table if it doesn't exist."""
        conn.execute(
            """
            CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                chunk_id  UNINDEXED,
                record_id UNINDEXED,
                field     UNINDEXED,
                text,
                tokenize = 'porter unicode61'
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS keyword_index_info (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        conn.commit()

    def _replace_all(
        self,
        conn: sqlite3.Connection,
        rows: list[tuple[str, str, str, str]],
        source_generation: Optional[int],
    ) -> int:
        try:
            conn.execute("DELETE FROM chunks_fts")
            conn.executemany(
                "INSERT INTO chunks_fts (chunk_id, record_id, field, text) VALUES (?, ?, ?, ?)",
                rows,
            )
            if source_generation is None:
                conn.execute("DELETE FROM keyword_index_info WHERE key = 'built_from'")
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO keyword_index_info (key, value) "
                    "VALUES ('built_from', ?)",
                    (str(source_generation),),
                )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return len(rows)

    async def rebuild(
        self, corpus: Iterable[StoredChunk], source_generation: Optional[int] = None
    ) -> int:
        rows = [(c.chunk_id, c.record_id, c.field.value, c.text) for c in corpus]
        return await self._write(self._replace_all, rows, source_generation)

    def _built_from(self, conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute(
            "SELECT value FROM keyword_index_info WHERE key = 'built_from'"
        ).fetchone()
        return int(row["value"]) if row else None

    async def built_from_generation(self) -> Optional[int]:
        return await self._read(self._built_from)

    def _search(self, conn: sqlite3.Connection, fts_query: str, top_k: int) -> list[ScoredChunk]:
        cursor = conn.execute(
            """
            SELECT chunk_id, record_id, field, text, bm25(chunks_fts) AS bm25_score
            FROM chunks_fts
            WHERE chunks_fts MATCH ?
            ORDER BY bm25_score
            LIMIT ?
            """,
            (fts_query, top_k),
        )
        # bm25() is negative with lower = better; flip it so higher = better.
        return [
            ScoredChunk(
                chunk_id=row["chunk_id"],
                score=-row["bm25_score"],
                record_id=row["record_id"],
                field=row["field"],
                text=row["text"],
            )
            for row in cursor
        ]

    async def query(self, text: str, top_k: int) -> list[ScoredChunk]:
        if not text or not text.strip() or top_k <= 0:
            return []
        fts_query = build_match_query(text)
        if not fts_query:
            return []
        return await self._read(self._search, fts_query, top_k)

    async def contains_term(self, term: str) -> bool:
        """Whether any indexed chunk matches ``term``."""
        hits = await self.query(term, top_k=1)
        return bool(hits)

    def _count(self, conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) AS cnt FROM chunks_fts").fetchone()["cnt"]

    async def count(self) -> int:
        return await self._read(self._count)

    async def get_stats(self) -> dict[str, Any]:
        """Return chunk_count and db_size_bytes."""
        chunk_count = await self.count()
        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {"chunk_count": chunk_count, "db_size_bytes": db_size}


class KeywordIndexManager(KeywordIndex):
    """Keeps a keyword index in step with the vector store's chunk corpus.

    Writers call ``invalidate()``; the next ``ensure_ready()`` (or query)
    rebuilds once from ``source.list_chunks()``. Rebuilds are single-flight.

    With ``reuse_persisted`` a stale-on-start manager first compares the
    source's write counter with the one the persisted index was built from,
    and skips the rebuild when they match.
    """

    def __init__(
        self,
        index: KeywordIndex,
        source: VectorStore,
        stale: bool = True,
        reuse_persisted: bool = False,
    ):
        self.index = index
        self.source = source
        self._generation = 1 if stale else 0
        self._built_generation = 0
        self._check_persisted = stale and reuse_persisted
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        return self._built_generation != self._generation

    def invalidate(self) -> None:
        """Mark the index for rebuild."""
        self._generation += 1

    async def _adopt_persisted(self) -> None:
        async with self._lock:
            if not self._check_persisted:
                return
            self._check_persisted = False
            generation = self._generation
            current = await self.source.write_generation()
            built_from = await self.index.built_from_generation()
            if current is not None and current == built_from:
                self._built_generation = generation
                logger.debug(f"Reusing keyword index built at write generation {current}")

    async def rebuild(
        self,
        corpus: Optional[Iterable[StoredChunk]] = None,
        source_generation: Optional[int] = None,
    ) -> int:
        """Rebuild from ``corpus``, or from the vector store when omitted."""
        async with self._lock:
            generation = self._generation
            if corpus is None:
                source_generation = await self.source.write_generation()
                corpus = await self.source.list_chunks()
            count = await self.index.rebuild(corpus, source_generation)
            self._built_generation = generation
            self._check_persisted = False
            logger.info(f"Keyword index rebuilt with {count} chunks")
            return count

    async def ensure_ready(self) -> None:
        """Rebuild if any write happened since the last rebuild."""
        if self._check_persisted:
            await self._adopt_persisted()
        if self.is_stale:
            await self.rebuild()

    async def query(self, text: str, top_k: int) -> list[ScoredChunk]:
        await self.ensure_ready()
        return await self.index.query(text, top_k)

    async def built_from_generation(self) -> Optional[int]:
        return await self.index.built_from_generation()
