"""Hybrid retrieval combining vector and keyword search with RRF fusion.

This module implements Reciprocal Rank Fusion (RRF) to combine results from
semantic (vector) search and full-text keyword search into a unified ranking.
If one path fails the query degrades to the other; only a failure of both
paths is raised.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Optional

from .embedder import EmbeddingBackend
from .errors import SearchDegraded, SearchUnavailable
from .fts import KeywordIndex
from .models import ChunkField, ScoredChunk, SearchResult, SearchResults
from .search_debug_log import append_search_debug_trace
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60
DEFAULT_TOP_K = 20
DEFAULT_SNIPPET_LENGTH = 150


def rrf_score(ranks: list[Optional[int]], k: int = DEFAULT_RRF_K) -> float:
    """Calculate RRF score from multiple ranking positions.

    Reciprocal Rank Fusion formula: score(d) = Σ 1/(k + rank_i(d))

    Args:
        ranks: List of rank positions (1-indexed). None means not ranked
               (not found in that source).
        k: RRF constant (default 60).

    Returns:
        RRF score (higher = better). 0.0 when not ranked in any source.
    """
    score = 0.0
    for rank in ranks:
        if rank is not None:
            score += 1.0 / (k + rank)
    return score


def make_snippet(text: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Collapse whitespace and cut at a word boundary, adding "..." when cut."""
    collapsed = " ".join(text.split())
    if len(collapsed) <= max_length:
        return collapsed
    cut = collapsed[:max_length]
    space = cut.rfind(" ")
    if space > max_length // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;:") + "..."


def _candidate_rows(hits: list[ScoredChunk]) -> list[dict[str, Any]]:
    """Per-path candidates in rank order, for the search trace."""
    return [
        {
            "rank": i + 1,
            "chunk_id": hit.chunk_id,
            "record_id": hit.record_id,
            "score": round(hit.score, 6),
        }
        for i, hit in enumerate(hits)
    ]


class HybridRanker:
    """Answer queries by fusing vector similarity and keyword relevance.

    Usage:
        ranker = HybridRanker(backend, vector_store, keyword_manager)
        results = await ranker.search("project alpha", top_k=10)
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        rrf_k: int = DEFAULT_RRF_K,
        default_top_k: int = DEFAULT_TOP_K,
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
        debug_log_dir: Optional[Path] = None,
    ):
        self.backend = backend
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.rrf_k = rrf_k
        self.default_top_k = default_top_k
        self.snippet_length = snippet_length
        self.debug_log_dir = debug_log_dir

    async def _vector_candidates(self, query: str, top_k: int) -> list[ScoredChunk]:
        vector = await self.backend.embed(query)
        return await self.vector_store.query(vector, top_k)

    async def _keyword_candidates(self, query: str, top_k: int) -> list[ScoredChunk]:
        return await self.keyword_index.query(query, top_k)

    async def _timed(
        self, coro, timings: dict[str, float], name: str
    ) -> list[ScoredChunk]:
        started = time.perf_counter()
        try:
            return await coro
        finally:
            timings[name] = round((time.perf_counter() - started) * 1000, 2)

    async def search(self, query: str, top_k: Optional[int] = None) -> SearchResults:
        """Run a hybrid query.

        Args:
            query: Natural-language query text.
            top_k: Maximum number of results (defaults to ``default_top_k``).

        Returns:
            SearchResults ordered by fused score; ``degraded`` is set when one
            path failed.

        Raises:
            SearchUnavailable: If both the vector and keyword paths fail.
        """
        top_k = self.default_top_k if top_k is None else top_k
        if not query or not query.strip() or top_k <= 0:
            return SearchResults(query=query or "")

        started = time.perf_counter()
        timings: dict[str, float] = {}
        vector_outcome, keyword_outcome = await asyncio.gather(
            self._timed(self._vector_candidates(query, top_k), timings, "vector"),
            self._timed(self._keyword_candidates(query, top_k), timings, "keyword"),
            return_exceptions=True,
        )

        for outcome in (vector_outcome, keyword_outcome):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        degraded: Optional[SearchDegraded] = None
        if isinstance(vector_outcome, Exception) and isinstance(keyword_outcome, Exception):
            logger.error(f"Search failed on both paths for query {query!r}")
            raise SearchUnavailable(vector_outcome, keyword_outcome) from keyword_outcome
        if isinstance(vector_outcome, Exception):
            degraded = SearchDegraded("vector", vector_outcome)
            vector_hits: list[ScoredChunk] = []
        else:
            vector_hits = vector_outcome
        if isinstance(keyword_outcome, Exception):
            degraded = SearchDegraded("keyword", keyword_outcome)
            keyword_hits: list[ScoredChunk] = []
        else:
            keyword_hits = keyword_outcome
        if degraded is not None:
            logger.warning(f"Search degraded: {degraded}")

        fusion_started = time.perf_counter()
        results = self.fuse(vector_hits, keyword_hits, top_k)
        timings["fusion"] = round((time.perf_counter() - fusion_started) * 1000, 2)
        timings["total"] = round((time.perf_counter() - started) * 1000, 2)

        if self.debug_log_dir is not None:
            append_search_debug_trace(
                self.debug_log_dir,
                self._trace(query, top_k, vector_hits, keyword_hits, results, degraded, timings),
            )

        return SearchResults(query=query, results=results, degraded=degraded)

    def fuse(
        self,
        vector_hits: list[ScoredChunk],
        keyword_hits: list[ScoredChunk],
        top_k: int,
    ) -> list[SearchResult]:
        """Merge two ranked lists with RRF and return the top ``top_k``.

        Ties on fused score go to the higher vector similarity, then the
        higher keyword score, then chunk id.
        """
        # Build rank maps (1-indexed positions)
        vector_ranks = {hit.chunk_id: i + 1 for i, hit in enumerate(vector_hits)}
        keyword_ranks = {hit.chunk_id: i + 1 for i, hit in enumerate(keyword_hits)}
        vector_by_id = {hit.chunk_id: hit for hit in vector_hits}
        keyword_by_id = {hit.chunk_id: hit for hit in keyword_hits}

        candidates = []
        for chunk_id in set(vector_ranks) | set(keyword_ranks):
            v_hit = vector_by_id.get(chunk_id)
            k_hit = keyword_by_id.get(chunk_id)
            fused = rrf_score([vector_ranks.get(chunk_id), keyword_ranks.get(chunk_id)], self.rrf_k)
            candidates.append((chunk_id, fused, v_hit, k_hit))

        candidates.sort(
            key=lambda c: (
                -c[1],
                -(c[2].score if c[2] is not None else float("-inf")),
                -(c[3].score if c[3] is not None else float("-inf")),
                c[0],
            )
        )

        results: list[SearchResult] = []
        for chunk_id, fused, v_hit, k_hit in candidates[:top_k]:
            source = v_hit if v_hit is not None else k_hit
            results.append(
                SearchResult(
                    record_id=source.record_id,
                    field=source.field or ChunkField.TRANSCRIPT,
                    chunk_id=chunk_id,
                    score=fused,
                    snippet=make_snippet(source.text, self.snippet_length),
                    vector_score=v_hit.score if v_hit is not None else None,
                    keyword_score=k_hit.score if k_hit is not None else None,
                    vector_rank=vector_ranks.get(chunk_id),
                    keyword_rank=keyword_ranks.get(chunk_id),
                )
            )
        return results

    def _trace(
        self,
        query: str,
        top_k: int,
        vector_hits: list[ScoredChunk],
        keyword_hits: list[ScoredChunk],
        results: list[SearchResult],
        degraded: Optional[SearchDegraded],
        timings: dict[str, float],
    ) -> dict[str, Any]:
        return {
            "query": query,
            "params": {"top_k": top_k, "rrf_k": self.rrf_k},
            "counts": {
                "vector_hits": len(vector_hits),
                "keyword_hits": len(keyword_hits),
                "unique_candidates": len(
                    {h.chunk_id for h in vector_hits} | {h.chunk_id for h in keyword_hits}
                ),
                "final_results": len(results),
            },
            "degraded": {"path": degraded.path, "error": str(degraded.cause)} if degraded else None,
            "vector_candidates": _candidate_rows(vector_hits),
            "keyword_candidates": _candidate_rows(keyword_hits),
            "results": [
                {
                    "chunk_id": r.chunk_id,
                    "record_id": r.record_id,
                    "field": r.field.value,
                    "score": round(r.score, 6),
                    "vector_rank": r.vector_rank,
                    "keyword_rank": r.keyword_rank,
                }
                for r in results
            ],
            "timings_ms": timings,
        }
