"""Composition root: wire settings into concrete stores, backend and services."""

from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .indexer import (
    EmbeddingBackend,
    FTSKeywordIndex,
    HybridRanker,
    IndexOrchestrator,
    KeywordIndexManager,
    RecordChunker,
    SQLiteFingerprintStore,
    SQLiteVectorStore,
    SemanticChunker,
    create_embedding_backend,
)
from .records import MarkdownRecordRepository, RecordRepository


@dataclass
class SearchEngine:
    """Explicitly constructed services sharing one index database."""

    settings: Settings
    backend: EmbeddingBackend
    repository: RecordRepository
    vector_store: SQLiteVectorStore
    keyword_store: FTSKeywordIndex
    fingerprints: SQLiteFingerprintStore
    keyword_index: KeywordIndexManager
    orchestrator: IndexOrchestrator
    ranker: HybridRanker

    def close(self) -> None:
        self.vector_store.close()
        self.keyword_store.close()
        self.fingerprints.close()

    def __enter__(self) -> "SearchEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def create_engine(
    settings: Settings,
    backend: Optional[EmbeddingBackend] = None,
    repository: Optional[RecordRepository] = None,
) -> SearchEngine:
    """Build every service from ``settings``; ``backend``/``repository`` may be injected."""
    backend = backend or create_embedding_backend(settings)
    repository = repository or MarkdownRecordRepository(settings.records_dir)

    vector_store = SQLiteVectorStore(settings.index_db_path, dimensions=backend.dimensions)
    keyword_store = FTSKeywordIndex(settings.index_db_path)
    fingerprints = SQLiteFingerprintStore(settings.index_db_path)
    keyword_index = KeywordIndexManager(keyword_store, vector_store, reuse_persisted=True)

    chunker = RecordChunker(
        SemanticChunker(
            backend,
            similarity_threshold=settings.similarity_threshold,
            max_chunk_tokens=settings.max_chunk_tokens,
        )
    )
    orchestrator = IndexOrchestrator(
        repository=repository,
        chunker=chunker,
        vector_store=vector_store,
        keyword_index=keyword_index,
        fingerprints=fingerprints,
        store_retry_backoff=settings.store_retry_backoff,
    )
    ranker = HybridRanker(
        backend=backend,
        vector_store=vector_store,
        keyword_index=keyword_index,
        rrf_k=settings.rrf_k,
        default_top_k=settings.top_k,
        snippet_length=settings.snippet_length,
        debug_log_dir=settings.index_dir if settings.debug_log else None,
    )

    return SearchEngine(
        settings=settings,
        backend=backend,
        repository=repository,
        vector_store=vector_store,
        keyword_store=keyword_store,
        fingerprints=fingerprints,
        keyword_index=keyword_index,
        orchestrator=orchestrator,
        ranker=ranker,
    )
