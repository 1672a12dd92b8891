"""Semantic indexing and hybrid retrieval for voice-capture records.

Pipeline: fingerprint -> sentence segmentation -> semantic chunking ->
embedding -> vector store + keyword index, and hybrid RRF search on top.
"""

from .chunker import RecordChunker, SemanticChunker, TextChunk, estimate_tokens, mean_pool
from .embedder import (
    EmbeddingBackend,
    OpenAIEmbeddingBackend,
    cosine_similarity,
    create_embedding_backend,
    is_normalized,
    l2_normalize,
    truncate_embedding,
)
from .errors import (
    ChunkSizeViolation,
    EmbeddingUnavailable,
    IndexerError,
    InvalidEmbedding,
    SearchDegraded,
    SearchUnavailable,
    SegmentationError,
    StoreError,
    StoreReadFailure,
    StoreWriteFailure,
)
from .fingerprint import fingerprint, fingerprint_fields
from .fts import FTSKeywordIndex, KeywordIndex, KeywordIndexManager
from .index_manager import IndexOrchestrator, RecordOutcome, RecordStatus, SyncReport
from .manifest import FingerprintStore, SQLiteFingerprintStore
from .models import (
    ChunkField,
    IndexedChunk,
    IndexingState,
    IndexingStatus,
    ScoredChunk,
    SearchResult,
    SearchResults,
    StoredChunk,
    make_chunk_id,
)
from .retrieval import HybridRanker, rrf_score
from .sentences import SentenceSegmenter, split_sentences
from .vector_store import SQLiteVectorStore, VectorStore

__all__ = [
    "ChunkField",
    "ChunkSizeViolation",
    "EmbeddingBackend",
    "EmbeddingUnavailable",
    "FTSKeywordIndex",
    "FingerprintStore",
    "HybridRanker",
    "IndexOrchestrator",
    "IndexedChunk",
    "IndexerError",
    "IndexingState",
    "IndexingStatus",
    "InvalidEmbedding",
    "KeywordIndex",
    "KeywordIndexManager",
    "OpenAIEmbeddingBackend",
    "RecordChunker",
    "RecordOutcome",
    "RecordStatus",
    "SQLiteFingerprintStore",
    "SQLiteVectorStore",
    "ScoredChunk",
    "SearchDegraded",
    "SearchResult",
    "SearchResults",
    "SearchUnavailable",
    "SegmentationError",
    "SemanticChunker",
    "SentenceSegmenter",
    "StoreError",
    "StoreReadFailure",
    "StoreWriteFailure",
    "StoredChunk",
    "SyncReport",
    "TextChunk",
    "VectorStore",
    "cosine_similarity",
    "create_embedding_backend",
    "estimate_tokens",
    "fingerprint",
    "fingerprint_fields",
    "is_normalized",
    "l2_normalize",
    "make_chunk_id",
    "mean_pool",
    "rrf_score",
    "split_sentences",
    "truncate_embedding",
]
