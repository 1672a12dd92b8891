"""Group transcript sentences into topically coherent, size-bounded chunks.

Sentences are embedded in one batch; a chunk closes when the next sentence
would push it past ``max_chunk_tokens`` or when the cosine similarity between
consecutive sentences drops below ``similarity_threshold``. A chunk's vector
is the mean of its sentence vectors, renormalized to unit length.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..records import Record
from .embedder import EmbeddingBackend, cosine_similarity, l2_normalize
from .errors import (
    ChunkSizeViolation,
    EmbeddingUnavailable,
    IndexerError,
    SegmentationError,
)
from .models import ChunkField, IndexedChunk
from .sentences import SentenceSegmenter

logger = logging.getLogger(__name__)

# Approximate token count: 1 token ≈ 4 characters
_CHARS_PER_TOKEN = 4
DEFAULT_SIMILARITY_THRESHOLD = 0.5
DEFAULT_MAX_CHUNK_TOKENS = 500


def estimate_tokens(text: str) -> int:
    """Rough token count using the characters/4 heuristic."""
    return _tokens_for_chars(len(text))


def _tokens_for_chars(char_count: int) -> int:
    return math.ceil(char_count / _CHARS_PER_TOKEN)


def mean_pool(vectors: Sequence[Sequence[float]], renormalize: bool = True) -> list[float]:
    """Component-wise mean of equal-length vectors.

    Raises:
        ValueError: If ``vectors`` is empty or lengths differ.
    """
    if not vectors:
        raise ValueError("Cannot pool an empty list of vectors")
    dims = len(vectors[0])
    totals = [0.0] * dims
    for vector in vectors:
        if len(vector) != dims:
            raise ValueError(f"Vector length mismatch: {len(vector)} != {dims}")
        for i, value in enumerate(vector):
            totals[i] += value
    pooled = [value / len(vectors) for value in totals]
    return l2_normalize(pooled) if renormalize else pooled


@dataclass
class TextChunk:
    """A run of whole sentences with its pooled embedding."""

    text: str
    embedding: list[float]
    token_count: int
    sentences: list[str] = field(default_factory=list)
    first_sentence: int = 0

    @property
    def sentence_count(self) -> int:
        return len(self.sentences)


class SemanticChunker:
    """Split text into chunks at semantic boundaries, never mid-sentence."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        segmenter: Optional[SentenceSegmenter] = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_chunk_tokens: int = DEFAULT_MAX_CHUNK_TOKENS,
        renormalize: bool = True,
    ):
        if max_chunk_tokens <= 0:
            raise ValueError(f"max_chunk_tokens must be positive, got {max_chunk_tokens}")
        self.backend = backend
        self.segmenter = segmenter or SentenceSegmenter()
        self.similarity_threshold = similarity_threshold
        self.max_chunk_tokens = max_chunk_tokens
        self.renormalize = renormalize

    def segment(self, text: str) -> list[str]:
        """Segment text, falling back to one sentence on SegmentationError."""
        try:
            return self.segmenter.split(text)
        except SegmentationError as e:
            logger.warning(f"Sentence segmentation failed, using whole text: {e}")
            stripped = str(text).strip()
            return [stripped] if stripped else []

    async def chunk(self, text: str) -> list[TextChunk]:
        """Segment and chunk ``text``.

        Raises:
            EmbeddingUnavailable: If the backend fails.
            ChunkSizeViolation: If a multi-sentence chunk exceeds the limit.
        """
        return await self.chunk_sentences(self.segment(text))

    async def chunk_sentences(self, sentences: list[str]) -> list[TextChunk]:
        """Group an already segmented sentence sequence into chunks."""
        if not sentences:
            return []

        embeddings = await self.backend.embed_batch(list(sentences))
        if len(embeddings) != len(sentences):
            raise EmbeddingUnavailable(
                f"Backend returned {len(embeddings)} embeddings for {len(sentences)} sentences"
            )

        groups: list[list[int]] = []
        current = [0]
        current_chars = len(sentences[0])

        for i in range(1, len(sentences)):
            # +1 for the joining space
            candidate_chars = current_chars + 1 + len(sentences[i])
            too_large = _tokens_for_chars(candidate_chars) > self.max_chunk_tokens
            if not too_large:
                similarity = cosine_similarity(embeddings[i - 1], embeddings[i])
                if similarity >= self.similarity_threshold:
                    current.append(i)
                    current_chars = candidate_chars
                    continue

            groups.append(current)
            current = [i]
            current_chars = len(sentences[i])

        groups.append(current)

        chunks = [self._build_chunk(group, sentences, embeddings) for group in groups]
        self._check_sizes(chunks)
        return chunks

    def _build_chunk(
        self,
        group: list[int],
        sentences: list[str],
        embeddings: list[list[float]],
    ) -> TextChunk:
        members = [sentences[i] for i in group]
        text = " ".join(members)
        return TextChunk(
            text=text,
            embedding=mean_pool([embeddings[i] for i in group], renormalize=self.renormalize),
            token_count=estimate_tokens(text),
            sentences=members,
            first_sentence=group[0],
        )

    def _check_sizes(self, chunks: list[TextChunk]) -> None:
        for chunk in chunks:
            if chunk.token_count > self.max_chunk_tokens and chunk.sentence_count > 1:
                raise ChunkSizeViolation(
                    f"Chunk of {chunk.sentence_count} sentences has {chunk.token_count} "
                    f"tokens (limit {self.max_chunk_tokens})"
                )


class RecordChunker:
    """Map a whole record to indexable chunks.

    Produces the transcript chunks, then one chunk each for the title,
    context and summary when they are non-empty. ``chunk_index`` restarts at
    0 for every field.
    """

    def __init__(self, semantic_chunker: SemanticChunker):
        self.semantic_chunker = semantic_chunker

    @property
    def backend(self) -> EmbeddingBackend:
        return self.semantic_chunker.backend

    async def chunk(self, record: Record) -> list[IndexedChunk]:
        """Chunk and embed every indexable field of ``record``.

        Raises:
            EmbeddingUnavailable: Naming the field whose embedding failed.
            ChunkSizeViolation: Propagated unchanged from the chunker.
        """
        chunks: list[IndexedChunk] = []

        if record.transcript.strip():
            try:
                text_chunks = await self.semantic_chunker.chunk(record.transcript)
            except ChunkSizeViolation:
                raise
            except IndexerError as e:
                raise self._field_error(record, ChunkField.TRANSCRIPT, e) from e

            for index, text_chunk in enumerate(text_chunks):
                self._check_dimensions(record, ChunkField.TRANSCRIPT, text_chunk.embedding)
                chunks.append(
                    IndexedChunk(
                        record_id=record.id,
                        field=ChunkField.TRANSCRIPT,
                        chunk_index=index,
                        text=text_chunk.text,
                        embedding=text_chunk.embedding,
                        token_count=text_chunk.token_count,
                    )
                )

        for chunk_field, value in (
            (ChunkField.TITLE, record.title),
            (ChunkField.CONTEXT, record.context),
            (ChunkField.SUMMARY, record.summary),
        ):
            text = (value or "").strip()
            if not text:
                continue
            chunks.append(await self._embed_field(record, chunk_field, text))

        return chunks

    async def _embed_field(
        self, record: Record, chunk_field: ChunkField, text: str
    ) -> IndexedChunk:
        """Embed a short field directly as a single chunk."""
        try:
            vector = await self.backend.embed(text)
        except IndexerError as e:
            raise self._field_error(record, chunk_field, e) from e

        if self.semantic_chunker.renormalize:
            vector = l2_normalize(vector)
        self._check_dimensions(record, chunk_field, vector)
        return IndexedChunk(
            record_id=record.id,
            field=chunk_field,
            chunk_index=0,
            text=text,
            embedding=vector,
            token_count=estimate_tokens(text),
        )

    def _check_dimensions(
        self, record: Record, chunk_field: ChunkField, vector: list[float]
    ) -> None:
        expected = self.backend.dimensions
        if len(vector) != expected:
            raise EmbeddingUnavailable(
                f"Embedding for record {record.id} has {len(vector)} dimensions, "
                f"expected {expected}",
                field=chunk_field.value,
                record_id=record.id,
            )

    @staticmethod
    def _field_error(
        record: Record, chunk_field: ChunkField, error: Exception
    ) -> EmbeddingUnavailable:
        return EmbeddingUnavailable(
            f"Failed to embed {chunk_field.value} of record {record.id}: {error}",
            field=chunk_field.value,
            record_id=record.id,
        )
