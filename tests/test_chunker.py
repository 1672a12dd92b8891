"""Tests for semantic chunking and record chunking."""

import asyncio

import pytest

from helpers.fakes import FakeEmbeddingBackend
from parachute_search.indexer.chunker import (
    RecordChunker,
    SemanticChunker,
    estimate_tokens,
    mean_pool,
)
from parachute_search.indexer.errors import EmbeddingUnavailable, SegmentationError
from parachute_search.indexer.models import ChunkField, make_chunk_id
from parachute_search.indexer.sentences import SentenceSegmenter
from parachute_search.records import Record

TOPIC_A = [1.0, 0.0, 0.0, 0.0]
TOPIC_B = [0.0, 1.0, 0.0, 0.0]


def _backend_for(mapping: dict[str, list[float]]) -> FakeEmbeddingBackend:
    return FakeEmbeddingBackend(dims=4, vectors=mapping)


class TestHelpers:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_mean_pool_is_unit_length(self):
        pooled = mean_pool([[1.0, 0.0], [0.0, 1.0]])
        assert pooled == pytest.approx([0.70710678, 0.70710678])

    def test_mean_pool_without_renormalization(self):
        assert mean_pool([[1.0, 0.0], [0.0, 1.0]], renormalize=False) == [0.5, 0.5]

    def test_mean_pool_rejects_empty(self):
        with pytest.raises(ValueError):
            mean_pool([])


class TestSemanticChunker:
    """Grouping behaviour of SemanticChunker."""

    def test_splits_on_topic_shift(self):
        """Low similarity between neighbours closes the chunk."""
        backend = _backend_for(
            {
                "Alpha one.": TOPIC_A,
                "Alpha two.": TOPIC_A,
                "Beta one.": TOPIC_B,
                "Beta two.": TOPIC_B,
            }
        )
        chunker = SemanticChunker(backend, similarity_threshold=0.5)

        chunks = asyncio.run(chunker.chunk("Alpha one. Alpha two. Beta one. Beta two."))

        assert [c.text for c in chunks] == ["Alpha one. Alpha two.", "Beta one. Beta two."]
        assert chunks[0].embedding == pytest.approx(TOPIC_A)
        assert chunks[1].first_sentence == 2

    def test_single_embed_batch_call(self):
        """All sentences of a text are embedded in one backend call."""
        backend = FakeEmbeddingBackend(dims=16)
        chunker = SemanticChunker(backend)

        asyncio.run(chunker.chunk("One thing. Another thing. A third thing. And more."))

        assert backend.batch_calls == 1
        assert backend.single_calls == 0

    def test_chunks_respect_token_limit(self):
        """Multi-sentence chunks never exceed max_chunk_tokens."""
        sentences = [f"Sentence number {i} talks about the same topic." for i in range(20)]
        backend = _backend_for({s: TOPIC_A for s in sentences})
        chunker = SemanticChunker(backend, max_chunk_tokens=30)

        chunks = asyncio.run(chunker.chunk(" ".join(sentences)))

        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.token_count <= 30
            assert chunk.token_count == estimate_tokens(chunk.text)

    def test_never_splits_mid_sentence(self):
        sentences = [
            "Dr. Smith reviewed the 3.5 release notes.",
            "The team shipped it on time!",
            "Was anyone surprised?",
            "Nobody was.",
        ]
        backend = FakeEmbeddingBackend(dims=8)
        chunker = SemanticChunker(backend, max_chunk_tokens=12)

        chunks = asyncio.run(chunker.chunk(" ".join(sentences)))

        rebuilt = []
        for chunk in chunks:
            rebuilt.extend(chunk.sentences)
            assert chunk.text == " ".join(chunk.sentences)
        assert rebuilt == sentences

    def test_oversized_single_sentence_becomes_own_chunk(self):
        """A sentence longer than the limit is kept whole, not rejected."""
        long_sentence = "word " * 200 + "end."
        text = f"Short intro. {long_sentence.strip()} Short outro."
        backend = _backend_for({})
        chunker = SemanticChunker(backend, max_chunk_tokens=20)

        chunks = asyncio.run(chunker.chunk(text))

        oversized = [c for c in chunks if c.token_count > 20]
        assert len(oversized) == 1
        assert oversized[0].sentence_count == 1

    def test_empty_text_yields_no_chunks(self):
        backend = FakeEmbeddingBackend()
        chunker = SemanticChunker(backend)

        assert asyncio.run(chunker.chunk("   ")) == []
        assert backend.calls == 0

    def test_text_without_punctuation_is_one_chunk(self):
        backend = FakeEmbeddingBackend()
        chunker = SemanticChunker(backend)

        chunks = asyncio.run(chunker.chunk("just rambling with no full stop"))

        assert len(chunks) == 1
        assert chunks[0].text == "just rambling with no full stop"

    def test_segmentation_failure_falls_back_to_whole_text(self):
        class BrokenSegmenter(SentenceSegmenter):
            def split(self, text):
                raise SegmentationError("broken")

        backend = FakeEmbeddingBackend()
        chunker = SemanticChunker(backend, segmenter=BrokenSegmenter())

        chunks = asyncio.run(chunker.chunk("  First. Second.  "))

        assert [c.text for c in chunks] == ["First. Second."]

    def test_backend_failure_propagates(self):
        backend = FakeEmbeddingBackend()
        backend.fail = True
        chunker = SemanticChunker(backend)

        with pytest.raises(EmbeddingUnavailable):
            asyncio.run(chunker.chunk("Something. Else."))

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            SemanticChunker(FakeEmbeddingBackend(), max_chunk_tokens=0)


class TestRecordChunker:
    """Field handling of RecordChunker."""

    def _chunker(self, backend):
        return RecordChunker(SemanticChunker(backend, max_chunk_tokens=500))

    def test_produces_transcript_then_metadata_fields(self):
        record = Record(
            id="rec-1",
            title="Weekly sync",
            transcript="We talked about the launch. Then we planned the demo.",
            summary="Launch and demo planning",
            context="Team meeting",
        )
        backend = FakeEmbeddingBackend(dims=32)

        chunks = asyncio.run(self._chunker(backend).chunk(record))

        fields = [c.field for c in chunks]
        assert fields[-3:] == [ChunkField.TITLE, ChunkField.CONTEXT, ChunkField.SUMMARY]
        assert all(f is ChunkField.TRANSCRIPT for f in fields[:-3])
        for chunk in chunks:
            assert chunk.record_id == "rec-1"
            assert len(chunk.embedding) == 32
            assert chunk.id == make_chunk_id("rec-1", chunk.field, chunk.chunk_index)

    def test_chunk_index_restarts_per_field(self):
        sentences = ["Apples are red.", "Apples are sweet.", "Cars are fast.", "Cars are loud."]
        vectors = {
            sentences[0]: [1.0, 0.0, 0.0, 0.0],
            sentences[1]: [1.0, 0.0, 0.0, 0.0],
            sentences[2]: [0.0, 1.0, 0.0, 0.0],
            sentences[3]: [0.0, 1.0, 0.0, 0.0],
        }
        record = Record(id="r", title="Fruit and cars", transcript=" ".join(sentences))
        backend = FakeEmbeddingBackend(dims=4, vectors=vectors)

        chunks = asyncio.run(self._chunker(backend).chunk(record))

        transcript = [c for c in chunks if c.field is ChunkField.TRANSCRIPT]
        title = [c for c in chunks if c.field is ChunkField.TITLE]
        assert [c.chunk_index for c in transcript] == [0, 1]
        assert [c.chunk_index for c in title] == [0]

    def test_skips_empty_fields(self):
        record = Record(id="r", title="Only a title", transcript="", summary="  ")
        backend = FakeEmbeddingBackend()

        chunks = asyncio.run(self._chunker(backend).chunk(record))

        assert [c.field for c in chunks] == [ChunkField.TITLE]
        assert backend.batch_calls == 0

    def test_field_failure_names_the_field(self):
        record = Record(
            id="rec-9",
            title="Title",
            transcript="Fine transcript.",
            summary="POISON summary",
        )
        backend = FakeEmbeddingBackend()
        backend.fail_on = {"POISON"}

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            asyncio.run(self._chunker(backend).chunk(record))

        assert exc_info.value.field == "summary"
        assert exc_info.value.record_id == "rec-9"

    def test_transcript_failure_names_transcript(self):
        record = Record(id="rec-2", transcript="POISON here. More words.")
        backend = FakeEmbeddingBackend()
        backend.fail_on = {"POISON"}

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            asyncio.run(self._chunker(backend).chunk(record))

        assert exc_info.value.field == "transcript"

    def test_dimension_mismatch_is_rejected(self):
        record = Record(id="r", title="Odd vector")
        backend = FakeEmbeddingBackend(dims=4, vectors={"Odd vector": [1.0, 0.0]})

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            asyncio.run(self._chunker(backend).chunk(record))

        assert exc_info.value.field == "title"
