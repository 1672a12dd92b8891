"""Tests for the index orchestrator."""

import asyncio
from types import SimpleNamespace

import pytest

from helpers.fakes import (
    DictFingerprintStore,
    FakeEmbeddingBackend,
    InMemoryKeywordIndex,
    InMemoryRecordRepository,
    InMemoryVectorStore,
)
from parachute_search.indexer.chunker import RecordChunker, SemanticChunker
from parachute_search.indexer.errors import ChunkSizeViolation, StoreWriteFailure
from parachute_search.indexer.fingerprint import fingerprint
from parachute_search.indexer.fts import KeywordIndexManager
from parachute_search.indexer.index_manager import (
    IndexOrchestrator,
    RecordStatus,
    SyncReport,
)
from parachute_search.indexer.models import IndexingState, IndexingStatus
from parachute_search.records import Record


def _record(record_id: str, transcript: str, title: str = "") -> Record:
    return Record(id=record_id, title=title or f"Title {record_id}", transcript=transcript)


def _build(records=(), chunker_cls=RecordChunker):
    repo = InMemoryRecordRepository(records)
    backend = FakeEmbeddingBackend(dims=32)
    vectors = InMemoryVectorStore()
    keyword = InMemoryKeywordIndex()
    manager = KeywordIndexManager(keyword, vectors)
    fingerprints = DictFingerprintStore()
    chunker = chunker_cls(SemanticChunker(backend, max_chunk_tokens=200))
    orchestrator = IndexOrchestrator(
        repo, chunker, vectors, manager, fingerprints, store_retry_backoff=0
    )
    return SimpleNamespace(
        repo=repo,
        backend=backend,
        vectors=vectors,
        keyword=keyword,
        manager=manager,
        fingerprints=fingerprints,
        chunker=chunker,
        orchestrator=orchestrator,
    )


def _drain(queue: asyncio.Queue) -> list:
    states = []
    while not queue.empty():
        states.append(queue.get_nowait())
    return states


SAMPLE_RECORDS = [
    _record("a", "Project alpha kicked off today. We assigned owners."),
    _record("b", "Groceries for the week. Milk and bread."),
    _record("c", "The dentist appointment moved to Friday."),
]


class TestSyncAll:
    """Full-sync behaviour."""

    def test_first_sync_indexes_everything(self):
        env = _build(SAMPLE_RECORDS)

        report = asyncio.run(env.orchestrator.sync_all())

        assert sorted(report.indexed) == ["a", "b", "c"]
        assert report.total == 3
        assert report.failed == {}
        assert asyncio.run(env.vectors.indexed_record_ids()) == {"a", "b", "c"}
        assert set(env.fingerprints.digests) == {"a", "b", "c"}
        assert env.orchestrator.state.status is IndexingStatus.IDLE

    def test_second_sync_is_idempotent(self):
        """Unchanged records are skipped without any embedding calls."""
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())
        calls_after_first = env.backend.calls
        rows_after_first = dict(env.vectors.rows)

        report = asyncio.run(env.orchestrator.sync_all())

        assert env.backend.calls == calls_after_first
        assert report.skipped == 3
        assert report.indexed == []
        assert env.vectors.rows.keys() == rows_after_first.keys()

    def test_keyword_index_rebuilt_once_per_cycle(self):
        env = _build(SAMPLE_RECORDS)

        asyncio.run(env.orchestrator.sync_all())
        assert env.keyword.rebuild_calls == 1
        assert env.keyword.contains_term("dentist")

        asyncio.run(env.orchestrator.sync_all())
        assert env.keyword.rebuild_calls == 1

    def test_modified_record_is_rechunked_without_orphans(self):
        """A shorter transcript replaces every old chunk."""
        long_text = " ".join(f"Topic {i} is unrelated to anything else {i}." for i in range(30))
        env = _build([_record("r", long_text)])
        asyncio.run(env.orchestrator.sync_all())
        assert len(env.vectors.texts_for("r")) > 2

        env.repo.put(_record("r", "Now it is short."))
        report = asyncio.run(env.orchestrator.sync_all())

        assert report.indexed == ["r"]
        assert sorted(env.vectors.texts_for("r")) == ["Now it is short.", "Title r"]
        assert env.fingerprints.digests["r"] == fingerprint(
            env.repo.records["r"].indexable_text()
        )

    def test_partial_failure_does_not_stop_cycle(self):
        """One record failing to embed is reported; the others are indexed."""
        env = _build(
            [
                _record("good-1", "Fine content here."),
                _record("bad", "POISON content here."),
                _record("good-2", "More fine content."),
            ]
        )
        env.backend.fail_on = {"POISON"}

        report = asyncio.run(env.orchestrator.sync_all())

        assert sorted(report.indexed) == ["good-1", "good-2"]
        assert list(report.failed) == ["bad"]
        assert "transcript" in report.failed["bad"]
        assert "bad" not in env.fingerprints.digests
        assert env.orchestrator.state.status is IndexingStatus.IDLE

    def test_failed_record_retried_next_cycle(self):
        env = _build([_record("bad", "POISON content here.")])
        env.backend.fail_on = {"POISON"}
        asyncio.run(env.orchestrator.sync_all())

        env.backend.fail_on = set()
        report = asyncio.run(env.orchestrator.sync_all())

        assert report.indexed == ["bad"]

    def test_vanished_records_are_removed(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())

        env.repo.drop("b")
        report = asyncio.run(env.orchestrator.sync_all())

        assert report.removed == ["b"]
        assert asyncio.run(env.vectors.indexed_record_ids()) == {"a", "c"}
        assert "b" not in env.fingerprints.digests
        assert not env.keyword.contains_term("groceries")

    def test_store_failure_retried_once(self):
        env = _build([_record("a", "Some text.")])
        env.vectors.write_failures = 1

        report = asyncio.run(env.orchestrator.sync_all())

        assert report.indexed == ["a"]

    def test_persistent_store_failure_ends_cycle(self):
        """A store failing twice aborts the cycle; earlier records stay indexed."""
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.index_one("a"))
        env.repo.put(_record("b", "Changed groceries list."))
        env.vectors.write_failures = 2

        with pytest.raises(StoreWriteFailure):
            asyncio.run(env.orchestrator.sync_all())

        state = env.orchestrator.state
        assert state.status is IndexingStatus.ERROR
        assert state.last_error
        assert "a" in asyncio.run(env.vectors.indexed_record_ids())

    def test_recovers_from_error_state(self):
        env = _build(SAMPLE_RECORDS)
        env.vectors.write_failures = 2
        with pytest.raises(StoreWriteFailure):
            asyncio.run(env.orchestrator.sync_all())

        asyncio.run(env.orchestrator.sync_all())

        assert env.orchestrator.state.status is IndexingStatus.IDLE

    def test_chunk_size_violation_propagates(self):
        class BrokenChunker(RecordChunker):
            async def chunk(self, record):
                raise ChunkSizeViolation("chunk too big")

        env = _build(SAMPLE_RECORDS, chunker_cls=BrokenChunker)

        with pytest.raises(ChunkSizeViolation):
            asyncio.run(env.orchestrator.sync_all())

    def test_concurrent_syncs_are_coalesced(self):
        env = _build(SAMPLE_RECORDS)

        async def run():
            return await asyncio.gather(
                env.orchestrator.sync_all(), env.orchestrator.sync_all()
            )

        first, second = asyncio.run(run())

        assert first is second
        assert env.repo.list_calls == 1

    def test_last_report(self):
        env = _build(SAMPLE_RECORDS)
        assert env.orchestrator.last_report is None

        report = asyncio.run(env.orchestrator.sync_all())

        assert env.orchestrator.last_report is report
        assert report.to_dict()["indexed"] == 3


class TestStateStream:
    """IndexingState publication."""

    def test_subscriber_sees_progress_then_idle(self):
        env = _build(SAMPLE_RECORDS)

        async def run():
            queue = env.orchestrator.subscribe()
            await env.orchestrator.sync_all()
            env.orchestrator.unsubscribe(queue)
            return _drain(queue)

        states = asyncio.run(run())

        assert states[0].status is IndexingStatus.IDLE
        indexing = [s for s in states if s.status is IndexingStatus.INDEXING]
        assert indexing
        progress = [s.current for s in indexing]
        assert progress == sorted(progress)
        assert max(progress) == 3
        assert states[-1].status is IndexingStatus.IDLE
        assert states[-1].current == states[-1].total == 3

    def test_error_state_published(self):
        env = _build(SAMPLE_RECORDS)
        env.vectors.write_failures = 2

        async def run():
            queue = env.orchestrator.subscribe()
            with pytest.raises(StoreWriteFailure):
                await env.orchestrator.sync_all()
            return _drain(queue)

        states = asyncio.run(run())

        assert states[-1].status is IndexingStatus.ERROR

    def test_unsubscribed_queue_receives_nothing(self):
        env = _build(SAMPLE_RECORDS)

        async def run():
            queue = env.orchestrator.subscribe()
            env.orchestrator.unsubscribe(queue)
            _drain(queue)
            await env.orchestrator.sync_all()
            return queue.empty()

        assert asyncio.run(run())


class TestIndexOne:
    def test_indexes_single_record(self):
        env = _build(SAMPLE_RECORDS)

        outcome = asyncio.run(env.orchestrator.index_one("a"))

        assert outcome.status is RecordStatus.INDEXED
        assert outcome.chunk_count > 0
        assert asyncio.run(env.vectors.indexed_record_ids()) == {"a"}

    def test_unchanged_record_skipped_unless_forced(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.index_one("a"))

        assert asyncio.run(env.orchestrator.index_one("a")).status is RecordStatus.SKIPPED
        assert asyncio.run(env.orchestrator.index_one("a", force=True)).status is (
            RecordStatus.INDEXED
        )

    def test_missing_record_is_removed(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())
        env.repo.drop("a")

        outcome = asyncio.run(env.orchestrator.index_one("a"))

        assert outcome.status is RecordStatus.REMOVED
        assert "a" not in asyncio.run(env.vectors.indexed_record_ids())

    def test_serialized_with_running_sync(self):
        """index_one and sync_all never both index the same unchanged record."""
        env = _build(SAMPLE_RECORDS)

        async def run():
            return await asyncio.gather(
                env.orchestrator.sync_all(), env.orchestrator.index_one("a")
            )

        report, outcome = asyncio.run(run())

        indexed_by_sync = "a" in report.indexed
        indexed_by_one = outcome.status is RecordStatus.INDEXED
        assert indexed_by_sync != indexed_by_one

    def test_failure_reported_as_outcome(self):
        env = _build([_record("bad", "POISON words.")])
        env.backend.fail_on = {"POISON"}

        outcome = asyncio.run(env.orchestrator.index_one("bad"))

        assert outcome.status is RecordStatus.FAILED
        assert outcome.field == "transcript"
        assert outcome.error_kind == "EmbeddingUnavailable"


class TestRemoveOne:
    def test_removes_chunks_and_fingerprint(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())

        deleted = asyncio.run(env.orchestrator.remove_one("a"))

        assert deleted > 0
        assert "a" not in asyncio.run(env.vectors.indexed_record_ids())
        assert "a" not in env.fingerprints.digests
        assert env.manager.is_stale

    def test_remove_is_idempotent(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())

        asyncio.run(env.orchestrator.remove_one("a"))
        assert asyncio.run(env.orchestrator.remove_one("a")) == 0
        assert asyncio.run(env.orchestrator.remove_one("never-indexed")) == 0

    def test_removed_record_not_in_keyword_results(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())

        asyncio.run(env.orchestrator.remove_one("c"))
        hits = asyncio.run(env.manager.query("dentist", top_k=5))

        assert hits == []

    def test_removal_during_sync_discards_record(self):
        """A record removed while it is being chunked is never written."""

        class RemovingChunker(RecordChunker):
            orchestrator = None

            async def chunk(self, record):
                chunks = await super().chunk(record)
                if record.id == "b":
                    await self.orchestrator.remove_one("b")
                return chunks

        env = _build(SAMPLE_RECORDS, chunker_cls=RemovingChunker)
        env.chunker.orchestrator = env.orchestrator

        report = asyncio.run(env.orchestrator.sync_all())

        assert "b" not in report.indexed
        assert "b" not in asyncio.run(env.vectors.indexed_record_ids())
        assert "b" not in env.fingerprints.digests
        assert sorted(report.indexed) == ["a", "c"]

    def test_removal_while_queued_cancels_index_one(self):
        """index_one waiting behind a cycle honours a removal made while it waited."""

        class GatedChunker(RecordChunker):
            gate = None

            async def chunk(self, record):
                if record.id == "c":
                    await self.gate.wait()
                return await super().chunk(record)

        env = _build(SAMPLE_RECORDS, chunker_cls=GatedChunker)

        async def run():
            env.chunker.gate = asyncio.Event()
            sync = asyncio.create_task(env.orchestrator.sync_all())
            await asyncio.sleep(0)
            queued = asyncio.create_task(env.orchestrator.index_one("a", force=True))
            await asyncio.sleep(0)
            await env.orchestrator.remove_one("a")
            env.chunker.gate.set()
            await sync
            return await queued

        outcome = asyncio.run(run())

        assert outcome.status is RecordStatus.DISCARDED
        assert "a" not in asyncio.run(env.vectors.indexed_record_ids())
        assert "a" not in env.fingerprints.digests

    def test_index_one_after_removal_reindexes(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())
        asyncio.run(env.orchestrator.remove_one("a"))

        outcome = asyncio.run(env.orchestrator.index_one("a"))

        assert outcome.status is RecordStatus.INDEXED
        assert "a" in asyncio.run(env.vectors.indexed_record_ids())


class TestForceFullReindex:
    def test_reembeds_every_record(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())
        calls_after_first = env.backend.calls

        report = asyncio.run(env.orchestrator.force_full_reindex())

        assert sorted(report.indexed) == ["a", "b", "c"]
        assert env.backend.calls > calls_after_first


class TestStats:
    def test_get_stats(self):
        env = _build(SAMPLE_RECORDS)
        asyncio.run(env.orchestrator.sync_all())

        stats = asyncio.run(env.orchestrator.get_stats())

        assert stats["records_indexed"] == 3
        assert stats["chunk_count"] == len(env.vectors.rows)
        assert stats["keyword_index_stale"] is False
        assert stats["last_sync_at"] is not None
        assert stats["status"] == "idle"


class TestSyncReport:
    def test_to_dict_counts(self):
        report = SyncReport(total=4, indexed=["a"], skipped=2, failed={"b": "boom"})
        data = report.to_dict()
        assert data["indexed"] == 1
        assert data["failed"] == 1
        assert data["skipped"] == 2


class TestIndexingState:
    def test_progress_fraction(self):
        state = IndexingState.indexing(1, 4)
        assert state.is_busy
        assert state.progress == 0.25

    def test_idle_without_records_is_complete(self):
        assert IndexingState.idle().progress == 1.0
        assert not IndexingState.idle().is_busy

    def test_error_keeps_message(self):
        state = IndexingState.error("disk full", current=2, total=3)
        assert state.status is IndexingStatus.ERROR
        assert state.last_error == "disk full"

    def test_snapshots_are_immutable(self):
        state = IndexingState.idle()
        with pytest.raises(AttributeError):
            state.current = 5
