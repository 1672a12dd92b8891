"""Keep the vector store and keyword index in sync with the record repository.

The orchestrator is the single writer of index state:
- ``sync_all`` re-chunks records whose fingerprint changed, skips unchanged
  ones, removes records that disappeared, and rebuilds the keyword index once
- ``index_one`` indexes a single record immediately
- ``remove_one`` drops a record's chunks and fingerprint

Only one sync/index cycle runs at a time. Progress is published as immutable
IndexingState snapshots to subscriber queues.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..records import Record, RecordRepository
from .chunker import RecordChunker
from .errors import ChunkSizeViolation, StoreError
from .fingerprint import fingerprint
from .fts import KeywordIndexManager
from .manifest import FingerprintStore
from .models import IndexingState
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STORE_RETRY_BACKOFF = 0.5


class RecordStatus(Enum):
    """What happened to one record during a cycle."""

    INDEXED = "indexed"
    SKIPPED = "skipped"
    FAILED = "failed"
    REMOVED = "removed"
    DISCARDED = "discarded"  # removed while it was being indexed


@dataclass
class RecordOutcome:
    """Result of processing one record. Expected failures are reported here, not raised."""

    record_id: str
    status: RecordStatus
    chunk_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def failed(cls, record_id: str, error: Exception) -> "RecordOutcome":
        """Create a failed outcome from the exception that caused it."""
        return cls(
            record_id=record_id,
            status=RecordStatus.FAILED,
            error=str(error),
            error_kind=type(error).__name__,
            field=getattr(error, "field", None),
        )


@dataclass
class SyncReport:
    """Summary of one sync_all cycle."""

    total: int = 0
    indexed: list[str] = field(default_factory=list)
    skipped: int = 0
    failed: dict[str, str] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    chunks_written: int = 0
    duration_seconds: float = 0.0

    def add(self, outcome: RecordOutcome) -> None:
        if outcome.status is RecordStatus.INDEXED:
            self.indexed.append(outcome.record_id)
            self.chunks_written += outcome.chunk_count
        elif outcome.status is RecordStatus.SKIPPED:
            self.skipped += 1
        elif outcome.status is RecordStatus.FAILED:
            self.failed[outcome.record_id] = outcome.error or "unknown error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "indexed": len(self.indexed),
            "skipped": self.skipped,
            "failed": len(self.failed),
            "removed": len(self.removed),
            "chunks_written": self.chunks_written,
            "duration_seconds": self.duration_seconds,
        }


class IndexOrchestrator:
    """Owns the index lifecycle: sync, incremental update and removal.

    Usage:
        orchestrator = IndexOrchestrator(repo, chunker, vectors, keywords, fingerprints)
        report = await orchestrator.sync_all()
    """

    def __init__(
        self,
        repository: RecordRepository,
        chunker: RecordChunker,
        vector_store: VectorStore,
        keyword_index: KeywordIndexManager,
        fingerprints: FingerprintStore,
        store_retry_backoff: float = DEFAULT_STORE_RETRY_BACKOFF,
    ):
        self.repository = repository
        self.chunker = chunker
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.fingerprints = fingerprints
        self.store_retry_backoff = store_retry_backoff

        self._state = IndexingState.idle()
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()
        self._sync_task: Optional[asyncio.Task] = None
        # record_id -> removal sequence number
        self._tombstones: dict[str, int] = {}
        self._removal_seq = 0
        self._last_sync_at: Optional[datetime] = None
        self._last_report: Optional[SyncReport] = None

    # -- observable state -------------------------------------------------

    @property
    def state(self) -> IndexingState:
        """Current IndexingState snapshot."""
        return self._state

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    def subscribe(self) -> asyncio.Queue:
        """Return a queue that receives every new state, starting with the current one."""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(self._state)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, state: IndexingState) -> None:
        self._state = state
        for queue in self._subscribers:
            queue.put_nowait(state)

    # -- operations -------------------------------------------------------

    async def sync_all(self) -> SyncReport:
        """Bring the index up to date with every record in the repository.

        Concurrent calls share one run and receive the same report.

        Raises:
            StoreError: If a store keeps failing after one retry. Records
                committed earlier in the cycle stay indexed.
            ChunkSizeViolation: On a chunker logic bug.
        """
        task = self._sync_task
        if task is None or task.done():
            task = asyncio.create_task(self._run_sync())
            self._sync_task = task
        else:
            logger.debug("Sync already in flight; joining it")
        return await asyncio.shield(task)

    async def _run_sync(self) -> SyncReport:
        async with self._lock:
            return await self._sync_locked()

    async def _sync_locked(self) -> SyncReport:
        started = time.perf_counter()
        report = SyncReport()
        self._tombstones.clear()
        previous_error = self._state.last_error
        current = 0
        total = 0

        self._publish(IndexingState.indexing(0, 0, last_error=previous_error))
        try:
            records = await self.repository.list_all()
            total = len(records)
            report.total = total
            self._publish(IndexingState.indexing(0, total, last_error=previous_error))

            changed = False
            for record in records:
                outcome = await self._process_record(record, check_fingerprint=True)
                report.add(outcome)
                changed = changed or outcome.status is RecordStatus.INDEXED
                current += 1
                self._publish(IndexingState.indexing(current, total, last_error=previous_error))

            report.removed = await self._remove_vanished({r.id for r in records})
            if report.removed:
                changed = True

            # Corpus-global statistics: rebuild once, after every upsert.
            if changed:
                await self._with_retry(self.keyword_index.rebuild, "keyword index rebuild")
            else:
                await self._with_retry(self.keyword_index.ensure_ready, "keyword index rebuild")
        except Exception as e:
            logger.error(f"Index sync failed after {current}/{total} records: {e}")
            self._publish(IndexingState.error(str(e), current=current, total=total))
            raise

        report.duration_seconds = time.perf_counter() - started
        self._last_sync_at = datetime.now(timezone.utc)
        self._last_report = report
        self._publish(IndexingState.idle(current=total, total=total))
        logger.info(
            f"Index sync finished: {len(report.indexed)} indexed, {report.skipped} unchanged, "
            f"{len(report.failed)} failed, {len(report.removed)} removed "
            f"in {report.duration_seconds:.2f}s"
        )
        return report

    async def index_one(self, record_id: str, force: bool = False) -> RecordOutcome:
        """Index a single record now, queued behind any running cycle.

        Args:
            record_id: Record to index.
            force: Skip the fingerprint comparison (the record is known to be new).
        """
        requested_after = self._removal_seq
        async with self._lock:
            if self._tombstones.get(record_id, 0) > requested_after:
                logger.info(f"Record {record_id} was removed while queued; not indexing")
                return RecordOutcome(record_id, RecordStatus.DISCARDED)
            self._tombstones.pop(record_id, None)
            previous_error = self._state.last_error
            self._publish(IndexingState.indexing(0, 1, last_error=previous_error))
            try:
                record = await self.repository.get(record_id)
                if record is None:
                    logger.info(f"Record {record_id} no longer exists; removing from index")
                    await self._delete_record(record_id)
                    outcome = RecordOutcome(record_id, RecordStatus.REMOVED)
                else:
                    outcome = await self._process_record(record, check_fingerprint=not force)
            except Exception as e:
                logger.error(f"Indexing record {record_id} failed: {e}")
                self._publish(IndexingState.error(str(e), current=0, total=1))
                raise

            self._publish(IndexingState.idle(current=1, total=1))
            return outcome

    async def remove_one(self, record_id: str) -> int:
        """Remove a record's chunks and fingerprint. Absent records are a no-op.

        Does not wait for a running cycle; a record that is mid-flight is
        discarded by that cycle instead of being written.

        Returns:
            Number of chunks deleted.
        """
        self._removal_seq += 1
        self._tombstones[record_id] = self._removal_seq
        deleted = await self._delete_record(record_id)
        logger.info(f"Removed record {record_id} ({deleted} chunks)")
        return deleted

    async def force_full_reindex(self) -> SyncReport:
        """Forget every fingerprint, then re-chunk and re-embed all records."""
        async with self._lock:
            await self._with_retry(self.fingerprints.clear, "fingerprint clear")
        logger.info("Cleared all fingerprints; running full reindex")
        return await self.sync_all()

    async def get_stats(self) -> dict[str, Any]:
        """Return records_indexed, chunk_count, keyword_index_stale, last_sync_at and status."""
        record_ids = await self.fingerprints.record_ids()
        chunk_count = await self.vector_store.count()
        return {
            "records_indexed": len(record_ids),
            "chunk_count": chunk_count,
            "keyword_index_stale": self.keyword_index.is_stale,
            "last_sync_at": self._last_sync_at.isoformat() if self._last_sync_at else None,
            "status": self._state.status.value,
            "last_error": self._state.last_error,
        }

    # -- internals --------------------------------------------------------

    async def _process_record(self, record: Record, check_fingerprint: bool) -> RecordOutcome:
        """Chunk and store one record.

        Chunking/embedding failures become a FAILED outcome; store failures
        (after one retry) propagate and end the cycle.
        """
        digest = fingerprint(record.indexable_text())
        if check_fingerprint:
            stored = await self._with_retry(
                lambda: self.fingerprints.get(record.id), "fingerprint read"
            )
            if stored == digest:
                return RecordOutcome(record.id, RecordStatus.SKIPPED)

        try:
            chunks = await self.chunker.chunk(record)
        except ChunkSizeViolation:
            raise
        except Exception as e:
            logger.warning(f"Failed to chunk record {record.id}: {e}")
            return RecordOutcome.failed(record.id, e)

        if record.id in self._tombstones:
            logger.info(f"Record {record.id} was removed while indexing; discarding")
            return RecordOutcome(record.id, RecordStatus.DISCARDED)

        items = [(chunk.id, chunk.embedding, chunk.metadata()) for chunk in chunks]
        # Old chunks go first so a shorter transcript leaves no orphans.
        await self._with_retry(
            lambda: self.vector_store.delete_by_record(record.id), "vector delete"
        )
        await self._with_retry(lambda: self.vector_store.upsert_many(items), "vector upsert")
        self.keyword_index.invalidate()
        await self._with_retry(
            lambda: self.fingerprints.set(record.id, digest, len(chunks)), "fingerprint write"
        )

        if record.id in self._tombstones:
            logger.info(f"Record {record.id} was removed while indexing; undoing write")
            await self._delete_record(record.id)
            return RecordOutcome(record.id, RecordStatus.DISCARDED)

        logger.debug(f"Indexed record {record.id}: {len(chunks)} chunks")
        return RecordOutcome(record.id, RecordStatus.INDEXED, chunk_count=len(chunks))

    async def _remove_vanished(self, current_ids: set[str]) -> list[str]:
        indexed = await self._with_retry(self.vector_store.indexed_record_ids, "vector read")
        indexed |= await self._with_retry(self.fingerprints.record_ids, "fingerprint read")
        vanished = sorted(indexed - current_ids)
        for record_id in vanished:
            await self._delete_record(record_id)
            logger.info(f"Removed vanished record {record_id}")
        return vanished

    async def _delete_record(self, record_id: str) -> int:
        deleted = await self._with_retry(
            lambda: self.vector_store.delete_by_record(record_id), "vector delete"
        )
        await self._with_retry(lambda: self.fingerprints.delete(record_id), "fingerprint delete")
        self.keyword_index.invalidate()
        return deleted

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a store operation, retrying once after a backoff on StoreError."""
        try:
            return await operation()
        except StoreError as e:
            logger.warning(
                f"{description} failed ({e}); retrying in {self.store_retry_backoff}s"
            )
            await asyncio.sleep(self.store_retry_backoff)
            return await operation()
