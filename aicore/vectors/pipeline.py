"""Embedding ingest and similarity search.

``ingest`` hashes each text, drops duplicates (within the batch, already
stored, or already pending), embeds the remaining texts in one provider call
and hands the records to a background writer.  The writer drains pending
records in batches into the write-once ``EmbeddingStore`` and the ANN index.
Records become searchable once written.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from time import time

from aicore.cache.fingerprint import Fingerprinter
from aicore.core.errors import InvalidInput
from aicore.metrics import inc_counter, set_gauge
from aicore.vectors.index import LSHIndex, SearchFilters
from aicore.vectors.store import EmbeddingRecord, EmbeddingStore, NativeSearchStore

logger = logging.getLogger("aicore.vectors")

EmbedFn = Callable[[list[str]], Awaitable[list[list[float]]]]

MAX_BATCH_SIZE = 2000
RANKINGS = ("relevance", "date", "hybrid")
HYBRID_RELEVANCE_WEIGHT = 0.7
RECENCY_HALF_LIFE_S = 7 * 86_400.0


@dataclass(frozen=True)
class IngestItem:
    text: str
    source_id: str
    created_at: float | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class IngestReport:
    content_hashes: list[str]
    generated: int
    deduplicated: int

    def as_dict(self) -> dict[str, object]:
        return {
            "content_hashes": self.content_hashes,
            "generated": self.generated,
            "deduplicated": self.deduplicated,
        }


@dataclass(frozen=True)
class SearchHit:
    content_hash: str
    source_id: str
    score: float
    rank_score: float
    created_at: float
    metadata: dict[str, str]

    def as_dict(self) -> dict[str, object]:
        return {
            "content_hash": self.content_hash,
            "source_id": self.source_id,
            "score": round(self.score, 6),
            "rank_score": round(self.rank_score, 6),
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }


class VectorPipeline:
    def __init__(
        self,
        store: EmbeddingStore,
        index: LSHIndex,
        fingerprinter: Fingerprinter,
        model: str,
        batch_size: int = 500,
        flush_interval_s: float = 0.25,
        clock: Callable[[], float] = time,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._index = index
        self._fingerprinter = fingerprinter
        self._model = model
        self._batch_size = min(batch_size, MAX_BATCH_SIZE)
        self._flush_interval_s = flush_interval_s
        self._clock = clock
        self._pending: deque[EmbeddingRecord] = deque()
        self._pending_hashes: set[str] = set()
        self._records: dict[str, EmbeddingRecord] = {}
        self._wake = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._generated = 0
        self._deduplicated = 0
        self._inserted = 0
        self._batches = 0

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        existing = await asyncio.to_thread(self._store.all_records)
        for record in existing:
            self._remember(record)
        self._task = asyncio.create_task(self._run(), name="aicore-vector-writer")
        logger.info("vector_pipeline_started", extra={"restored": len(existing)})

    async def stop(self) -> None:
        await self.flush()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def content_hash(self, text: str) -> str:
        return self._fingerprinter.content_hash(text, self._model)

    async def ingest(self, items: list[IngestItem], embed: EmbedFn) -> IngestReport:
        hashes = [self.content_hash(item.text) for item in items]
        stored = await asyncio.to_thread(self._store.existing, list(set(hashes)))

        to_embed: list[tuple[str, IngestItem]] = []
        seen: set[str] = set()
        deduplicated = 0
        for content_hash, item in zip(hashes, items, strict=True):
            if (
                content_hash in seen
                or content_hash in stored
                or content_hash in self._pending_hashes
                or content_hash in self._records
            ):
                deduplicated += 1
                continue
            seen.add(content_hash)
            to_embed.append((content_hash, item))

        # Claim the hashes before awaiting so concurrent ingests dedup against them.
        self._pending_hashes.update(seen)
        try:
            vectors = await embed([item.text for _, item in to_embed]) if to_embed else []
            if len(vectors) != len(to_embed):
                raise InvalidInput(
                    f"Embedding provider returned {len(vectors)} vectors for {len(to_embed)} texts"
                )
            if any(len(vector) != self._index.dim for vector in vectors):
                raise InvalidInput(f"Embeddings must have dimension {self._index.dim}")
        except BaseException:
            self._pending_hashes.difference_update(seen)
            raise

        now = self._clock()
        for (content_hash, item), vector in zip(to_embed, vectors, strict=True):
            self._pending.append(
                EmbeddingRecord(
                    content_hash=content_hash,
                    vector=tuple(float(value) for value in vector),
                    source_id=item.source_id,
                    created_at=item.created_at if item.created_at is not None else now,
                    metadata=dict(item.metadata),
                )
            )
        self._generated += len(to_embed)
        self._deduplicated += deduplicated
        inc_counter("aic_embeddings_generated_total", {}, float(len(to_embed)))
        inc_counter("aic_embeddings_deduplicated_total", {}, float(deduplicated))
        set_gauge("aic_embeddings_pending", {}, len(self._pending))
        if to_embed:
            self._wake.set()
        logger.info(
            "vector_ingest",
            extra={"generated": len(to_embed), "deduplicated": deduplicated},
        )
        return IngestReport(
            content_hashes=hashes, generated=len(to_embed), deduplicated=deduplicated
        )

    async def flush(self) -> int:
        """Write every pending record now; return how many were inserted."""
        inserted = 0
        while self._pending:
            inserted += await self._write_batch()
        return inserted

    async def search(
        self,
        vector: list[float],
        k: int = 20,
        filters: SearchFilters | None = None,
        min_score: float = 0.0,
        rank_by: str = "relevance",
    ) -> list[SearchHit]:
        if rank_by not in RANKINGS:
            raise InvalidInput(f"rank_by must be one of {', '.join(RANKINGS)}")
        if k < 1:
            return []
        if len(vector) != self._index.dim:
            raise InvalidInput(f"Query vector must have dimension {self._index.dim}")
        filters = filters or SearchFilters()
        pool = k if rank_by == "relevance" else min(k * 4, 1000)

        scored: list[tuple[EmbeddingRecord, float]]
        if isinstance(self._store, NativeSearchStore):
            native = await asyncio.to_thread(
                self._store.search, vector, pool, filters.metadata_equals()
            )
            scored = [
                (record, score)
                for record, score in native
                if filters.matches(record.created_at, record.metadata)
            ]
        else:

            def accept(key: str) -> bool:
                record = self._records.get(key)
                return record is not None and filters.matches(record.created_at, record.metadata)

            matches = self._index.query(vector, pool, accept=None if filters.is_empty() else accept)
            scored = [
                (self._records[key], score) for key, score in matches if key in self._records
            ]

        now = self._clock()
        hits = [
            SearchHit(
                content_hash=record.content_hash,
                source_id=record.source_id,
                score=score,
                rank_score=self._rank_score(rank_by, score, record.created_at, now),
                created_at=record.created_at,
                metadata=dict(record.metadata),
            )
            for record, score in scored
            if score >= min_score
        ]
        hits.sort(key=lambda hit: (-hit.rank_score, hit.content_hash))
        return hits[:k]

    async def delete(self, content_hash: str) -> bool:
        """Drop a record so the same content can be re-embedded."""
        removed_pending = False
        if content_hash in self._pending_hashes:
            kept = [record for record in self._pending if record.content_hash != content_hash]
            removed_pending = len(kept) != len(self._pending)
            self._pending = deque(kept)
            self._pending_hashes.discard(content_hash)
        removed = await asyncio.to_thread(self._store.delete, content_hash)
        self._index.remove(content_hash)
        self._records.pop(content_hash, None)
        logger.info("vector_deleted", extra={"content_hash": content_hash})
        return removed or removed_pending

    def stats(self) -> dict[str, object]:
        return {
            "generated": self._generated,
            "deduplicated": self._deduplicated,
            "inserted": self._inserted,
            "batches": self._batches,
            "pending": len(self._pending),
            "indexed": len(self._index),
            "batch_size": self._batch_size,
        }

    async def _run(self) -> None:
        while True:
            if not self._pending:
                self._wake.clear()
                await self._wake.wait()
            if len(self._pending) < self._batch_size:
                await asyncio.sleep(self._flush_interval_s)
            try:
                await self._write_batch()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("vector_batch_write_failed", extra={"pending": len(self._pending)})
                await asyncio.sleep(max(self._flush_interval_s, 1.0))

    async def _write_batch(self) -> int:
        async with self._write_lock:
            batch: list[EmbeddingRecord] = []
            while self._pending and len(batch) < self._batch_size:
                batch.append(self._pending.popleft())
            if not batch:
                return 0
            try:
                inserted = await asyncio.to_thread(self._store.put_many, batch)
            except BaseException:
                self._pending.extendleft(reversed(batch))
                raise
            for record in inserted:
                self._remember(record)
            for record in batch:
                self._pending_hashes.discard(record.content_hash)
            self._inserted += len(inserted)
            self._batches += 1
            inc_counter("aic_embeddings_inserted_total", {}, float(len(inserted)))
            set_gauge("aic_embeddings_pending", {}, len(self._pending))
            logger.info(
                "vector_batch_written",
                extra={"batch": len(batch), "inserted": len(inserted)},
            )
            return len(inserted)

    def _remember(self, record: EmbeddingRecord) -> None:
        self._records[record.content_hash] = record
        if not isinstance(self._store, NativeSearchStore):
            self._index.add(record.content_hash, list(record.vector))

    @staticmethod
    def _rank_score(rank_by: str, score: float, created_at: float, now: float) -> float:
        if rank_by == "relevance":
            return score
        if rank_by == "date":
            return created_at
        recency = 0.5 ** (max(now - created_at, 0.0) / RECENCY_HALF_LIFE_S)
        return HYBRID_RELEVANCE_WEIGHT * score + (1 - HYBRID_RELEVANCE_WEIGHT) * recency
