"""
Usage Tracker

Counts how often each chunk is returned (or explicitly endorsed) and when
it was last used. The ranking engine turns these counters into the usage
and recency sub-scores.

Write path:
-----------
record() only appends to an in-process delta buffer under a tiny lock, so
the query hot path never waits on storage. flush() (periodic via start(),
or explicit) swaps the buffer out and applies the deltas with atomic
store operations:

- catalog backend: usage_count = usage_count + n on the embedding record
- redis backend: HINCRBY + ZADD GT

Reads (stats()) never wait on a flush. They return stored counters plus
the deltas still buffered or being applied, so counts are never observed
going backwards.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Union

from ragcore.core.config import settings
from ragcore.core.logging import get_logger
from ragcore.schemas.content import UsageStats, utcnow
from ragcore.schemas.retrieval import FeedbackSignal
from ragcore.services.storage.catalog import Catalog, UsageDelta


logger = get_logger(__name__)

# stats() reads repeated before falling back to waiting for the flush lock
STATS_READ_ATTEMPTS = 3


class UsageStore(ABC):
    """Durable home of usage counters."""

    @abstractmethod
    async def apply(self, deltas: Mapping[str, UsageDelta]) -> None:
        """Atomically add counts; last_used_at never moves backwards."""

    @abstractmethod
    async def get(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        """Stored counters for the given chunks (missing ids are omitted)."""

    async def forget(self, chunk_ids: Iterable[str]) -> None:
        """Drop counters of deleted chunks. Catalog counters go with their rows."""

    async def close(self) -> None:
        """Release resources."""


class CatalogUsageStore(UsageStore):
    """Counters live on the catalog's embedding records."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    async def apply(self, deltas: Mapping[str, UsageDelta]) -> None:
        await self.catalog.apply_usage(deltas)

    async def get(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        return await self.catalog.get_usage(chunk_ids)


class UsageTracker:
    """
    Buffered usage counter.

    Usage:
    ------
    tracker = UsageTracker(CatalogUsageStore(catalog))
    await tracker.start()                  # periodic flush
    tracker.record(["unit-1:0", "unit-1:3"])
    stats = await tracker.stats(["unit-1:0"])
    await tracker.stop()                   # final flush
    """

    def __init__(self, store: UsageStore, flush_interval: Optional[float] = None):
        self.store = store
        self.flush_interval = (
            settings.USAGE_FLUSH_INTERVAL_SECONDS if flush_interval is None else flush_interval
        )
        self._buffer: Dict[str, UsageDelta] = {}
        self._buffer_lock = threading.Lock()
        # Batch currently being applied by flush(), and a count of applied batches
        self._in_flight: Dict[str, UsageDelta] = {}
        self._applied_epoch = 0
        self._flush_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------
    # Write path
    # ----------------------------------------

    def record(
        self,
        chunk_ids: Iterable[str],
        weight: int = 1,
        used_at: Optional[datetime] = None,
    ) -> None:
        """
        Buffer one use of each chunk.

        Args:
            chunk_ids: Chunks that were returned/used
            weight: Increment per chunk (feedback signals may weigh more)
            used_at: Timestamp of the use (default now)
        """
        if weight <= 0:
            return
        ts = used_at or utcnow()
        with self._buffer_lock:
            for chunk_id in chunk_ids:
                pending = self._buffer.get(chunk_id)
                if pending is None:
                    self._buffer[chunk_id] = UsageDelta(count=weight, last_used_at=ts)
                else:
                    pending.count += weight
                    if ts > pending.last_used_at:
                        pending.last_used_at = ts

    def record_feedback(self, chunk_id: str, signal: Union[FeedbackSignal, int]) -> int:
        """Buffer an explicit feedback signal. Returns the weight applied."""
        weight = signal.weight if isinstance(signal, FeedbackSignal) else int(signal)
        self.record([chunk_id], weight=weight)
        return weight

    @property
    def pending(self) -> int:
        """Number of chunks with buffered, unflushed deltas."""
        with self._buffer_lock:
            return len(self._buffer)

    async def flush(self) -> int:
        """
        Apply buffered deltas to the store.

        On failure the deltas are merged back into the buffer so nothing
        is lost; the error is re-raised.

        Returns:
            Number of chunks flushed
        """
        async with self._flush_lock:
            with self._buffer_lock:
                if not self._buffer:
                    return 0
                batch, self._buffer = self._buffer, {}
                self._in_flight = batch

            try:
                await self.store.apply(batch)
            except Exception as e:
                with self._buffer_lock:
                    self._in_flight = {}
                    _merge_into(self._buffer, batch)
                logger.error("usage_flush_failed", chunks=len(batch), error=str(e), error_type=type(e).__name__)
                raise

            with self._buffer_lock:
                self._in_flight = {}
                self._applied_epoch += 1
            logger.debug("usage_flushed", chunks=len(batch))
            return len(batch)

    async def forget(self, chunk_ids: Iterable[str]) -> None:
        """Discard buffered and stored counters of deleted chunks."""
        ids = list(chunk_ids)
        if not ids:
            return
        async with self._flush_lock:
            with self._buffer_lock:
                for chunk_id in ids:
                    self._buffer.pop(chunk_id, None)
            await self.store.forget(ids)

    # ----------------------------------------
    # Read path
    # ----------------------------------------

    async def stats(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        """
        Usage counters including unflushed deltas.

        Does not wait for a running flush: deltas still buffered and the
        batch being applied are added to the stored counters. A flush that
        completes while the store is being read may or may not be included
        in what was read, so that read is repeated.

        Every requested chunk gets an entry (zero counts when never used).
        """
        ids = list(dict.fromkeys(chunk_ids))
        for _ in range(STATS_READ_ATTEMPTS):
            with self._buffer_lock:
                epoch = self._applied_epoch
            stored = await self.store.get(ids)
            with self._buffer_lock:
                if self._applied_epoch == epoch:
                    return _combine(ids, stored, self._unapplied(ids))

        # Flushes kept completing mid-read; settle it with flushes held off
        async with self._flush_lock:
            stored = await self.store.get(ids)
            with self._buffer_lock:
                return _combine(ids, stored, self._unapplied(ids))

    def _unapplied(self, ids: Iterable[str]) -> Dict[str, UsageDelta]:
        """In-flight plus buffered deltas for ids. Caller holds the buffer lock."""
        result: Dict[str, UsageDelta] = {}
        for source in (self._in_flight, self._buffer):
            _merge_into(result, {c: source[c] for c in ids if c in source})
        return result

    # ----------------------------------------
    # Background flushing
    # ----------------------------------------

    async def start(self) -> None:
        """Start periodic flushing on the running event loop."""
        if self._task is not None or self.flush_interval <= 0:
            return
        self._task = asyncio.create_task(self._run(), name="usage-tracker-flush")
        logger.info("usage_tracker_started", interval_seconds=self.flush_interval)

    async def stop(self) -> None:
        """Stop periodic flushing and flush what is left."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("usage_tracker_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception:
                # Deltas were re-buffered; the next tick retries
                logger.warning("usage_flush_retry_scheduled", interval_seconds=self.flush_interval)


def _merge_into(target: Dict[str, UsageDelta], deltas: Mapping[str, UsageDelta]) -> None:
    for chunk_id, delta in deltas.items():
        pending = target.get(chunk_id)
        if pending is None:
            target[chunk_id] = delta.model_copy()
        else:
            pending.count += delta.count
            pending.last_used_at = max(pending.last_used_at, delta.last_used_at)


def _combine(
    ids: Iterable[str],
    stored: Mapping[str, UsageStats],
    unapplied: Mapping[str, UsageDelta],
) -> Dict[str, UsageStats]:
    result: Dict[str, UsageStats] = {}
    for chunk_id in ids:
        base = stored.get(chunk_id) or UsageStats(chunk_id=chunk_id)
        count = base.usage_count
        last_used = base.last_used_at
        delta = unapplied.get(chunk_id)
        if delta is not None:
            count += delta.count
            if last_used is None or delta.last_used_at > last_used:
                last_used = delta.last_used_at
        result[chunk_id] = UsageStats(chunk_id=chunk_id, usage_count=count, last_used_at=last_used)
    return result
