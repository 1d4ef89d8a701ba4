"""
Redis usage store.

Counters shared by every process that serves queries:

- ``{prefix}:count``      hash, field = chunk id, value = usage count (HINCRBY)
- ``{prefix}:last_used``  sorted set, member = chunk id, score = epoch seconds
                          (ZADD GT, so the timestamp never moves backwards)

A flush is one MULTI/EXEC pipeline, so a batch is applied all-or-nothing.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional

from redis.asyncio import Redis

from ragcore.core.config import settings
from ragcore.core.logging import get_logger
from ragcore.schemas.content import UsageStats
from ragcore.services.rag.usage_tracker import UsageStore
from ragcore.services.storage.catalog import UsageDelta


logger = get_logger(__name__)


class RedisUsageStore(UsageStore):
    """UsageStore backed by Redis hashes and sorted sets."""

    def __init__(self, redis: Redis, key_prefix: Optional[str] = None):
        self.redis = redis
        prefix = key_prefix or settings.REDIS_USAGE_KEY_PREFIX
        self.count_key = f"{prefix}:count"
        self.last_used_key = f"{prefix}:last_used"

    async def apply(self, deltas: Mapping[str, UsageDelta]) -> None:
        if not deltas:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            for chunk_id, delta in deltas.items():
                pipe.hincrby(self.count_key, chunk_id, delta.count)
                pipe.zadd(self.last_used_key, {chunk_id: delta.last_used_at.timestamp()}, gt=True)
            await pipe.execute()
        logger.debug("redis_usage_applied", chunks=len(deltas))

    async def get(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hmget(self.count_key, ids)
            pipe.zmscore(self.last_used_key, ids)
            counts, scores = await pipe.execute()

        result: Dict[str, UsageStats] = {}
        for chunk_id, count, score in zip(ids, counts, scores):
            if count is None and score is None:
                continue
            result[chunk_id] = UsageStats(
                chunk_id=chunk_id,
                usage_count=int(count or 0),
                last_used_at=(
                    datetime.fromtimestamp(float(score), tz=timezone.utc) if score is not None else None
                ),
            )
        return result

    async def forget(self, chunk_ids: Iterable[str]) -> None:
        """Drop counters of deleted chunks."""
        ids = list(chunk_ids)
        if not ids:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self.count_key, *ids)
            pipe.zrem(self.last_used_key, *ids)
            await pipe.execute()
