"""
Integration tests for RedisUsageStore against a real Redis.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ragcore.services.rag.usage_tracker import UsageTracker
from ragcore.services.storage.catalog import UsageDelta
from ragcore.services.storage.redis_usage import RedisUsageStore


pytestmark = pytest.mark.integration

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store(redis_client, usage_prefix):
    return RedisUsageStore(redis_client, key_prefix=usage_prefix)


@pytest.mark.asyncio
async def test_apply_and_get(store):
    """Test counts add up and timestamps never go backwards."""
    await store.apply({"a:0": UsageDelta(count=2, last_used_at=T0 + timedelta(hours=1))})
    await store.apply({"a:0": UsageDelta(count=1, last_used_at=T0)})

    stats = await store.get(["a:0", "missing"])

    assert list(stats) == ["a:0"]
    assert stats["a:0"].usage_count == 3
    assert stats["a:0"].last_used_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_forget(store):
    """Test counters of deleted chunks are dropped."""
    await store.apply({"a:0": UsageDelta(count=1, last_used_at=T0), "b:0": UsageDelta(count=1, last_used_at=T0)})

    await store.forget(["a:0"])

    assert set(await store.get(["a:0", "b:0"])) == {"b:0"}


@pytest.mark.asyncio
async def test_two_trackers_share_counters(store):
    """Test trackers in different processes see each other's flushed usage."""
    first = UsageTracker(store, flush_interval=0)
    second = UsageTracker(store, flush_interval=0)

    for _ in range(5):
        first.record(["a:0"], weight=1)
        second.record(["a:0"], weight=2)
    await asyncio.gather(first.flush(), second.flush())

    assert (await store.get(["a:0"]))["a:0"].usage_count == 15
