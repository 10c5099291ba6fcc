import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from checkmate.services.usage import UsageLimiter, hash_caller
from checkmate.stores.kv import MemoryKVStore


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 14, 23, 30, tzinfo=timezone.utc))


@pytest.fixture
def limiter(clock):
    return UsageLimiter(MemoryKVStore(), per_caller_limit=5, global_limit=100, clock=clock)


def test_hash_caller_is_stable_and_hides_ip():
    digest = hash_caller("203.0.113.7")
    assert digest == hash_caller("203.0.113.7")
    assert "203.0.113.7" not in digest
    assert len(digest) == 64


def test_date_key_uses_utc(clock, limiter):
    assert limiter.date_key() == "2025-03-14"


@pytest.mark.asyncio
async def test_fresh_caller_has_full_quota(limiter):
    status = await limiter.check_quota("10.0.0.1")
    assert status.allowed is True
    assert status.caller_remaining == 5
    assert status.global_remaining == 100


@pytest.mark.asyncio
async def test_check_quota_does_not_consume(limiter):
    for _ in range(10):
        status = await limiter.check_quota("10.0.0.1")
    assert status.caller_remaining == 5
    assert status.global_remaining == 100


@pytest.mark.asyncio
async def test_sixth_check_is_denied_after_five_uses(limiter):
    for _ in range(5):
        await limiter.record_usage("10.0.0.1")

    status = await limiter.check_quota("10.0.0.1")
    assert status.allowed is False
    assert status.caller_remaining == 0
    assert status.global_remaining == 95


@pytest.mark.asyncio
async def test_callers_are_independent(limiter):
    for _ in range(5):
        await limiter.record_usage("10.0.0.1")

    other = await limiter.check_quota("10.0.0.2")
    assert other.allowed is True
    assert other.caller_remaining == 5
    assert other.global_remaining == 95


@pytest.mark.asyncio
async def test_global_limit_blocks_everyone(clock):
    limiter = UsageLimiter(MemoryKVStore(), per_caller_limit=5, global_limit=3, clock=clock)
    for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3"):
        await limiter.record_usage(ip)

    status = await limiter.check_quota("4.4.4.4")
    assert status.allowed is False
    assert status.caller_remaining == 5
    assert status.global_remaining == 0


@pytest.mark.asyncio
async def test_new_utc_day_resets_counters(clock, limiter):
    for _ in range(5):
        await limiter.record_usage("10.0.0.1")
    assert (await limiter.check_quota("10.0.0.1")).allowed is False

    clock.now = datetime(2025, 3, 15, 0, 1, tzinfo=timezone.utc)
    status = await limiter.check_quota("10.0.0.1")
    assert status.allowed is True
    assert status.caller_remaining == 5
    assert status.global_remaining == 100


@pytest.mark.asyncio
async def test_store_keys_use_hashed_identity(clock):
    store = MemoryKVStore()
    limiter = UsageLimiter(store, clock=clock)
    await limiter.record_usage("10.0.0.1")

    assert await store.get(f"ip:{hash_caller('10.0.0.1')}:2025-03-14") == "1"
    assert await store.get("global:2025-03-14") == "1"
    assert all("10.0.0.1" not in key for key in store._data)


@pytest.mark.asyncio
async def test_read_failure_fails_open(clock):
    store = AsyncMock()
    store.get.side_effect = ConnectionError("store down")
    limiter = UsageLimiter(store, clock=clock)

    status = await limiter.check_quota("10.0.0.1")
    assert status.allowed is True
    assert status.caller_remaining == 5
    assert status.global_remaining == 100


@pytest.mark.asyncio
async def test_write_failure_is_not_raised(clock):
    store = AsyncMock()
    store.get.return_value = None
    store.set.side_effect = ConnectionError("store down")
    limiter = UsageLimiter(store, clock=clock)

    await limiter.record_usage("10.0.0.1")
    store.set.assert_awaited()


@pytest.mark.asyncio
async def test_garbage_counter_counts_as_zero(clock):
    store = MemoryKVStore()
    await store.set("global:2025-03-14", "not-a-number")
    limiter = UsageLimiter(store, clock=clock)

    status = await limiter.check_quota("10.0.0.1")
    assert status.global_remaining == 100


@pytest.mark.asyncio
async def test_get_usage_envelope(limiter):
    await limiter.record_usage("10.0.0.1")
    usage = await limiter.get_usage("10.0.0.1")
    assert usage.remaining == 4
    assert usage.limit == 5
    assert usage.allowed is True


class OverlapTrackingStore(MemoryKVStore):
    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def get(self, key):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return await super().get(key)


@pytest.mark.asyncio
async def test_counter_reads_run_concurrently(clock):
    store = OverlapTrackingStore()
    limiter = UsageLimiter(store, clock=clock)

    await limiter.check_quota("10.0.0.1")
    assert store.max_in_flight == 2
