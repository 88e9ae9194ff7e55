from datetime import datetime, timedelta, timezone

from authlineage.service import runtime as runtime_module
from authlineage.service.runtime import check_rate_limit, get_runtime


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _runtime_with_clock():
    runtime = get_runtime()
    clock = FakeClock()
    runtime.clock = clock
    return runtime, clock


async def test_bucket_empties_then_refills():
    runtime, clock = _runtime_with_clock()
    assert await check_rate_limit(runtime, "login:a", 2, 60)
    assert await check_rate_limit(runtime, "login:a", 2, 60)
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, "login:a", 2, 60, return_remaining=True
    )
    assert not allowed
    assert remaining == 0
    assert reset_seconds >= 1

    clock.advance(31)
    assert await check_rate_limit(runtime, "login:a", 2, 60)


async def test_refilled_buckets_are_pruned(monkeypatch):
    monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_PRUNE_THRESHOLD", 3)
    runtime, clock = _runtime_with_clock()
    for idx in range(3):
        assert await check_rate_limit(runtime, f"reset:user{idx}@example.com", 5, 60)
    assert len(runtime._local_rate_limits) == 3

    # A unit refills every 12s, so every bucket is full again
    clock.advance(13)
    assert await check_rate_limit(runtime, "reset:late@example.com", 5, 60)
    assert set(runtime._local_rate_limits) == {"reset:late@example.com"}


async def test_draining_buckets_survive_pruning(monkeypatch):
    monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_PRUNE_THRESHOLD", 2)
    runtime, clock = _runtime_with_clock()
    for _ in range(3):
        await check_rate_limit(runtime, "login:busy", 3, 60)
    assert await check_rate_limit(runtime, "login:idle", 3, 60)

    clock.advance(21)
    assert await check_rate_limit(runtime, "login:new", 3, 60)
    assert "login:idle" not in runtime._local_rate_limits
    assert "login:busy" in runtime._local_rate_limits
    # Pruning kept the drained state: one unit back after 21s, so one call passes
    assert await check_rate_limit(runtime, "login:busy", 3, 60)
    assert not await check_rate_limit(runtime, "login:busy", 3, 60)


async def test_many_distinct_keys_stay_bounded(monkeypatch):
    monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_PRUNE_THRESHOLD", 10)
    runtime, clock = _runtime_with_clock()
    for idx in range(100):
        await check_rate_limit(runtime, f"reset:{idx}@example.com", 1, 1)
        clock.advance(1)
    assert len(runtime._local_rate_limits) <= 10


async def test_non_positive_limit_is_unlimited():
    runtime, _ = _runtime_with_clock()
    for _ in range(5):
        assert await check_rate_limit(runtime, "login:x", 0, 60)
    assert runtime._local_rate_limits == {}
