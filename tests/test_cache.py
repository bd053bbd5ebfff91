from stockledger.core.cache import PRUNE_INTERVAL_SECONDS, CacheClient


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_fallback_round_trip_and_expiry():
    clock = FakeClock()
    cache = CacheClient(None, clock=clock)

    cache.set_json("greeting", {"text": "hi"}, ttl_seconds=30)
    assert cache.get_json("greeting").value == {"text": "hi"}

    clock.now += 31
    assert cache.get_json("greeting").hit is False


def test_expired_entries_are_pruned_on_write():
    clock = FakeClock()
    cache = CacheClient(None, clock=clock)
    for index in range(50):
        cache.set_json(f"idempotency:{index}", {"index": index}, ttl_seconds=10)
    cache.set_if_absent("job_lock:7:order_sync", "held", ttl_seconds=3600)

    clock.now += PRUNE_INTERVAL_SECONDS + 10
    cache.set_json("idempotency:fresh", {"index": "fresh"}, ttl_seconds=10)

    assert sorted(cache._fallback) == ["idempotency:fresh", "job_lock:7:order_sync"]


def test_pruning_is_throttled():
    clock = FakeClock()
    cache = CacheClient(None, clock=clock)
    cache.set_json("short", 1, ttl_seconds=1)

    clock.now += 5
    cache.set_json("other", 2, ttl_seconds=100)

    # expired but not yet swept; reads still treat it as missing
    assert "short" in cache._fallback
    assert cache.get("short") is None
