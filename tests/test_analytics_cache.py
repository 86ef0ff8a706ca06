import pytest

from app.orgdocs.modules.document_control.analytics import AnalyticsCache, CacheKey


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_fresh_entry_is_served_without_recompute():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=60, clock=clock)
    calls = []

    def compute():
        calls.append(1)
        return len(calls)

    key = CacheKey(1, "compliance_report")
    assert cache.get_or_compute(key, compute) == 1
    clock.now = 59
    assert cache.get_or_compute(key, compute) == 1
    assert len(calls) == 1


def test_expired_entry_is_recomputed():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=60, clock=clock)
    key = CacheKey(1, "compliance_report")
    cache.get_or_compute(key, lambda: "old")
    clock.now = 60
    assert cache.get_or_compute(key, lambda: "new") == "new"


def test_expired_entry_served_when_recompute_fails():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=60, clock=clock)
    key = CacheKey(1, "compliance_report")
    cache.get_or_compute(key, lambda: "old")
    clock.now = 120

    def boom():
        raise RuntimeError("db down")

    assert cache.get_or_compute(key, boom) == "old"


def test_recompute_failure_raises_when_stale_disabled():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=60, serve_stale_on_error=False, clock=clock)
    key = CacheKey(1, "compliance_report")
    cache.get_or_compute(key, lambda: "old")
    clock.now = 120

    def boom():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        cache.get_or_compute(key, boom)


def test_failure_without_previous_entry_raises():
    cache = AnalyticsCache(ttl_seconds=60, clock=FakeClock())

    def boom():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        cache.get_or_compute(CacheKey(1, "compliance_report"), boom)


def test_invalidate_matches_organization_exactly():
    cache = AnalyticsCache(ttl_seconds=60, clock=FakeClock())
    cache.get_or_compute(CacheKey(1, "compliance_report"), lambda: 1)
    cache.get_or_compute(CacheKey(1, "version_analytics"), lambda: 1)
    cache.get_or_compute(CacheKey(11, "compliance_report"), lambda: 1)

    assert cache.invalidate(1, "version_analytics") == 1
    assert len(cache) == 2
    # organization 11 must survive invalidating organization 1
    assert cache.invalidate(1) == 1
    assert len(cache) == 1
    assert cache.invalidate(1) == 0


def test_long_expired_entries_are_dropped_on_write():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=10, clock=clock)
    for days in range(1000):
        cache.get_or_compute(CacheKey(1, "acknowledgment_analytics", (days,)), lambda: "v")
    assert len(cache) == 1000

    clock.now = 10000
    cache.get_or_compute(CacheKey(1, "acknowledgment_analytics", (1000,)), lambda: "v")
    assert len(cache) == 1


def test_recently_expired_entry_survives_for_stale_serving():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=10, clock=clock)
    cache.get_or_compute(CacheKey(1, "compliance_report"), lambda: "old")
    clock.now = 50
    cache.get_or_compute(CacheKey(2, "compliance_report"), lambda: "other")

    def boom():
        raise RuntimeError("db down")

    assert cache.get_or_compute(CacheKey(1, "compliance_report"), boom) == "old"


def test_oldest_entries_beyond_capacity_are_dropped():
    clock = FakeClock()
    cache = AnalyticsCache(ttl_seconds=60, clock=clock, max_entries=2)
    for org_id in (1, 2, 3):
        clock.now = org_id
        cache.get_or_compute(CacheKey(org_id, "compliance_report"), lambda: org_id)
    assert len(cache) == 2
    assert cache.invalidate(1) == 0
    assert cache.invalidate(3) == 1
