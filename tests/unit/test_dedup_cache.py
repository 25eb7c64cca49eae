import pytest

from pos_cdc_bridge.cdc.dedup import DedupCache, fingerprint


class ManualClock:
    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def advance(self, seconds: float) -> float:
        self._current += seconds
        return self._current

    def __call__(self) -> float:
        return self._current


@pytest.mark.unit
def test_fingerprint_joins_fields_and_blanks_none():
    assert fingerprint(7, "PAID", 55) == "7-PAID-55"
    assert fingerprint(8, "PRODUCT_REMOVED", "55", 301) == "8-PRODUCT_REMOVED-55-301"
    assert fingerprint(9, "OPEN", None) == "9-OPEN-"


@pytest.mark.unit
def test_check_and_add_reports_hit_on_second_lookup():
    cache = DedupCache(max_entries=10, ttl_seconds=60, clock=ManualClock())

    assert cache.check_and_add("1-OPEN-55") is False
    assert cache.check_and_add("1-OPEN-55") is True
    assert len(cache) == 1


@pytest.mark.unit
def test_entries_expire_after_ttl():
    clock = ManualClock()
    cache = DedupCache(max_entries=10, ttl_seconds=60, clock=clock)
    cache.check_and_add("a")

    clock.advance(59)
    assert "a" in cache

    clock.advance(1)
    assert "a" not in cache
    assert cache.check_and_add("a") is False


@pytest.mark.unit
def test_overflow_evicts_oldest_instead_of_clearing():
    cache = DedupCache(max_entries=3, ttl_seconds=600, clock=ManualClock())
    for key in ("a", "b", "c", "d"):
        cache.check_and_add(key)

    assert len(cache) == 3
    assert "a" not in cache
    assert all(key in cache for key in ("b", "c", "d"))
    assert cache.evictions == 1
    assert cache.check_and_add("c") is True


@pytest.mark.unit
def test_sweep_runs_at_half_ttl_during_lookups():
    clock = ManualClock()
    cache = DedupCache(max_entries=10, ttl_seconds=100, clock=clock)
    cache.check_and_add("old")
    clock.advance(60)
    cache.check_and_add("young")  # sweeps at 60s, nothing expired yet
    clock.advance(50)  # old is 110s, young 50s; last sweep 50s ago

    cache.check_and_add("fresh")

    assert len(cache) == 2
    assert "young" in cache
    assert "fresh" in cache


@pytest.mark.unit
def test_discard_and_clear():
    cache = DedupCache(max_entries=10, ttl_seconds=100, clock=ManualClock())
    cache.check_and_add("a")
    cache.check_and_add("b")

    cache.discard("a")
    assert "a" not in cache
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0


@pytest.mark.unit
def test_rejects_non_positive_bounds():
    with pytest.raises(ValueError):
        DedupCache(max_entries=0)
    with pytest.raises(ValueError):
        DedupCache(ttl_seconds=0)
