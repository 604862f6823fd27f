"""
Tests for ResultCache and adapter read caching.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from parceldesk.db.cache import MISSING, ResultCache, make_key
from parceldesk.db.fixture import FixtureAdapter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


class TestMakeKey:
    def test_key_ignores_mapping_order(self):
        assert make_key("tickets.list", {"a": 1, "b": 2}) == make_key("tickets.list", {"b": 2, "a": 1})

    def test_operation_is_part_of_key(self):
        assert make_key("tickets.list", {"a": 1}) != make_key("tickets.count", {"a": 1})

    def test_datetimes_and_sets_are_keyable(self):
        when = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert make_key("op", {"at": when, "ids": {"b", "a"}}) == make_key("op", {"ids": {"a", "b"}, "at": when})

    def test_unkeyable_value_raises(self):
        with pytest.raises(TypeError):
            make_key("op", object())


class TestResultCache:
    def test_miss_then_hit_within_ttl(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl_seconds=60, clock=clock)

        assert cache.get("k") is MISSING
        assert cache.set("k", {"v": 1}) is True
        clock.advance(59)
        assert cache.get("k") == {"v": 1}

    def test_entry_expires_at_ttl(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl_seconds=60, clock=clock)
        cache.set("k", 1)
        clock.advance(60)
        assert cache.get("k") is MISSING
        assert len(cache) == 0

    def test_per_entry_ttl_overrides_default(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl_seconds=5)
        cache.set("long", 2)
        clock.advance(10)
        assert cache.get("short") is MISSING
        assert cache.get("long") == 2

    def test_zero_ttl_stores_nothing(self):
        cache = ResultCache()
        assert cache.set("k", 1, ttl_seconds=0) is False
        assert cache.get("k") is MISSING

    def test_invalidate_all_forces_miss(self):
        cache = ResultCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate_all()
        assert cache.get("a") is MISSING
        assert cache.get("b") is MISSING
        assert cache.stats()["size"] == 0

    def test_values_are_copied_in_and_out(self):
        cache = ResultCache()
        value = {"items": [1, 2]}
        cache.set("k", value)
        value["items"].append(3)
        first = cache.get("k")
        first["items"].append(4)
        assert cache.get("k") == {"items": [1, 2]}

    def test_stale_generation_is_not_stored(self):
        cache = ResultCache()
        seen = cache.generation
        cache.invalidate_all()
        assert cache.set("k", "stale", generation=seen) is False
        assert cache.get("k") is MISSING
        assert cache.set("k", "fresh", generation=cache.generation) is True

    def test_stats_prunes_expired_entries(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl_seconds=10, clock=clock)
        cache.set("old", 1)
        clock.advance(5)
        cache.set("new", 2)
        clock.advance(6)
        assert cache.stats() == {"size": 1, "keys": ["new"]}


class CountingFixtureAdapter(FixtureAdapter):
    """Counts units of work so tests can tell cache hits from backend reads."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.backend_reads = 0

    def unit_of_work(self):
        self.backend_reads += 1
        return super().unit_of_work()


class TestAdapterCaching:
    def test_second_read_is_served_from_cache(self, seed):
        adapter = CountingFixtureAdapter(seed=seed)

        async def scenario():
            first = await adapter.list_tickets({"status": "open"})
            second = await adapter.list_tickets({"status": "open"})
            return first, second

        first, second = run(scenario())
        assert [t.id for t in first] == [t.id for t in second]
        assert adapter.backend_reads == 1

    def test_use_cache_false_bypasses(self, seed):
        adapter = CountingFixtureAdapter(seed=seed)

        async def scenario():
            await adapter.list_tickets()
            await adapter.list_tickets(use_cache=False)

        run(scenario())
        assert adapter.backend_reads == 2

    def test_cache_disabled_reads_every_time(self, seed):
        adapter = CountingFixtureAdapter(seed=seed, cache_enabled=False)

        async def scenario():
            await adapter.count_tickets()
            await adapter.count_tickets()

        run(scenario())
        assert adapter.backend_reads == 2
        assert adapter.cache_stats()["enabled"] is False

    def test_failed_write_still_invalidates(self, seed):
        from parceldesk.errors import ConstraintError

        adapter = FixtureAdapter(seed=seed)

        async def scenario():
            await adapter.list_accounts()
            assert adapter.cache_stats()["size"] == 1
            with pytest.raises(ConstraintError):
                await adapter.create_account({
                    "display_name": "Dup",
                    "email": "admin@example.com",
                    "credential_hash": "x",
                })
            return adapter.cache_stats()["size"]

        assert run(scenario()) == 0

    def test_clear_cache(self, fixture_adapter):
        async def scenario():
            await fixture_adapter.list_broadcast_logs()
            fixture_adapter.clear_cache()
            return fixture_adapter.cache_stats()

        assert run(scenario())["size"] == 0
