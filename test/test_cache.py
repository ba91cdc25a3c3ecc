#!/usr/bin/env python3
"""Tests for the entity and record caches."""

import pytest

from blockfinax_sync.cache import EntityCache, RecordCache

from conftest import FakeOracle


@pytest.fixture
def cache(store, clock):
    return EntityCache(store, "4202:0xabc:trade", max_size=3, default_ttl=30.0, clock=clock)


class TestEntityCache:
    """Tests for EntityCache."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        await cache.set("pga:1", {"status": 1})

        assert await cache.get("pga:1") == {"status": 1}
        assert cache.stats['hits'] == 1

    @pytest.mark.asyncio
    async def test_miss(self, cache):
        assert await cache.get("pga:404") is None
        assert cache.stats['misses'] == 1

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache, clock):
        """Test that an entry is stale once its TTL has elapsed."""
        await cache.set("pga:1", {"status": 1})

        clock.advance(29)
        assert await cache.get("pga:1") == {"status": 1}

        clock.advance(1)
        assert await cache.get("pga:1") is None
        assert await cache.store.get("cache:4202:0xabc:trade:pga:1") is None

    @pytest.mark.asyncio
    async def test_entry_without_ttl_never_expires(self, cache, clock):
        await cache.set("records:0x11", ["pga:1"], ttl=None)

        clock.advance(10 ** 6)

        assert await cache.get("records:0x11") == ["pga:1"]

    @pytest.mark.asyncio
    async def test_lru_eviction_keeps_persisted_copy(self, cache):
        """Test that evicted entries are reloaded from the store."""
        for n in range(4):
            await cache.set(f"pga:{n}", n)

        assert "pga:0" not in cache._entries
        assert len(cache._entries) == 3
        assert await cache.get("pga:0") == 0

    @pytest.mark.asyncio
    async def test_recently_used_survives_eviction(self, cache):
        for n in range(3):
            await cache.set(f"pga:{n}", n)
        await cache.get("pga:0")

        await cache.set("pga:3", 3)

        assert "pga:0" in cache._entries
        assert "pga:1" not in cache._entries

    @pytest.mark.asyncio
    async def test_invalidate(self, cache):
        await cache.set("pga:1", 1)
        await cache.invalidate("pga:1")

        assert await cache.get("pga:1") is None
        assert cache.stats['invalidations'] == 1

    @pytest.mark.asyncio
    async def test_namespaces_isolated(self, store, clock, cache):
        other = EntityCache(store, "84532:0xdef:trade", clock=clock)
        await cache.set("pga:1", "lisk")
        await other.set("pga:1", "base")

        await other.clear()

        assert await cache.get("pga:1") == "lisk"
        assert await other.get("pga:1") is None

    @pytest.mark.asyncio
    async def test_persisted_across_instances(self, store, clock, cache):
        await cache.set("pga:1", {"status": 2})

        reopened = EntityCache(store, "4202:0xabc:trade", clock=clock)

        assert await reopened.get("pga:1") == {"status": 2}

    @pytest.mark.asyncio
    async def test_get_or_load(self, cache):
        calls = []

        async def loader():
            calls.append(1)
            return {"status": 3}

        assert await cache.get_or_load("pga:1", loader) == {"status": 3}
        assert await cache.get_or_load("pga:1", loader) == {"status": 3}
        assert len(calls) == 1
        assert cache.stats['loads'] == 1

    @pytest.mark.asyncio
    async def test_get_or_load_error_leaves_cache_untouched(self, cache):
        async def loader():
            raise ConnectionError("node down")

        with pytest.raises(ConnectionError):
            await cache.get_or_load("pga:1", loader)

        assert await cache.get_entry("pga:1") is None

    def test_get_stats(self, cache):
        stats = cache.get_stats()
        assert stats['namespace'] == "4202:0xabc:trade"
        assert stats['size'] == 0
        assert stats['max_size'] == 3


class TestRecordCache:
    """Tests for RecordCache."""

    @pytest.mark.asyncio
    async def test_read_through(self, cache):
        oracle = FakeOracle({"stake:0x11": {"amount": 5}})
        records = RecordCache(cache, oracle)

        assert await records.read("stake:0x11") == {"amount": 5}
        assert await records.read("stake:0x11") == {"amount": 5}
        assert oracle.reads == ["stake:0x11"]

    @pytest.mark.asyncio
    async def test_stale_record_reloaded(self, cache, clock):
        oracle = FakeOracle({"stake:0x11": {"amount": 5}})
        records = RecordCache(cache, oracle)
        await records.read("stake:0x11")

        clock.advance(31)
        oracle.records["stake:0x11"] = {"amount": 7}

        assert await records.read("stake:0x11") == {"amount": 7}
        assert len(oracle.reads) == 2

    @pytest.mark.asyncio
    async def test_force_read(self, cache):
        oracle = FakeOracle({"config": {"apr": 12}})
        records = RecordCache(cache, oracle)
        await records.read("config")

        await records.read("config", force=True)

        assert oracle.reads == ["config", "config"]

    @pytest.mark.asyncio
    async def test_invalidate_then_peek(self, cache):
        records = RecordCache(cache, FakeOracle({"config": {"apr": 12}}))
        await records.read("config")

        assert await records.peek("config") == {"apr": 12}
        assert await records.invalidate(["config"]) == 1
        assert await records.peek("config") is None

    @pytest.mark.asyncio
    async def test_no_oracle(self, cache):
        records = RecordCache(cache, None)

        assert not records.can_read("config")
        with pytest.raises(LookupError, match="No state oracle"):
            await records.read("config")

    @pytest.mark.asyncio
    async def test_unknown_record(self, cache):
        records = RecordCache(cache, FakeOracle())

        assert not records.can_read("pga:1")
        with pytest.raises(LookupError):
            await records.read("pga:1")
