"""
Tests for the tiered read/fill path of EntityCache.
"""
import json
import threading
import time

import pytest

from pokedex.cache import (
    EntityCache,
    NotFound,
    PokedexCacheError,
    PokemonRecord,
    SQLiteStore,
    StoreError,
    TransientUpstreamError,
    normalize_key,
)
from pokedex.cache.store import ALL_IDS_KEY, name_key, record_key

from conftest import FakeUpstream, expire


def _wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


# =============================================================================
# Key normalization
# =============================================================================

class TestNormalizeKey:

    def test_int_and_digit_string_are_ids(self):
        assert normalize_key(25) == 25
        assert normalize_key(" 25 ") == 25

    def test_names_are_case_folded(self):
        assert normalize_key("  Pikachu ") == "pikachu"
        assert normalize_key("porygon2") == "porygon2"

    def test_empty_key_is_not_found(self):
        with pytest.raises(NotFound):
            normalize_key("   ")

    def test_other_types_rejected(self):
        with pytest.raises(TypeError):
            normalize_key(True)
        with pytest.raises(TypeError):
            normalize_key(2.5)


# =============================================================================
# Tiered reads
# =============================================================================

class TestTieredGet:

    def test_repeated_get_by_id_makes_no_upstream_call(self, cache, upstream):
        first = cache.get(4)
        calls = upstream.call_count

        for _ in range(5):
            assert cache.get(4) is first
        assert upstream.call_count == calls == 1

    def test_pikachu_scenario(self, cache, upstream, temp_store):
        record = cache.get(25)

        assert record.name == "pikachu"
        assert upstream.call_count == 1

        # Store now holds the blob and the name mapping
        stored = json.loads(temp_store.get(record_key(25)))
        assert stored["id"] == 25
        assert temp_store.get(name_key("pikachu")) == "25"
        assert json.loads(temp_store.get(ALL_IDS_KEY)) == [25]

        # Both indexes point at the one instance
        assert cache.get_cached(25) is record
        assert cache.get_cached("pikachu") is record

        assert cache.get("Pikachu") is record
        assert upstream.call_count == 1

    def test_digit_string_resolves_as_id(self, cache, upstream):
        assert cache.get("25") is cache.get(25)
        assert upstream.call_count == 1

    def test_name_then_id_share_instance(self, cache, upstream):
        by_name = cache.get("charizard")
        by_id = cache.get(6)
        assert by_name is by_id
        assert upstream.call_count == 1
        assert cache.size() == 1

    def test_store_hit_after_restart(self, temp_store, upstream):
        first = EntityCache(temp_store, upstream)
        first.init()
        first.get(25)
        assert upstream.call_count == 1

        restarted = EntityCache(temp_store, upstream)
        restarted.init()
        by_name = restarted.get("PIKACHU")
        by_id = restarted.get(25)

        assert by_name is by_id
        assert by_id.types == ["electric"]
        assert upstream.call_count == 1
        assert restarted.get_stats()["hits_store"] == 1

    def test_missing_name_mapping_falls_through_to_upstream(self, temp_store, upstream):
        # record:7 is stored but name:slowpoke is not
        seed = PokemonRecord.create(7, upstream)
        temp_store.set(record_key(7), seed.to_json())
        upstream.calls.clear()

        cache = EntityCache(temp_store, upstream)
        record = cache.get("slowpoke")

        assert record.id == 7
        assert upstream.calls == ["slowpoke"]
        assert temp_store.get(name_key("slowpoke")) == "7"

    def test_malformed_stored_record_is_a_miss(self, cache, upstream, temp_store):
        temp_store.set(record_key(3), "{not json")

        record = cache.get(3)

        assert record.name == "venusaur"
        assert upstream.call_count == 1
        assert cache.get_stats()["malformed_records"] == 1
        # Overwritten with a good blob
        assert json.loads(temp_store.get(record_key(3)))["name"] == "venusaur"

    def test_stored_record_with_wrong_id_is_a_miss(self, cache, upstream, temp_store):
        temp_store.set(record_key(2), json.dumps({"id": 9, "name": "blastoise"}))

        record = cache.get(2)

        assert record.name == "ivysaur"
        assert upstream.call_count == 1

    def test_malformed_name_mapping_is_a_miss(self, cache, upstream, temp_store):
        temp_store.set(name_key("caterpie"), "ten")

        assert cache.get("caterpie").id == 10
        assert upstream.call_count == 1


# =============================================================================
# Failures
# =============================================================================

class TestGetFailures:

    def test_not_found_writes_nothing(self, cache, temp_store):
        with pytest.raises(NotFound):
            cache.get("missingno")

        assert cache.size() == 0
        assert temp_store.keys() == []

    def test_upstream_failure_writes_nothing(self, cache, upstream, temp_store):
        upstream.fail_keys.add(25)

        with pytest.raises(TransientUpstreamError):
            cache.get(25)

        assert cache.size() == 0
        assert temp_store.keys() == []
        assert cache.get_stats()["upstream_failures"] == 1

        # Not retried inline; the next call tries again
        upstream.fail_keys.clear()
        assert cache.get(25).name == "pikachu"
        assert upstream.call_count == 2

    def test_store_error_surfaces_and_leaves_memory_alone(self, tmp_path, upstream):
        class BrokenStore(SQLiteStore):
            def get(self, key):
                raise StoreError("disk on fire")

        cache = EntityCache(BrokenStore(tmp_path / "broken.sqlite"), upstream)
        with pytest.raises(StoreError):
            cache.get(1)
        assert cache.size() == 0
        assert upstream.call_count == 0

    def test_store_write_failure_surfaces_and_leaves_memory_alone(self, tmp_path, upstream):
        class BrokenStore(SQLiteStore):
            def set(self, key, value):
                raise StoreError("disk full")

        cache = EntityCache(BrokenStore(tmp_path / "broken.sqlite"), upstream)
        with pytest.raises(StoreError):
            cache.get(25)

        assert upstream.call_count == 1
        assert cache.size() == 0
        assert cache.get_cached("pikachu") is None

    def test_get_after_shutdown_raises(self, cache):
        cache.get(1)
        cache.shutdown()
        with pytest.raises(PokedexCacheError):
            cache.get(1)


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrentGet:

    def test_concurrent_misses_share_one_fetch(self, temp_store):
        upstream = FakeUpstream(delay=0.2)
        upstream.add(25, "pikachu")
        cache = EntityCache(temp_store, upstream)
        cache.init()

        results = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            results.append(cache.get(25))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 6
        assert all(r is results[0] for r in results)
        assert upstream.call_count == 1
        assert cache.size() == 1

    def test_concurrent_failure_reaches_every_waiter(self, temp_store):
        upstream = FakeUpstream(delay=0.2)
        upstream.add(25, "pikachu")
        upstream.fail_keys.add(25)
        cache = EntityCache(temp_store, upstream)

        errors = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                cache.get(25)
            except TransientUpstreamError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 4
        assert upstream.call_count == 1
        assert cache.size() == 0


    def test_join_times_out_on_slow_fetch(self, temp_store):
        upstream = FakeUpstream(delay=0.5)
        upstream.add(25, "pikachu")
        cache = EntityCache(temp_store, upstream, coalesce_timeout=0.05)
        cache.init()

        first = []
        leader = threading.Thread(target=lambda: first.append(cache.get(25)))
        leader.start()
        _wait_for(lambda: upstream.in_flight == 1)

        with pytest.raises(TransientUpstreamError):
            cache.get(25)

        leader.join()
        assert first[0].name == "pikachu"
        assert upstream.call_count == 1
        assert cache.get_cached(25) is first[0]

    def test_shutdown_releases_waiting_callers(self, temp_store):
        upstream = FakeUpstream(delay=0.5)
        upstream.add(25, "pikachu")
        cache = EntityCache(temp_store, upstream, coalesce_timeout=10)
        cache.init()

        errors = []

        def waiter():
            try:
                cache.get(25)
            except TransientUpstreamError as e:
                errors.append(e)

        leader = threading.Thread(target=lambda: cache.get(25))
        leader.start()
        _wait_for(lambda: upstream.in_flight == 1)
        follower = threading.Thread(target=waiter)
        follower.start()
        _wait_for(lambda: cache.get_stats()["coalescer"]["joined"] == 1)

        cache.shutdown()
        follower.join(timeout=2)

        assert not follower.is_alive()
        assert len(errors) == 1
        assert cache.get_stats()["coalescer"]["active_requests"] == 0
        leader.join()


# =============================================================================
# Views, warm-up and refresh
# =============================================================================

class TestCacheViews:

    def test_serialize_all_round_trip(self, cache):
        for key in (25, "bulbasaur", 6):
            cache.get(key)

        parsed = json.loads(json.dumps(cache.serialize_all()))

        assert [p["id"] for p in parsed] == [1, 6, 25]
        for entry in parsed:
            record = cache.get_cached(entry["id"])
            assert entry["name"] == record.name
            assert entry["height"] == record.height
            assert entry["weight"] == record.weight
            assert entry["types"] == record.types
            assert entry["abilities"] == record.abilities
            assert entry["baseStats"] == record.base_stats
            assert "ttl" not in entry
            assert "lastAccess" not in entry
            assert "dirty" not in entry

    def test_manifest_tracks_every_persisted_id(self, cache, temp_store):
        for key in (3, 1, 2):
            cache.get(key)
        assert json.loads(temp_store.get(ALL_IDS_KEY)) == [1, 2, 3]

    def test_manifest_merges_with_existing_store(self, temp_store, upstream):
        first = EntityCache(temp_store, upstream)
        first.get(1)

        second = EntityCache(temp_store, upstream)
        second.get(2)

        assert json.loads(temp_store.get(ALL_IDS_KEY)) == [1, 2]

    def test_warm_from_store_loads_without_upstream(self, temp_store, upstream):
        first = EntityCache(temp_store, upstream)
        for key in (1, 2, 25):
            first.get(key)
        calls = upstream.call_count

        restarted = EntityCache(temp_store, upstream)
        loaded = restarted.warm_from_store()

        assert loaded == 3
        assert restarted.size() == 3
        assert restarted.get_cached("pikachu") is restarted.get_cached(25)
        assert upstream.call_count == calls

    def test_warm_from_store_skips_malformed(self, temp_store, upstream):
        first = EntityCache(temp_store, upstream)
        first.get(1)
        first.get(2)
        temp_store.set(record_key(2), "garbage")

        restarted = EntityCache(temp_store, upstream)
        assert restarted.warm_from_store() == 1
        assert restarted.get_cached(2) is None

    def test_refresh_reloads_and_persists(self, cache, upstream, temp_store):
        record = cache.get(25)
        expire(record)
        upstream.set_weight(25, 75)

        refreshed = cache.refresh(record)

        assert refreshed is record
        assert record.weight == 75
        assert not record.is_expired()
        assert record.dirty is False
        assert json.loads(temp_store.get(record_key(25)))["weight"] == 75
        assert cache.get_stats()["refreshes"] == 1

    def test_refresh_reindexes_renamed_record(self, cache, upstream):
        record = cache.get(10)
        upstream.catalog[10]["name"] = "caterpie-galar"

        cache.refresh(record)

        assert cache.get_cached("caterpie-galar") is record
        assert cache.get_cached("caterpie") is None

    def test_refresh_renamed_record_drops_old_name_mapping(self, cache, upstream, temp_store):
        record = cache.get(10)
        upstream.catalog[10]["name"] = "caterpie-galar"

        cache.refresh(record)

        assert temp_store.get(name_key("caterpie")) is None
        assert temp_store.get(name_key("caterpie-galar")) == "10"

    def test_refresh_after_clear_does_not_reindex(self, cache, upstream, temp_store):
        record = cache.get(25)
        cache.clear()
        upstream.set_weight(25, 75)

        cache.refresh(record)

        assert cache.get_cached(25) is None
        assert cache.get_cached("pikachu") is None
        assert json.loads(temp_store.get(record_key(25)))["weight"] == 75

    def test_refresh_of_replaced_instance_keeps_indexes_consistent(self, cache, upstream):
        old = cache.get(25)
        cache.clear()
        new = cache.get(25)
        assert new is not old

        cache.refresh(old)

        assert cache.get_cached(25) is new
        assert cache.get_cached("pikachu") is new
        assert cache.size() == 1

    def test_expired_lists_only_stale_records(self, cache):
        fresh = cache.get(1)
        stale = cache.get(2)
        expire(stale)
        assert cache.expired() == [stale]
        assert fresh not in cache.expired()

    def test_clear_empties_both_indexes(self, cache):
        cache.get(25)
        assert cache.clear() == 1
        assert cache.size() == 0
        assert cache.get_cached("pikachu") is None

    def test_stats(self, cache):
        cache.get(1)
        cache.get(1)
        stats = cache.get_stats()
        assert stats["entries"] == 1
        assert stats["misses"] == 1
        assert stats["hits_memory"] == 1
        assert stats["hit_rate_percent"] == 50.0
