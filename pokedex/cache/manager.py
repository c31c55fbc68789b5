"""
Tiered entity cache: memory, then persistent store, then upstream.
"""
import json
import threading
import logging
from typing import Any, Dict, List, Optional, Set

from .coalescer import RequestCoalescer
from .core import Key, PokemonRecord
from .errors import MalformedStoredRecord, NotFound, PokedexCacheError
from .store import ALL_IDS_KEY, PersistentStore, name_key, record_key
from .ttl_policies import DEFAULT_TTL_POLICY, TTLPolicy

logger = logging.getLogger("cache.manager")


def normalize_key(key: Key) -> Key:
    """
    Canonical form of a lookup key.

    Ints are ids. Strings of digits are ids too; any other string is a
    name, compared case-insensitively.
    """
    if isinstance(key, bool):
        raise TypeError("key must be an int id or a str name")
    if isinstance(key, int):
        return key
    if not isinstance(key, str):
        raise TypeError("key must be an int id or a str name")

    stripped = key.strip()
    if not stripped:
        raise NotFound(key, "Empty Pokémon key")
    if stripped.isdigit():
        return int(stripped)
    return stripped.lower()


class EntityCache:
    """
    Authoritative in-memory view of Pokémon records plus the fill path.

    - id and name indexes always point at the same record instance
    - misses fall through to the persistent store, then upstream
    - concurrent upstream misses for one key share a single fetch
    - records are only ever refreshed in place, through refresh()
    """

    def __init__(
        self,
        store: PersistentStore,
        upstream,
        ttl_policy: Optional[TTLPolicy] = None,
        coalesce_timeout: float = 30.0,
    ):
        """
        Args:
            store: Second-tier durable key-value store
            upstream: UpstreamSource used for misses and reloads
            ttl_policy: TTL jitter bounds for new and reloaded records
            coalesce_timeout: Max seconds to wait on another caller's fetch
        """
        self._store = store
        self._upstream = upstream
        self._ttl_policy = ttl_policy or DEFAULT_TTL_POLICY
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)

        # The index pair; every mutation holds _index_lock for both maps
        self._by_id: Dict[int, PokemonRecord] = {}
        self._by_name: Dict[str, PokemonRecord] = {}
        self._index_lock = threading.RLock()

        self._known_ids: Set[int] = set()
        self._manifest_lock = threading.Lock()

        self._lifecycle_lock = threading.Lock()
        self._initialized = False
        self._closed = False

        self._stats = {
            "hits_memory": 0,
            "hits_store": 0,
            "misses": 0,
            "upstream_failures": 0,
            "malformed_records": 0,
            "refreshes": 0,
        }
        self._stats_lock = threading.Lock()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init(self) -> None:
        """Initialize the store and load the known-id manifest. Idempotent."""
        with self._lifecycle_lock:
            if self._initialized:
                return
            if self._closed:
                raise PokedexCacheError("Entity cache has been shut down")
            self._store.init()
            self._known_ids = self._read_manifest()
            self._initialized = True
            logger.info(f"Entity cache initialized ({len(self._known_ids)} known ids in store)")

    def shutdown(self) -> None:
        """
        Stop serving reads and drop coalescer state.

        In-memory records are kept for inspection. Callers still waiting on
        an in-flight fetch are released with TransientUpstreamError.
        """
        with self._lifecycle_lock:
            self._closed = True
        self._coalescer.clear()
        logger.info(f"Entity cache shut down with {self.size()} records in memory")

    def _ensure_ready(self) -> None:
        if self._closed:
            raise PokedexCacheError("Entity cache has been shut down")
        if not self._initialized:
            self.init()

    @property
    def upstream(self):
        return self._upstream

    @property
    def ttl_policy(self) -> TTLPolicy:
        return self._ttl_policy

    # ========================================================================
    # Read / fill path
    # ========================================================================

    def get(self, key: Key) -> PokemonRecord:
        """
        Get a record by id or name, filling from the store or upstream.

        Raises:
            NotFound: Upstream has no such Pokémon
            TransientUpstreamError: Upstream failed; nothing was written
            StoreError: The persistent store failed
        """
        self._ensure_ready()
        key = normalize_key(key)

        record = self.get_cached(key)
        if record is not None:
            self._bump("hits_memory")
            logger.debug(f"CACHE HIT (memory): {key}")
            return record

        record = self._load_from_store(key)
        if record is not None:
            self._bump("hits_store")
            logger.debug(f"CACHE HIT (store): {key}")
            return record

        flight_key = f"id:{key}" if isinstance(key, int) else f"name:{key}"
        return self._coalescer.get_or_fetch(flight_key, lambda: self._fetch_from_upstream(key))

    def get_cached(self, key: Key) -> Optional[PokemonRecord]:
        """Memory-only lookup. Never performs I/O."""
        key = normalize_key(key)
        with self._index_lock:
            if isinstance(key, int):
                return self._by_id.get(key)
            return self._by_name.get(key)

    def _load_from_store(self, key: Key) -> Optional[PokemonRecord]:
        """Second tier. A missing name mapping or a bad blob is a miss."""
        if isinstance(key, str):
            raw_id = self._store.get(name_key(key))
            if raw_id is None:
                return None
            try:
                record_id = int(raw_id)
            except ValueError:
                logger.warning(f"Ignoring malformed name mapping {name_key(key)} -> {raw_id!r}")
                return None

            resident = self.get_cached(record_id)
            if resident is not None:
                return resident
        else:
            record_id = key

        stored_key = record_key(record_id)
        raw = self._store.get(stored_key)
        if raw is None:
            return None

        try:
            record = self._decode(stored_key, raw)
        except MalformedStoredRecord as e:
            self._bump("malformed_records")
            logger.warning(f"{e} - treating as cache miss")
            return None

        if record.id != record_id:
            self._bump("malformed_records")
            logger.warning(f"Stored record at {stored_key} has id {record.id} - treating as cache miss")
            return None

        return self._insert(record)

    def _fetch_from_upstream(self, key: Key) -> PokemonRecord:
        """Third tier. Persists before inserting so failures leave memory untouched."""
        # Another flight may have filled this key since our memory check
        resident = self.get_cached(key)
        if resident is not None:
            return resident

        logger.info(f"CACHE MISS: {key}")
        self._bump("misses")
        try:
            record = PokemonRecord.create(key, self._upstream, self._ttl_policy)
        except PokedexCacheError as e:
            self._bump("upstream_failures")
            logger.debug(f"Upstream fetch failed for {key}: {e}")
            raise

        resident = self.get_cached(record.id)
        if resident is not None:
            # Loaded under its other key meanwhile; keep the resident instance
            return self._insert(resident)

        self._persist(record)
        return self._insert(record)

    def _decode(self, stored_key: str, raw: str) -> PokemonRecord:
        try:
            return PokemonRecord.from_json(raw, self._ttl_policy)
        except (ValueError, TypeError) as e:
            raise MalformedStoredRecord(stored_key, str(e)) from e

    def _insert(self, record: PokemonRecord) -> PokemonRecord:
        """
        Add a record to both indexes atomically.

        If the id is already resident, the resident instance wins and is
        returned, so only one instance per id ever exists.
        """
        with self._index_lock:
            existing = self._by_id.get(record.id)
            if existing is not None:
                if existing.name_key and existing.name_key not in self._by_name:
                    self._by_name[existing.name_key] = existing
                return existing

            self._by_id[record.id] = record
            if record.name_key:
                self._by_name[record.name_key] = record
            return record

    # ========================================================================
    # Persistence glue
    # ========================================================================

    def _persist(self, record: PokemonRecord) -> None:
        """Write the record blob, its name mapping and the updated id manifest."""
        self._store.set(record_key(record.id), record.to_json())
        if record.name:
            self._store.set(name_key(record.name), str(record.id))

        with self._manifest_lock:
            if record.id not in self._known_ids:
                known = self._known_ids | {record.id}
                self._store.set(ALL_IDS_KEY, json.dumps(sorted(known)))
                self._known_ids = known
        record.dirty = False

    def _read_manifest(self) -> Set[int]:
        raw = self._store.get(ALL_IDS_KEY)
        if raw is None:
            return set()
        try:
            ids = json.loads(raw)
            return {int(i) for i in ids}
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed {ALL_IDS_KEY} manifest: {e}")
            return set()

    def warm_from_store(self) -> int:
        """
        Load every record listed in the store manifest into memory.

        No upstream calls. Missing or malformed blobs are skipped.

        Returns:
            Number of records newly loaded
        """
        self._ensure_ready()
        with self._manifest_lock:
            ids = sorted(self._known_ids)

        loaded = 0
        for record_id in ids:
            if self.get_cached(record_id) is not None:
                continue
            if self._load_from_store(record_id) is not None:
                loaded += 1

        logger.info(f"Warmed {loaded} records from persistent store")
        return loaded

    # ========================================================================
    # Reload path
    # ========================================================================

    def refresh(self, record: PokemonRecord) -> PokemonRecord:
        """
        Reload a resident record from upstream and write it back to the store.

        On failure the record keeps its previous data and TTL. A record that
        was evicted or replaced meanwhile is persisted but never re-indexed.
        """
        self._ensure_ready()
        old_name_key = record.name_key

        record.reload(self._upstream, self._ttl_policy)

        renamed = record.name_key != old_name_key
        with self._index_lock:
            if self._by_id.get(record.id) is record and renamed:
                if old_name_key and self._by_name.get(old_name_key) is record:
                    del self._by_name[old_name_key]
                if record.name_key:
                    self._by_name[record.name_key] = record

        if renamed and old_name_key and self._store.get(name_key(old_name_key)) == str(record.id):
            self._store.delete(name_key(old_name_key))
        self._persist(record)
        self._bump("refreshes")
        return record

    # ========================================================================
    # Views
    # ========================================================================

    def size(self) -> int:
        """Number of records in memory."""
        with self._index_lock:
            return len(self._by_id)

    def all(self) -> List[PokemonRecord]:
        """Snapshot of all in-memory records."""
        with self._index_lock:
            return list(self._by_id.values())

    def expired(self, now: Optional[float] = None) -> List[PokemonRecord]:
        """In-memory records whose TTL has elapsed."""
        return [record for record in self.all() if record.is_expired(now)]

    def serialize_all(self) -> List[Dict[str, Any]]:
        """Public fields of every in-memory record, ordered by id."""
        records = sorted(self.all(), key=lambda r: r.id)
        return [record.to_public_dict() for record in records]

    def clear(self) -> int:
        """
        Drop every in-memory record. The persistent store is untouched.

        Returns:
            Number of records cleared
        """
        with self._index_lock:
            count = len(self._by_id)
            self._by_id.clear()
            self._by_name.clear()
        logger.info(f"Cleared {count} cached records")
        return count

    # ========================================================================
    # Stats
    # ========================================================================

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)

        total_hits = stats["hits_memory"] + stats["hits_store"]
        total_requests = total_hits + stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        stats.update({
            "entries": self.size(),
            "known_ids": len(self._known_ids),
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
        })
        return stats
