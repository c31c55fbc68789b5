"""
Shared fixtures: a temporary SQLite store and an in-process fake of PokeAPI.
"""
import copy
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import pytest

from pokedex.cache import EntityCache, NotFound, SQLiteStore, TransientUpstreamError
from pokedex.pokeapi_client import IndexEntry, UpstreamSource


def make_payload(
    pokemon_id: int,
    name: str,
    types: Optional[List[str]] = None,
    abilities: Optional[List[str]] = None,
    stats: Optional[Dict[str, int]] = None,
    height: int = 4,
    weight: int = 60,
) -> Dict[str, Any]:
    """Build a payload shaped like PokeAPI's /pokemon/{id} response."""
    types = types or ["normal"]
    abilities = abilities or ["run-away"]
    stats = stats or {"hp": 35, "attack": 55, "defense": 40}
    return {
        "id": pokemon_id,
        "name": name,
        "height": height,
        "weight": weight,
        "types": [{"slot": i + 1, "type": {"name": t}} for i, t in enumerate(types)],
        "abilities": [{"ability": {"name": a}, "is_hidden": False} for a in abilities],
        "stats": [{"base_stat": v, "stat": {"name": k}} for k, v in stats.items()],
    }


CATALOG = {
    1: "bulbasaur",
    2: "ivysaur",
    3: "venusaur",
    4: "charmander",
    5: "charmeleon",
    6: "charizard",
    7: "slowpoke",
    8: "wartortle",
    9: "blastoise",
    10: "caterpie",
}


class FakeUpstream(UpstreamSource):
    """
    Thread-safe fake upstream.

    Tracks every call, the max number of concurrent calls, and the
    (key, start, end) span of each call.
    """

    def __init__(self, delay: float = 0.0):
        self.catalog: Dict[int, Dict[str, Any]] = {}
        self.delay = delay
        self.fail_keys: Set[Union[int, str]] = set()
        self.index_error: Optional[Exception] = None
        self.calls: List[Union[int, str]] = []
        self.spans: List[Tuple[Union[int, str], float, float]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def add(self, pokemon_id: int, name: str, **kwargs) -> None:
        self.catalog[pokemon_id] = make_payload(pokemon_id, name, **kwargs)

    def set_weight(self, pokemon_id: int, weight: int) -> None:
        self.catalog[pokemon_id]["weight"] = weight

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def _lookup(self, key: Union[int, str]) -> Optional[Dict[str, Any]]:
        if isinstance(key, int):
            return self.catalog.get(key)
        for payload in self.catalog.values():
            if payload["name"] == str(key).lower():
                return payload
        return None

    def fetch_by_id_or_name(self, key: Union[int, str]) -> Dict[str, Any]:
        start = time.monotonic()
        with self._lock:
            self.calls.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if key in self.fail_keys:
                raise TransientUpstreamError(f"upstream unavailable for {key}", status_code=503)
            payload = self._lookup(key)
            if payload is None:
                raise NotFound(key)
            return copy.deepcopy(payload)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.spans.append((key, start, time.monotonic()))

    def fetch_index(self) -> List[IndexEntry]:
        if self.index_error is not None:
            raise self.index_error
        return [IndexEntry(name=p["name"], id=i) for i, p in sorted(self.catalog.items())]


@pytest.fixture
def upstream():
    """Fake upstream holding ids 1-10 plus pikachu (#25)."""
    fake = FakeUpstream()
    for pokemon_id, name in CATALOG.items():
        fake.add(pokemon_id, name)
    fake.add(
        25,
        "pikachu",
        types=["electric"],
        abilities=["static", "lightning-rod"],
        stats={"hp": 35, "attack": 55, "defense": 40, "speed": 90},
        height=4,
        weight=60,
    )
    return fake


@pytest.fixture
def temp_store(tmp_path):
    """Create a temporary persistent store for testing."""
    store = SQLiteStore(tmp_path / "test_pokedex.sqlite")
    store.init()
    return store


@pytest.fixture
def cache(temp_store, upstream):
    """Initialized entity cache over the temp store and fake upstream."""
    entity_cache = EntityCache(temp_store, upstream)
    entity_cache.init()
    return entity_cache


def expire(record) -> None:
    """Push a record's last access back past its TTL."""
    record.last_access = time.time() - record.ttl - 1
