"""
Core cache data structures.
"""
import copy
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

from .errors import TransientUpstreamError
from .ttl_policies import DEFAULT_TTL_POLICY, TTLPolicy

if TYPE_CHECKING:
    from pokedex.pokeapi_client import UpstreamSource


Key = Union[int, str]

# Public field name -> record attribute; bookkeeping (lastAccess, ttl, dirty) stays internal
PUBLIC_FIELDS = {
    "id": "id",
    "name": "name",
    "height": "height",
    "weight": "weight",
    "types": "types",
    "abilities": "abilities",
    "baseStats": "base_stats",
}


def parse_api_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten a raw PokeAPI /pokemon payload into record attributes.

    Raises:
        TransientUpstreamError: If the payload is missing required fields
    """
    try:
        return {
            "id": int(data["id"]),
            "name": str(data["name"]),
            "height": data.get("height"),
            "weight": data.get("weight"),
            "types": [t["type"]["name"] for t in data.get("types", [])],
            "abilities": [a["ability"]["name"] for a in data.get("abilities", [])],
            "base_stats": {
                s["stat"]["name"]: int(s["base_stat"]) for s in data.get("stats", [])
            },
        }
    except (KeyError, TypeError, ValueError) as e:
        raise TransientUpstreamError(f"Malformed upstream payload: {e!r}")


@dataclass
class PokemonRecord:
    """
    One cached Pokémon with its own staleness tracking.

    Attributes are only ever rewritten as a whole, by reload().
    """
    id: Optional[int] = None
    name: Optional[str] = None
    height: Optional[int] = None          # decimetres
    weight: Optional[int] = None          # hectograms
    types: List[str] = field(default_factory=list)
    abilities: List[str] = field(default_factory=list)
    base_stats: Dict[str, int] = field(default_factory=dict)

    last_access: float = field(default_factory=time.time)
    ttl: float = 0.0
    dirty: bool = True  # Changed since last written to the persistent store

    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @classmethod
    def create(
        cls,
        key: Key,
        upstream: "UpstreamSource",
        ttl_policy: TTLPolicy = DEFAULT_TTL_POLICY,
    ) -> "PokemonRecord":
        """Fetch a Pokémon by id or name from upstream and build a fresh record."""
        attributes = parse_api_payload(upstream.fetch_by_id_or_name(key))
        record = cls()
        record._apply(attributes)
        record.randomize_ttl(ttl_policy)
        return record

    def reload(
        self,
        upstream: "UpstreamSource",
        ttl_policy: TTLPolicy = DEFAULT_TTL_POLICY,
    ) -> None:
        """
        Re-fetch from upstream and overwrite every attribute.

        The fetch completes before anything is touched, so a failure leaves
        the previous data and TTL in place.
        """
        if self.id is None and self.name is None:
            raise ValueError("Cannot reload a record with neither id nor name")

        key = self.id if self.id is not None else self.name
        attributes = parse_api_payload(upstream.fetch_by_id_or_name(key))
        self._apply(attributes)
        self.dirty = True
        self.randomize_ttl(ttl_policy)

    def _apply(self, attributes: Dict[str, Any]) -> None:
        with self._lock:
            self.id = attributes["id"]
            self.name = attributes["name"]
            self.height = attributes["height"]
            self.weight = attributes["weight"]
            self.types = list(attributes["types"])
            self.abilities = list(attributes["abilities"])
            self.base_stats = dict(attributes["base_stats"])

    def randomize_ttl(self, ttl_policy: TTLPolicy = DEFAULT_TTL_POLICY) -> None:
        """Draw a new TTL and restart the expiry clock."""
        self.ttl = ttl_policy.draw()
        self.last_access = time.time()

    # ----- staleness -----

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True once more than ttl seconds have passed since last_access."""
        if now is None:
            now = time.time()
        return now - self.last_access > self.ttl

    # ----- derived attributes -----

    @property
    def name_key(self) -> Optional[str]:
        """Case-folded name used by the name index."""
        return self.name.lower() if self.name else None

    # ----- serialization -----

    def to_public_dict(self) -> Dict[str, Any]:
        """Public fields only, used for transport to callers."""
        with self._lock:
            # Copy containers so callers never share the record's lists
            return {
                public: copy.copy(getattr(self, attr))
                for public, attr in PUBLIC_FIELDS.items()
            }

    def to_dict(self) -> Dict[str, Any]:
        """Full serialization, including bookkeeping, for the persistent store."""
        data = self.to_public_dict()
        data["lastAccess"] = self.last_access
        data["ttl"] = self.ttl
        data["dirty"] = self.dirty
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        ttl_policy: TTLPolicy = DEFAULT_TTL_POLICY,
    ) -> "PokemonRecord":
        """
        Rebuild a record from its stored form.

        Records stored without TTL bookkeeping get a freshly drawn TTL.

        Raises:
            ValueError: If required fields are missing or have the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        if not isinstance(data.get("id"), int) or isinstance(data.get("id"), bool):
            raise ValueError("id must be an integer")
        name = data.get("name")
        if name is not None and not isinstance(name, str):
            raise ValueError("name must be a string")

        types = data.get("types", [])
        abilities = data.get("abilities", [])
        base_stats = data.get("baseStats", {})
        if not isinstance(types, list) or not isinstance(abilities, list):
            raise ValueError("types and abilities must be lists")
        if not isinstance(base_stats, dict):
            raise ValueError("baseStats must be an object")

        record = cls(
            id=data["id"],
            name=name,
            height=data.get("height"),
            weight=data.get("weight"),
            types=[str(t) for t in types],
            abilities=[str(a) for a in abilities],
            base_stats={str(k): int(v) for k, v in base_stats.items()},
        )

        if "ttl" in data and "lastAccess" in data:
            record.ttl = float(data["ttl"])
            record.last_access = float(data["lastAccess"])
        else:
            record.randomize_ttl(ttl_policy)
        record.dirty = False
        return record

    @classmethod
    def from_json(
        cls,
        raw: str,
        ttl_policy: TTLPolicy = DEFAULT_TTL_POLICY,
    ) -> "PokemonRecord":
        """Decode a stored JSON blob. Raises ValueError on any malformed input."""
        return cls.from_dict(json.loads(raw), ttl_policy)
