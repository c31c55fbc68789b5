"""
Tiered Pokémon cache with TTL jitter, request coalescing, bulk hydration and background sweeping.
"""
from .core import PokemonRecord, PUBLIC_FIELDS, parse_api_payload
from .errors import (
    PokedexCacheError,
    NotFound,
    TransientUpstreamError,
    UpstreamUnavailable,
    StoreError,
    MalformedStoredRecord,
)
from .ttl_policies import TTLPolicy, DEFAULT_TTL_POLICY, ttl_policy_from_settings
from .store import PersistentStore, SQLiteStore
from .coalescer import RequestCoalescer
from .manager import EntityCache, normalize_key
from .hydrator import BulkHydrator, HydrationReport
from .sweeper import Sweeper, SweeperState, SweepResult

__all__ = [
    # Records
    "PokemonRecord",
    "PUBLIC_FIELDS",
    "parse_api_payload",
    # Errors
    "PokedexCacheError",
    "NotFound",
    "TransientUpstreamError",
    "UpstreamUnavailable",
    "StoreError",
    "MalformedStoredRecord",
    # TTL policies
    "TTLPolicy",
    "DEFAULT_TTL_POLICY",
    "ttl_policy_from_settings",
    # Persistence
    "PersistentStore",
    "SQLiteStore",
    # Coalescing
    "RequestCoalescer",
    # Cache
    "EntityCache",
    "normalize_key",
    "BulkHydrator",
    "HydrationReport",
    "Sweeper",
    "SweeperState",
    "SweepResult",
]
