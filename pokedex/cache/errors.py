"""
Error taxonomy for the tiered Pokédex cache.
"""
from typing import Optional, Union


class PokedexCacheError(Exception):
    """Base class for every failure raised by the cache and its tiers."""
    pass


class NotFound(PokedexCacheError):
    """Raised when a key has no upstream representation. Never retried."""

    def __init__(self, key: Union[int, str], message: Optional[str] = None):
        self.key = key
        super().__init__(message or f"No Pokémon found for {key!r}")


class TransientUpstreamError(PokedexCacheError):
    """
    Raised when the upstream source is unreachable, rate limited or erroring.

    Retried only by the next sweep tick or hydration pass.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


UpstreamUnavailable = TransientUpstreamError


class StoreError(PokedexCacheError):
    """Raised when the persistent store fails to read or write."""
    pass


class MalformedStoredRecord(PokedexCacheError):
    """Raised when a stored record blob cannot be decoded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        super().__init__(f"Malformed stored record at {key}: {reason}")
