"""
TTL jitter policy for cached records.

Every record draws its own TTL uniformly from a wide window so that records
loaded together by a bulk hydration do not all expire in the same sweep.
"""
import random
from dataclasses import dataclass
from typing import Optional

from config.settings import settings


HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class TTLPolicy:
    """Bounds (in seconds) of the uniform TTL draw."""
    min_seconds: float = 12 * HOUR
    max_seconds: float = 7 * DAY

    def __post_init__(self):
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")

    def draw(self, rng: Optional[random.Random] = None) -> float:
        """Draw a TTL in seconds."""
        uniform = rng.uniform if rng is not None else random.uniform
        return uniform(self.min_seconds, self.max_seconds)


DEFAULT_TTL_POLICY = TTLPolicy()


def ttl_policy_from_settings() -> TTLPolicy:
    """Build the TTL policy from the configured bounds."""
    return TTLPolicy(
        min_seconds=settings.ttl_min_seconds,
        max_seconds=settings.ttl_max_seconds,
    )
