"""Configuration management using pydantic-settings."""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PokeAPI configuration
    pokeapi_base_url: str = "https://pokeapi.co/api/v2"
    request_timeout_seconds: float = 30.0
    max_concurrent_requests: int = 10

    # Persistent store
    cache_db_path: Path = Path("./pokedex-cache.sqlite")

    # Per-record TTL jitter window (12 hours to 7 days)
    ttl_min_seconds: int = 60 * 60 * 12
    ttl_max_seconds: int = 60 * 60 * 24 * 7

    # Background sweeper
    sweep_interval_seconds: float = 600.0
    sweep_batch_size: int = 5

    # Startup hydration
    hydrate_on_startup: bool = True
    hydrate_concurrency: int = 50
    hydrate_delay_seconds: float = 0.1

    # Max seconds a caller waits on a coalesced upstream fetch
    coalesce_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
