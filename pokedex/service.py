"""
Pokédex service - wires the entity cache, hydrator and sweeper together.

One explicitly constructed instance per process, passed to whoever needs it.
"""
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from config.settings import settings
from pokedex.cache import (
    BulkHydrator,
    EntityCache,
    HydrationReport,
    PersistentStore,
    PokemonRecord,
    SQLiteStore,
    Sweeper,
    ttl_policy_from_settings,
)
from pokedex.cache.core import Key
from pokedex.pokeapi_client import PokeAPIClient, UpstreamSource

logger = logging.getLogger("pokedex.service")


class PokedexService:
    """
    Exposed surface of the cache for the HTTP layer and scripts.

    Lifecycle:
        service = PokedexService(store, upstream)
        service.init(hydrate=True)   # store ready, warm, hydrate, start sweeper
        ...
        service.shutdown()
    """

    def __init__(
        self,
        store: PersistentStore,
        upstream: UpstreamSource,
        cache: Optional[EntityCache] = None,
        sweep_interval_seconds: float = 600.0,
        sweep_batch_size: int = 5,
        hydrate_concurrency: int = 50,
        hydrate_delay_seconds: float = 0.1,
    ):
        self.upstream = upstream
        self.cache = cache or EntityCache(store, upstream)
        self.hydrator = BulkHydrator(self.cache)
        self.sweeper = Sweeper(
            self.cache,
            interval_seconds=sweep_interval_seconds,
            batch_size=sweep_batch_size,
        )
        self.hydrate_concurrency = hydrate_concurrency
        self.hydrate_delay_seconds = hydrate_delay_seconds

        self._cancel_hydration = threading.Event()
        self._hydration_thread: Optional[threading.Thread] = None
        self.last_hydration: Optional[HydrationReport] = None

    # ----- lifecycle -----

    def init(self, hydrate: bool = False, background: bool = True) -> None:
        """
        Prepare the cache, load persisted records and start the sweeper.

        Args:
            hydrate: Also hydrate the full upstream catalog
            background: Run that hydration on its own thread
        """
        self.cache.init()
        self.cache.warm_from_store()

        if hydrate:
            if background:
                self._hydration_thread = threading.Thread(
                    target=self._hydrate_catalog, name="cache-hydration", daemon=True
                )
                self._hydration_thread.start()
            else:
                self._hydrate_catalog()

        self.sweeper.start()

    def _hydrate_catalog(self) -> None:
        try:
            self.last_hydration = self.hydrate_from_index(
                self.hydrate_concurrency, self.hydrate_delay_seconds
            )
        except Exception as e:
            logger.error(f"Catalog hydration failed: {e}")

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel hydration, stop the sweeper and close the cache."""
        self._cancel_hydration.set()
        if self._hydration_thread is not None:
            self._hydration_thread.join(timeout)
        self.sweeper.stop(timeout)
        self.cache.shutdown()
        close = getattr(self.upstream, "close", None)
        if callable(close):
            close()

    # ----- exposed operations -----

    def get(self, key: Key) -> PokemonRecord:
        return self.cache.get(key)

    def size(self) -> int:
        return self.cache.size()

    def serialize_all(self) -> List[Dict[str, Any]]:
        return self.cache.serialize_all()

    def hydrate(
        self,
        worklist: Iterable[Key],
        concurrency: int = 10,
        delay: float = 0.1,
    ) -> HydrationReport:
        return self.hydrator.hydrate(
            worklist, concurrency, delay, cancel_event=self._cancel_hydration
        )

    def hydrate_from_index(self, concurrency: int = 10, delay: float = 0.1) -> HydrationReport:
        return self.hydrator.hydrate_from_index(
            concurrency, delay, cancel_event=self._cancel_hydration
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache.get_stats()
        stats["sweeper"] = self.sweeper.get_stats()
        if self.last_hydration is not None:
            stats["last_hydration"] = self.last_hydration.to_dict()
        return stats


def build_service() -> PokedexService:
    """Build a service from the configured settings."""
    store = SQLiteStore(settings.cache_db_path)
    upstream = PokeAPIClient()
    cache = EntityCache(
        store,
        upstream,
        ttl_policy=ttl_policy_from_settings(),
        coalesce_timeout=settings.coalesce_timeout_seconds,
    )
    return PokedexService(
        store,
        upstream,
        cache=cache,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        sweep_batch_size=settings.sweep_batch_size,
        hydrate_concurrency=settings.hydrate_concurrency,
        hydrate_delay_seconds=settings.hydrate_delay_seconds,
    )
