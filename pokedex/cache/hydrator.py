"""
Bulk hydration of the entity cache in paced, fixed-size batches.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from .core import Key
from .manager import EntityCache

logger = logging.getLogger("cache.hydrator")


@dataclass
class HydrationReport:
    """Outcome of one hydration run. Failures are keyed by worklist item."""
    requested: int = 0
    loaded: int = 0
    failed: Dict[Any, str] = field(default_factory=dict)
    batches: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested,
            "loaded": self.loaded,
            "failed": {str(k): v for k, v in self.failed.items()},
            "batches": self.batches,
            "cancelled": self.cancelled,
        }


class BulkHydrator:
    """
    Walks a worklist of ids/names through EntityCache.get().

    Batches run strictly one after another, so at most `concurrency`
    lookups are in flight at any moment. One item failing never affects
    its siblings or later batches.
    """

    def __init__(self, cache: EntityCache):
        self._cache = cache

    def hydrate(
        self,
        worklist: Iterable[Key],
        concurrency: int = 10,
        inter_batch_delay: float = 0.1,
        cancel_event: Optional[threading.Event] = None,
    ) -> HydrationReport:
        """
        Load every key of the worklist into the cache, best effort.

        Args:
            worklist: Ids and/or names to load
            concurrency: Batch size, and so the max number of in-flight lookups
            inter_batch_delay: Seconds to pause between batches
            cancel_event: When set, no further batch is started

        Returns:
            HydrationReport with per-item failures
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        keys = list(worklist)
        report = HydrationReport(requested=len(keys))
        if not keys:
            return report

        logger.info(f"Hydrating {len(keys)} Pokémon (concurrency={concurrency})...")

        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="cache-hydrate"
        ) as executor:
            for start in range(0, len(keys), concurrency):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    break

                batch = keys[start:start + concurrency]
                futures = {executor.submit(self._cache.get, key): key for key in batch}
                for future in as_completed(futures):
                    key = futures[future]
                    try:
                        future.result()
                        report.loaded += 1
                    except Exception as e:
                        report.failed[key] = str(e) or type(e).__name__
                        logger.warning(f"Failed to hydrate {key!r}: {e}")

                report.batches += 1
                done = min(start + concurrency, len(keys))
                logger.info(f"Hydrated {done} / {len(keys)}")

                if done < len(keys) and inter_batch_delay > 0:
                    if cancel_event is not None:
                        if cancel_event.wait(inter_batch_delay):
                            report.cancelled = True
                            break
                    else:
                        time.sleep(inter_batch_delay)

        logger.info(
            f"Hydration {'cancelled' if report.cancelled else 'complete'}: "
            f"{report.loaded} loaded, {len(report.failed)} failed"
        )
        return report

    def hydrate_from_index(
        self,
        concurrency: int = 10,
        inter_batch_delay: float = 0.1,
        cancel_event: Optional[threading.Event] = None,
    ) -> HydrationReport:
        """
        Hydrate every Pokémon in the upstream catalog.

        Raises:
            PokedexCacheError: If the catalog listing itself cannot be fetched
        """
        logger.info("Fetching Pokémon index from upstream...")
        entries = self._cache.upstream.fetch_index()
        return self.hydrate(
            [entry.id for entry in entries],
            concurrency=concurrency,
            inter_batch_delay=inter_batch_delay,
            cancel_event=cancel_event,
        )

    def hydrate_range(
        self,
        count: int,
        concurrency: int = 10,
        inter_batch_delay: float = 0.1,
        cancel_event: Optional[threading.Event] = None,
    ) -> HydrationReport:
        """Hydrate ids 1..count."""
        return self.hydrate(
            range(1, count + 1),
            concurrency=concurrency,
            inter_batch_delay=inter_batch_delay,
            cancel_event=cancel_event,
        )
