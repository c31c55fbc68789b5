"""
Background sweeper that refreshes expired records a few at a time.
"""
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .manager import EntityCache

logger = logging.getLogger("cache.sweeper")


class SweeperState(Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


@dataclass
class SweepResult:
    """What one tick saw and did."""
    expired: int = 0
    selected: List[int] = field(default_factory=list)
    refreshed: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)


class Sweeper:
    """
    Perpetual refresh loop over expired records.

    Each tick samples all expired records, shuffles them, and reloads at
    most `batch_size` of them concurrently through EntityCache.refresh().
    The next tick is only scheduled once the current one has finished,
    so sweeps never overlap.
    """

    def __init__(
        self,
        cache: EntityCache,
        interval_seconds: float = 600.0,
        batch_size: int = 5,
        rng: Optional[random.Random] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._cache = cache
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._rng = rng or random.Random()

        self._state = SweeperState.IDLE
        self._started = False
        self._start_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._sweeps = 0
        self._refreshed_total = 0
        self._failed_total = 0

    @property
    def state(self) -> SweeperState:
        return self._state

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the background loop. Only the first call has any effect.

        Returns:
            True if this call started the loop
        """
        with self._start_lock:
            if self._started:
                return False
            self._started = True
            self._thread = threading.Thread(
                target=self._run, name="cache-sweeper", daemon=True
            )
            self._thread.start()
        logger.info(
            f"Sweeper started (every {self.interval_seconds}s, batch of {self.batch_size})"
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop after the current sweep, if any, completes."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._state = SweeperState.STOPPED

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception as e:
                logger.warning(f"Sweep error: {e}")
        self._state = SweeperState.STOPPED

    def sweep_once(self) -> SweepResult:
        """Run a single tick synchronously."""
        with self._sweep_lock:
            self._state = SweeperState.SAMPLING
            try:
                return self._sweep()
            finally:
                if self._state is not SweeperState.STOPPED:
                    self._state = SweeperState.IDLE

    def _sweep(self) -> SweepResult:
        expired = self._cache.expired()
        result = SweepResult(expired=len(expired))
        if not expired:
            return result

        self._rng.shuffle(expired)
        batch = expired[:self.batch_size]
        result.selected = [record.id for record in batch]

        self._state = SweeperState.REFRESHING
        logger.info(f"Sweeping {len(batch)} of {len(expired)} expired Pokémon...")

        with ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix="cache-sweep"
        ) as executor:
            futures = {executor.submit(self._cache.refresh, record): record for record in batch}
            for future in as_completed(futures):
                record = futures[future]
                try:
                    future.result()
                    result.refreshed.append(record.id)
                    logger.info(f"Reloaded #{record.id} ({record.name})")
                except Exception as e:
                    result.failed[record.id] = str(e) or type(e).__name__
                    logger.warning(f"Failed to reload #{record.id}: {e}")

        self._sweeps += 1
        self._refreshed_total += len(result.refreshed)
        self._failed_total += len(result.failed)
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "running": self.running,
            "sweeps": self._sweeps,
            "refreshed": self._refreshed_total,
            "failed": self._failed_total,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
        }
