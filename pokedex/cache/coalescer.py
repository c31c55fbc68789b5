"""
Single-flight de-duplication of upstream fetches.

When several threads miss the cache for the same key at once, only the
first one calls upstream; the rest wait and share its outcome.
"""
import threading
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import TransientUpstreamError

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightFetch:
    """An upstream fetch that other callers may join."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    waiters: int = 0


class RequestCoalescer:
    """
    Shares one fetch among concurrent callers asking for the same key.

    The first caller for a key runs fetch_fn; later callers block on the
    in-flight entry until it settles, then get the same record or the same
    exception.
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Max seconds a joining caller waits for the in-flight fetch
        """
        self._in_flight: Dict[str, InFlightFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._joined = 0

    def get_or_fetch(self, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Run fetch_fn for key, or join the fetch already running for it.

        Raises:
            TransientUpstreamError: If waiting on another caller's fetch times out
            Exception: Whatever fetch_fn raised, for initiator and joiners alike
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiters += 1
                self._joined += 1
                is_initiator = False
                logger.debug(f"Joining in-flight fetch for {key} (waiters: {in_flight.waiters})")
            else:
                in_flight = InFlightFetch()
                self._in_flight[key] = in_flight
                is_initiator = True

        if is_initiator:
            result, error = None, None
            try:
                result = fetch_fn()
            except BaseException as e:
                error = e
            finally:
                with self._lock:
                    if self._in_flight.get(key) is in_flight:
                        del self._in_flight[key]
                    if not in_flight.done.is_set():
                        in_flight.result, in_flight.error = result, error
                        in_flight.done.set()

            if error is not None:
                raise error
            return result

        if not in_flight.done.wait(timeout=self._timeout):
            logger.error(f"Timed out waiting on in-flight fetch for {key}")
            raise TransientUpstreamError(
                f"Fetch for {key} did not complete within {self._timeout}s"
            )

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def clear(self) -> int:
        """
        Forget every in-flight fetch and release its waiters.

        Waiters get TransientUpstreamError; the initiators still finish
        their own calls.

        Returns:
            Number of fetches abandoned
        """
        with self._lock:
            pending = list(self._in_flight.items())
            self._in_flight.clear()
            for key, in_flight in pending:
                in_flight.error = TransientUpstreamError(f"Fetch for {key} abandoned on shutdown")
                in_flight.done.set()
        if pending:
            logger.info(f"Released {len(pending)} in-flight fetches")
        return len(pending)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "joined": self._joined,
            }
