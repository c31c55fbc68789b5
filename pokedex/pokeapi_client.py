"""
PokeAPI client - the upstream source of truth for Pokémon records.

Slow and rate limited: every call is capped by a client-wide semaphore and
failures are translated into the cache error taxonomy.
"""
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import requests

from config.settings import settings
from pokedex.cache.errors import NotFound, TransientUpstreamError

logger = logging.getLogger("pokeapi_client")

INDEX_LIMIT = 100000

_INDEX_URL_ID = re.compile(r"/pokemon/(\d+)/?$")


@dataclass(frozen=True)
class IndexEntry:
    """One row of the upstream catalog listing."""
    name: str
    id: int


class UpstreamSource(ABC):
    """Interface consumed by the entity cache, hydrator and sweeper."""

    @abstractmethod
    def fetch_by_id_or_name(self, key: Union[int, str]) -> Dict[str, Any]:
        """
        Fetch raw record data.

        Raises:
            NotFound: The key has no upstream representation
            TransientUpstreamError: Network, rate limit or server failure
        """
        pass

    @abstractmethod
    def fetch_index(self) -> List[IndexEntry]:
        """List every known record as (name, id)."""
        pass


class PokeAPIClient(UpstreamSource):
    """
    HTTP client for https://pokeapi.co/api/v2.

    Usage:
        client = PokeAPIClient()
        data = client.fetch_by_id_or_name("pikachu")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrent_requests: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.pokeapi_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        # Bounds concurrent upstream requests across all hydration and sweep workers
        self._semaphore = threading.Semaphore(
            max_concurrent_requests or settings.max_concurrent_requests
        )
        self._session = session or requests.Session()
        self._request_count = 0
        self._count_lock = threading.Lock()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        with self._count_lock:
            self._request_count += 1

        with self._semaphore:
            try:
                response = self._session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                logger.warning(f"PokeAPI request failed: {url} - {e}")
                raise TransientUpstreamError(f"Request to {url} failed: {e}") from e

        if response.status_code == 404:
            raise NotFound(path, f"PokeAPI has no resource at {path}")
        if response.status_code >= 400:
            logger.warning(f"PokeAPI error {response.status_code} for {url}")
            raise TransientUpstreamError(
                f"PokeAPI returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientUpstreamError(f"Invalid JSON from {url}: {e}") from e

    def fetch_by_id_or_name(self, key: Union[int, str]) -> Dict[str, Any]:
        """Fetch one Pokémon payload from /pokemon/{id or name}."""
        ident = str(key).strip().lower()
        if not ident:
            raise NotFound(key, "Empty Pokémon key")

        try:
            return self._get(f"pokemon/{ident}")
        except NotFound:
            raise NotFound(key)

    def fetch_index(self) -> List[IndexEntry]:
        """
        Fetch the full catalog listing.

        Entries whose URL does not end in a numeric id are skipped.
        """
        data = self._get("pokemon", params={"limit": INDEX_LIMIT, "offset": 0})
        results = data.get("results", [])
        logger.info(f"Got {len(results)} Pokémon entries from index")

        entries = []
        for row in results:
            match = _INDEX_URL_ID.search(row.get("url", ""))
            if match is None:
                logger.debug(f"Skipping index row without id: {row}")
                continue
            entries.append(IndexEntry(name=row.get("name", ""), id=int(match.group(1))))
        return entries

    @property
    def request_count(self) -> int:
        """Number of upstream requests issued by this client."""
        with self._count_lock:
            return self._request_count

    def close(self) -> None:
        self._session.close()
