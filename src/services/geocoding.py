"""
Geocoding helper backed by a bounded in-process cache and OpenStreetMap's Nominatim API.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

import requests

from src.services.errors import GeocodeError
from src.services.geo import valid_coordinates

LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "GeoFeedIngestor/1.0 (geocoder)"
DEFAULT_TIMEOUT = 5
DEFAULT_CACHE_SIZE = 1000


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    location: str


class GeocodeCache:
    """Place name -> coordinates, bounded with oldest-inserted-first eviction.

    Lookups do not refresh an entry's position. Shared by every refresh worker,
    so all access goes through one lock.
    """

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, GeocodeResult] = OrderedDict()
        self.lock = threading.Lock()

    @staticmethod
    def _key(place: str) -> str:
        return place.strip().lower()

    def get(self, place: str) -> Optional[GeocodeResult]:
        with self.lock:
            return self._entries.get(self._key(place))

    def set(self, place: str, result: GeocodeResult) -> None:
        key = self._key(place)
        with self.lock:
            if key in self._entries:
                self._entries[key] = result
                return
            self._entries[key] = result
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                LOGGER.debug("Evicted geocode cache entry '%s'", evicted)

    def keys(self) -> list[str]:
        with self.lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def __contains__(self, place: object) -> bool:
        if not isinstance(place, str):
            return False
        with self.lock:
            return self._key(place) in self._entries


class NominatimGeocoder:
    """Resolve place names through the public Nominatim endpoint, caching successes."""

    def __init__(
        self,
        cache: GeocodeCache,
        endpoint: str = DEFAULT_ENDPOINT,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        min_interval: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.cache = cache
        self.endpoint = endpoint
        self.user_agent = user_agent
        self.timeout = timeout
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self._last_request = 0.0
        self._throttle_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "service_hits": 0,
            "failures": 0,
        }

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def geocode(self, place: str | None) -> Optional[GeocodeResult]:
        """Never raises: a failure or no-match means "could not geocode this time"."""
        if not place or not place.strip():
            return None
        query = place.strip()
        cached = self.cache.get(query)
        if cached:
            LOGGER.debug("Cache hit for location: %s", query)
            self._count("cache_hits")
            return cached
        try:
            result = self._fetch(query)
        except GeocodeError as exc:
            LOGGER.warning("Failed to geocode '%s': %s", query, exc)
            self._count("failures")
            return None
        if result is None:
            LOGGER.debug("No geocode match for '%s'", query)
            self._count("failures")
            return None
        self.cache.set(query, result)
        self._count("service_hits")
        LOGGER.debug("Geocoded %s to %s, %s", query, result.latitude, result.longitude)
        return result

    def clear_cache(self) -> None:
        self.cache.clear()
        LOGGER.info("Geocoding cache cleared")

    def _wait_for_slot(self) -> None:
        with self._throttle_lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()

    def _fetch(self, query: str) -> Optional[GeocodeResult]:
        self._wait_for_slot()
        params = {
            "q": query,
            "format": "json",
            "limit": 1,
        }
        headers = {
            "User-Agent": self.user_agent,
        }
        try:
            response = self.session.get(self.endpoint, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            results = response.json()
        except requests.RequestException as exc:
            raise GeocodeError(f"request failed: {exc}") from exc
        except ValueError as exc:
            raise GeocodeError("response was not valid JSON") from exc
        if not isinstance(results, list) or not results:
            return None
        return self._to_result(results[0], query)

    @staticmethod
    def _to_result(payload: Any, query: str) -> GeocodeResult:
        if not isinstance(payload, dict):
            raise GeocodeError(f"unexpected payload {payload!r}")
        try:
            latitude = float(payload["lat"])
            longitude = float(payload["lon"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodeError(f"payload missing coordinates: {payload!r}") from exc
        if valid_coordinates(latitude, longitude) is None:
            raise GeocodeError(f"coordinates out of range: {latitude}, {longitude}")
        return GeocodeResult(
            latitude=latitude,
            longitude=longitude,
            location=str(payload.get("display_name") or query),
        )
