"""
Offline stand-ins for HTTP sessions plus small RSS document builders.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any

import requests

GEOCODER_URL = "https://geocoder.test/search"
BASE_TIME = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

RSS_NAMESPACES = (
    'xmlns:georss="http://www.georss.org/georss" '
    'xmlns:geo="http://www.w3.org/2003/01/geo/wgs84_pos#" '
    'xmlns:media="http://search.yahoo.com/mrss/" '
    'xmlns:content="http://purl.org/rss/1.0/modules/content/" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/"'
)


def rss_document(items_xml: str, title: str = "Test Feed") -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<rss version="2.0" {RSS_NAMESPACES}>\n'
        f"<channel><title>{title}</title><link>https://example.com/</link>"
        "<description>Fixture feed</description>\n"
        f"{items_xml}\n"
        "</channel></rss>"
    ).encode("utf-8")


def rss_item(guid: str, title: str, extra: str = "", description: str = "") -> str:
    return (
        "<item>"
        f"<title>{title}</title>"
        f"<link>https://example.com/{guid}</link>"
        f'<guid isPermaLink="false">{guid}</guid>'
        "<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>"
        f"<description>{description}</description>"
        f"{extra}"
        "</item>"
    )


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", payload: Any = None) -> None:
        self.status_code = status_code
        self.content = content
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self.content.decode("utf-8"))
        return self._payload


def geocode_response(lat: float, lon: float, name: str) -> FakeResponse:
    return FakeResponse(payload=[{"lat": str(lat), "lon": str(lon), "display_name": name}])


class FakeSession:
    """Stands in for ``requests.Session``.

    Routes map a URL (or ``"<url>?q=<query>"`` for geocoder lookups) to a response, an
    exception to raise, or a zero-argument callable producing a response. Unrouted URLs 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.calls: list[dict[str, Any]] = []
        self.max_redirects = 30
        self.lock = threading.Lock()

    def add(self, url: str, response: Any) -> None:
        self.routes[url] = response

    def add_feed(self, url: str, body: bytes) -> None:
        self.routes[url] = FakeResponse(content=body)

    def add_place(self, query: str, lat: float, lon: float, name: str | None = None) -> None:
        self.routes[f"{GEOCODER_URL}?q={query}"] = geocode_response(lat, lon, name or query)

    def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        allow_redirects: bool = True,
    ) -> FakeResponse:
        with self.lock:
            self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        route = None
        if params and "q" in params:
            route = self.routes.get(f"{url}?q={params['q']}")
        if route is None:
            route = self.routes.get(url)
        if route is None:
            if params and "q" in params:
                return FakeResponse(payload=[])
            return FakeResponse(status_code=404)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route()
        return route

    def calls_to(self, url: str) -> list[dict[str, Any]]:
        with self.lock:
            return [call for call in self.calls if call["url"] == url]
