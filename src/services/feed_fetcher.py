"""
HTTP retrieval of raw feed documents.
"""

from __future__ import annotations

import logging

import requests

from src.services.errors import FetchError

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "GeoFeedIngestor/1.0 (RSS Reader)"
DEFAULT_TIMEOUT = 10
DEFAULT_MAX_REDIRECTS = 5


class FeedFetcher:
    """Download feed bytes with a fixed timeout, redirect limit and User-Agent.

    There is no retry here: the next scheduled refresh is the retry.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()
        self.session.max_redirects = max_redirects

    def fetch(self, url: str) -> bytes:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8",
        }
        LOGGER.debug("Fetching feed %s", url)
        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise FetchError(f"Timed out after {self.timeout}s fetching {url}") from exc
        except requests.TooManyRedirects as exc:
            raise FetchError(f"Too many redirects fetching {url}") from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            raise FetchError(f"HTTP {status} fetching {url}") from exc
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        return response.content
