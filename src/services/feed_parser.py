"""
Normalize RSS/Atom documents into ``ParsedFeed`` records.

Parsing is delegated to ``feedparser``; this module only decides which of the many
fields an entry may carry wins for each normalized attribute (title, guid, description,
publication date, image and embedded GeoRSS / W3C geo coordinates).
"""

from __future__ import annotations

import calendar
import logging
import math
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import feedparser
from bs4 import BeautifulSoup

from src.services.errors import ParseError
from src.services.feed_fetcher import FeedFetcher
from src.services.geo import valid_coordinates
from src.services.models import ParsedFeed, ParsedItem, utcnow

LOGGER = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 500


def _clean_html_fragment(value: str | None) -> str:
    """Best-effort HTML to text converter for summaries/descriptions."""
    if not value:
        return ""
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_date(entry: dict[str, Any]) -> datetime | None:
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        value = entry.get(key)
        if isinstance(value, time.struct_time):
            try:
                return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
            except (OverflowError, ValueError):
                continue
    for key in ("published", "updated", "created"):
        raw = entry.get(key)
        if not isinstance(raw, str) or not raw:
            continue
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            LOGGER.debug("Unable to parse feed date %s", raw, exc_info=True)
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _to_float(value: Any) -> float | None:
    try:
        result = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _parse_georss_point(value: Any) -> tuple[float, float] | None:
    if not isinstance(value, str):
        return None
    parts = value.strip().split()
    if len(parts) != 2:
        return None
    return valid_coordinates(_to_float(parts[0]), _to_float(parts[1]))


def _extract_geo(entry: dict[str, Any]) -> tuple[float, float] | None:
    """Return ``(lat, lon)`` from georss:point or geo:lat/geo:long when present."""
    where = entry.get("where")
    if isinstance(where, dict) and where.get("type") == "Point":
        coords = where.get("coordinates")
        if isinstance(coords, (list, tuple)) and len(coords) >= 2:
            # feedparser stores GeoJSON order: (lon, lat)
            found = valid_coordinates(_to_float(coords[1]), _to_float(coords[0]))
            if found:
                return found
    found = _parse_georss_point(entry.get("georss_point"))
    if found:
        return found
    return valid_coordinates(_to_float(entry.get("geo_lat")), _to_float(entry.get("geo_long")))


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if value:
        return [value]
    return []


def _extract_image(entry: dict[str, Any]) -> str | None:
    for enclosure in _as_list(entry.get("enclosures")):
        if not isinstance(enclosure, dict):
            continue
        mime = str(enclosure.get("type") or "")
        href = enclosure.get("href") or enclosure.get("url")
        if href and mime.startswith("image"):
            return href
    for thumb in _as_list(entry.get("media_thumbnail")):
        if isinstance(thumb, dict) and thumb.get("url"):
            return thumb["url"]
    thumbnail = entry.get("thumbnail")
    if isinstance(thumbnail, dict):
        return thumbnail.get("url") or thumbnail.get("href")
    if isinstance(thumbnail, str) and thumbnail.strip():
        return thumbnail.strip()
    return None


def _categories(entry: dict[str, Any]) -> list[str]:
    terms: list[str] = []
    for tag in _as_list(entry.get("tags")):
        term = tag.get("term") if isinstance(tag, dict) else None
        if isinstance(term, str) and term.strip() and term.strip() not in terms:
            terms.append(term.strip())
    return terms


def _encoded_content(entry: dict[str, Any]) -> str | None:
    for block in _as_list(entry.get("content")):
        if isinstance(block, dict):
            value = _first_text(block.get("value"))
            if value:
                return value
    return None


def parse_entry(entry: dict[str, Any], fetched_at: datetime) -> ParsedItem:
    title = _first_text(entry.get("title")) or "Untitled"
    link = _first_text(entry.get("link"))
    guid = _first_text(entry.get("id"), entry.get("guid"), link)
    if not guid:
        guid = f"{title}-{int(fetched_at.timestamp() * 1000)}"

    content = _encoded_content(entry)
    summary = _first_text(entry.get("summary"), entry.get("description"))
    snippet = _clean_html_fragment(content or summary)[:SNIPPET_MAX_CHARS] or None
    description = content or snippet or summary

    geo = _extract_geo(entry)
    return ParsedItem(
        title=title,
        link=link or "#",
        pub_date=_parse_date(entry) or fetched_at,
        guid=guid,
        description=description,
        author=_first_text(entry.get("author"), entry.get("creator")),
        categories=_categories(entry),
        image_url=_extract_image(entry),
        content_snippet=snippet,
        geo_lat=geo[0] if geo else None,
        geo_long=geo[1] if geo else None,
    )


def parse_feed(raw: bytes, fetched_at: datetime | None = None) -> ParsedFeed:
    """Parse raw feed bytes; raise ``ParseError`` for anything that is not RSS/Atom."""
    fetched_at = fetched_at or utcnow()
    parsed = feedparser.parse(raw)
    if not parsed.get("version"):
        exc = parsed.get("bozo_exception")
        detail = f" ({exc})" if exc else ""
        raise ParseError(f"Unsupported or malformed feed document{detail}")
    if parsed.get("bozo"):
        if not parsed.get("entries") and not parsed.get("feed", {}).get("title"):
            raise ParseError(f"Malformed feed document ({parsed.get('bozo_exception')})")
        # Recoverable issues (encoding overrides, undeclared entities) still yield entries.
        LOGGER.debug("Feed parsed with recoverable issue: %s", parsed.get("bozo_exception"))

    meta = parsed.get("feed", {})
    items = [parse_entry(entry, fetched_at) for entry in parsed.get("entries", [])]
    return ParsedFeed(
        title=_first_text(meta.get("title")) or "Unknown Feed",
        description=_first_text(meta.get("subtitle"), meta.get("description")),
        link=_first_text(meta.get("link")),
        items=items,
    )


def validate_feed_url(url: str, fetcher: FeedFetcher) -> ParsedFeed:
    """Fetch and parse ``url``; raises ``FetchError`` or ``ParseError`` when unusable."""
    return parse_feed(fetcher.fetch(url))

