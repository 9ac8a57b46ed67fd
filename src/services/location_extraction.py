"""
Heuristic place-name extraction from item text.

Extraction is an ordered chain of matchers; the first matcher returning a value wins.
Any callable ``str -> str | None`` can be used as a matcher, so gazetteer- or NLP-based
strategies can replace the default regex chain without touching the refresh pipeline.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional, Pattern, Sequence

from geotext import GeoText

LOGGER = logging.getLogger(__name__)

LocationMatcher = Callable[[str], Optional[str]]

_PLACE = r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"
CITY_COUNTRY_PATTERN = re.compile(rf"\b({_PLACE}),\s*([A-Z][a-z]+)\b")
IN_PLACE_PATTERN = re.compile(rf"\bin\s+({_PLACE})\b")
AT_PLACE_PATTERN = re.compile(rf"\bat\s+({_PLACE})\b")
LEADING_PREPOSITION = re.compile(r"^(in|at)\s+", re.IGNORECASE)


class RegexMatcher:
    def __init__(self, pattern: Pattern[str], name: str | None = None) -> None:
        self.pattern = pattern
        self.name = name or pattern.pattern

    def __call__(self, text: str) -> str | None:
        match = self.pattern.search(text)
        if not match:
            return None
        return LEADING_PREPOSITION.sub("", match.group(0)).strip() or None

    def __repr__(self) -> str:
        return f"RegexMatcher({self.name!r})"


class GazetteerMatcher:
    """Return the first city (else country) GeoText recognises in the text."""

    def __call__(self, text: str) -> str | None:
        try:
            geo = GeoText(text)
        except Exception:  # noqa: BLE001
            LOGGER.debug("GeoText failed to parse text snippet.", exc_info=True)
            return None
        for candidate in list(geo.cities) + list(geo.countries):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


def default_matchers() -> list[LocationMatcher]:
    return [
        RegexMatcher(CITY_COUNTRY_PATTERN, "city_country"),
        RegexMatcher(IN_PLACE_PATTERN, "in_place"),
        RegexMatcher(AT_PLACE_PATTERN, "at_place"),
    ]


class LocationExtractor:
    def __init__(self, matchers: Sequence[LocationMatcher] | None = None) -> None:
        self.matchers = list(matchers) if matchers is not None else default_matchers()

    def extract(self, text: str | None) -> str | None:
        if not text:
            return None
        for matcher in self.matchers:
            found = matcher(text)
            if found:
                LOGGER.debug("Location '%s' matched by %r", found, matcher)
                return found
        return None

    def extract_from_item(self, title: str | None, description: str | None) -> str | None:
        """Title first, description as the fallback."""
        return self.extract(title) or self.extract(description)


def build_extractor(use_gazetteer: bool = False) -> LocationExtractor:
    matchers = default_matchers()
    if use_gazetteer:
        matchers.append(GazetteerMatcher())
    return LocationExtractor(matchers)
