"""
Exception hierarchy shared by the feed ingestion services.
"""

from __future__ import annotations


class FeedIngestError(Exception):
    """Base class for every error raised by the ingestion services."""


class FeedRefreshError(FeedIngestError):
    """A whole-feed failure; recorded on the feed as ``last_error``."""


class FetchError(FeedRefreshError):
    """Raised when a feed cannot be downloaded (network, timeout, HTTP status)."""


class ParseError(FeedRefreshError):
    """Raised when downloaded bytes are not a usable RSS/Atom document."""


class InvalidFeedError(FeedIngestError):
    """Raised when a feed URL fails validation, or feed ids given to a collection are not the caller's."""


class GeocodeError(FeedIngestError):
    """Raised inside the geocoder only; callers always receive ``None`` instead."""


class RefreshCancelled(FeedIngestError):
    """Raised when a refresh observes the cancellation event."""


class NotFoundError(FeedIngestError):
    """Raised when a feed, item, collection or saved search does not exist."""


class ScopeViolation(FeedIngestError):
    """Raised when a caller references a record owned by another user."""
