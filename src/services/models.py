"""
Domain records for feeds, items and parsed feed documents.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

MIN_REFRESH_INTERVAL = 5
DEFAULT_REFRESH_INTERVAL = 15


class FeedType(str, Enum):
    NEWS = "news"
    SECURITY = "security"
    DISASTER = "disaster"
    MARITIME = "maritime"
    AVIATION = "aviation"
    CONFLICT = "conflict"
    ECONOMICS = "economics"
    SCIENCE = "science"
    HEALTH = "health"
    CUSTOM = "custom"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Feed:
    user_id: str
    url: str
    name: str
    type: FeedType = FeedType.CUSTOM
    subtype: str = ""
    enabled: bool = True
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    geocoding_enabled: bool = True
    last_fetched: datetime | None = None
    last_error: str | None = None
    item_count: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime, tolerance: timedelta = timedelta(0)) -> bool:
        """Whether the refresh interval has elapsed since the last fetch.

        A periodic caller passes its own tick length as ``tolerance`` so a feed that would
        become due before the next tick is refreshed now rather than one tick late.
        """
        if self.last_fetched is None:
            return True
        elapsed = now - self.last_fetched + tolerance
        return elapsed >= timedelta(minutes=self.refresh_interval)

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "url": self.url,
            "name": self.name,
            "type": self.type.value,
            "subtype": self.subtype,
            "enabled": self.enabled,
            "refresh_interval": self.refresh_interval,
            "geocoding_enabled": self.geocoding_enabled,
            "last_fetched": self.last_fetched.isoformat() if self.last_fetched else None,
            "last_error": self.last_error,
            "item_count": self.item_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Item:
    feed_id: str
    title: str
    link: str
    pub_date: datetime
    guid: str
    description: str | None = None
    author: str | None = None
    categories: list[str] = field(default_factory=list)
    image_url: str | None = None
    content_snippet: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location: str | None = None
    read: bool = False
    starred: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def geocoded(self) -> bool:
        # True iff both coordinates are set.
        return self.latitude is not None and self.longitude is not None

    def set_coordinates(self, latitude: float, longitude: float, location: str | None = None) -> None:
        self.latitude = latitude
        self.longitude = longitude
        if location:
            self.location = location

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "pub_date": self.pub_date.isoformat(),
            "guid": self.guid,
            "author": self.author,
            "categories": list(self.categories),
            "image_url": self.image_url,
            "content_snippet": self.content_snippet,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location": self.location,
            "geocoded": self.geocoded,
            "read": self.read,
            "starred": self.starred,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ParsedItem:
    title: str
    link: str
    pub_date: datetime
    guid: str
    description: str | None = None
    author: str | None = None
    categories: list[str] = field(default_factory=list)
    image_url: str | None = None
    content_snippet: str | None = None
    geo_lat: float | None = None
    geo_long: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.geo_lat is not None and self.geo_long is not None


@dataclass
class ParsedFeed:
    title: str
    items: list[ParsedItem]
    description: str | None = None
    link: str | None = None


@dataclass
class FeedCollection:
    """A user-defined group of feeds, usable as an item filter."""

    user_id: str
    name: str
    description: str | None = None
    color: str | None = None
    icon: str | None = None
    is_default: bool = False
    sort_order: int = 0
    feed_ids: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "is_default": self.is_default,
            "sort_order": self.sort_order,
            "feed_ids": list(self.feed_ids),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class SavedSearch:
    """Stored item filters; ``filters`` holds the JSON form of an item filter model."""

    user_id: str
    name: str
    filters: dict[str, Any]
    description: str | None = None
    is_default: bool = False
    is_pinned: bool = False
    sort_order: int = 0
    last_used_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "filters": dict(self.filters),
            "is_default": self.is_default,
            "is_pinned": self.is_pinned,
            "sort_order": self.sort_order,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
