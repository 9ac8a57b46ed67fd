"""
Compose item filters (scope, feed/collection/type, flags, dates, text, geospatial, paging) into a
single storage query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, Field, model_validator

from src.services.geo import BoundingBox, radius_prefilter
from src.services.models import FeedType, Item, utcnow
from src.services.storage import SQLiteStore, to_db_time

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
DEFAULT_MAP_LIMIT = 500
MAX_MAP_LIMIT = 10000


class MapBounds(BaseModel):
    north: float = Field(..., ge=-90, le=90)
    south: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)
    west: float = Field(..., ge=-180, le=180)

    def to_box(self) -> BoundingBox:
        return BoundingBox(north=self.north, south=self.south, east=self.east, west=self.west)


class ItemFilters(BaseModel):
    feed_ids: Optional[List[str]] = None
    collection_ids: Optional[List[str]] = None
    types: Optional[List[FeedType]] = None
    subtypes: Optional[List[str]] = None
    geocoded: Optional[bool] = None
    read: Optional[bool] = None
    starred: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    search: Optional[str] = None
    near_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    near_lng: Optional[float] = Field(default=None, ge=-180, le=180)
    radius_km: Optional[float] = Field(default=None, ge=0, le=20000, description="Max 20,000 km")

    @model_validator(mode="after")
    def _check_radius(self) -> "ItemFilters":
        parts = (self.near_lat, self.near_lng, self.radius_km)
        if any(p is not None for p in parts) and not all(p is not None for p in parts):
            raise ValueError("near_lat, near_lng and radius_km must be supplied together")
        return self

    @property
    def has_radius(self) -> bool:
        return self.radius_km is not None and self.near_lat is not None and self.near_lng is not None


class ItemQuery(ItemFilters):
    limit: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(default=0, ge=0)


class MapItemsQuery(ItemFilters):
    limit: int = Field(default=DEFAULT_MAP_LIMIT, ge=1, le=MAX_MAP_LIMIT)
    bounds: Optional[MapBounds] = None


@dataclass
class ItemPage:
    items: list[Item]
    total: int

    def to_serializable(self) -> dict[str, Any]:
        return {"items": [item.to_serializable() for item in self.items], "total": self.total}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ItemQueryEngine:
    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def find_items(self, scope_feed_ids: Iterable[str], query: ItemQuery) -> ItemPage:
        built = self._build_where(scope_feed_ids, query)
        if built is None:
            return ItemPage(items=[], total=0)
        where, params = built
        total = self.store.count_items(where, params)
        items = self.store.select_items(where, params, limit=query.limit, offset=query.offset)
        LOGGER.debug("Item query matched %s rows (returning %s)", total, len(items))
        return ItemPage(items=items, total=total)

    def find_map_items(self, scope_feed_ids: Iterable[str], query: MapItemsQuery) -> list[Item]:
        built = self._build_where(scope_feed_ids, query)
        if built is None:
            return []
        where, params = built
        where = where + ["geocoded = 1", "latitude IS NOT NULL", "longitude IS NOT NULL"]
        items = self.store.select_items(where, params, limit=query.limit)
        if query.bounds is not None:
            # Post-filter over the capped page, not part of the storage predicate.
            box = query.bounds.to_box()
            items = [item for item in items if box.contains(item.latitude, item.longitude)]
        return items

    def _build_where(
        self, scope_feed_ids: Iterable[str], filters: ItemFilters
    ) -> tuple[list[str], list[Any]] | None:
        """Return ``(clauses, params)``, or ``None`` when the feed scope is provably empty."""
        allowed = set(scope_feed_ids)
        if filters.feed_ids:
            allowed &= set(filters.feed_ids)
        if filters.collection_ids:
            allowed &= self.store.collection_feed_ids(filters.collection_ids)
        if filters.types or filters.subtypes:
            allowed &= self.store.feed_ids(types=filters.types, subtypes=filters.subtypes)
        if not allowed:
            return None

        ordered = sorted(allowed)
        where = [f"feed_id IN ({', '.join('?' for _ in ordered)})"]
        params: list[Any] = list(ordered)

        for column in ("geocoded", "read", "starred"):
            value = getattr(filters, column)
            if value is not None:
                where.append(f"{column} = ?")
                params.append(int(value))

        if filters.since is not None:
            until = _utc(filters.until) if filters.until is not None else utcnow()
            where.append("pub_date BETWEEN ? AND ?")
            params.extend([to_db_time(_utc(filters.since)), to_db_time(until)])
        elif filters.until is not None:
            where.append("pub_date <= ?")
            params.append(to_db_time(_utc(filters.until)))

        if filters.search and filters.search.strip():
            where.append("title LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.search.strip())}%")

        if filters.has_radius:
            box = radius_prefilter(filters.near_lat, filters.near_lng, filters.radius_km)
            where.append("latitude BETWEEN ? AND ?")
            params.extend([box.south, box.north])
            if box.west > -180.0 or box.east < 180.0:
                where.append("longitude BETWEEN ? AND ?")
                params.extend([box.west, box.east])
            where.append("haversine_km(latitude, longitude, ?, ?) <= ?")
            params.extend([filters.near_lat, filters.near_lng, filters.radius_km])

        return where, params
