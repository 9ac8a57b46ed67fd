"""
User-scoped operations over feeds and items: the surface consumed by the API and CLI.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from src.services.collections import CollectionService
from src.services.config import IngestSettings
from src.services.enrichment import ItemEnricher
from src.services.errors import FeedRefreshError, InvalidFeedError, NotFoundError, ScopeViolation
from src.services.export import MAX_EXPORT_ITEMS, ExportFormat, export_items
from src.services.feed_fetcher import FeedFetcher
from src.services.feed_parser import validate_feed_url
from src.services.geocoding import GeocodeCache, NominatimGeocoder
from src.services.item_query import ItemPage, ItemQuery, ItemQueryEngine, MapItemsQuery
from src.services.location_extraction import build_extractor
from src.services.models import MIN_REFRESH_INTERVAL, DEFAULT_REFRESH_INTERVAL, Feed, FeedType, Item
from src.services.refresh import FeedRefreshOrchestrator, load_feed
from src.services.saved_searches import SavedSearchService
from src.services.scheduler import RefreshReport, RefreshScheduler
from src.services.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


def _check_http_url(value: str) -> str:
    value = value.strip()
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    return value


class FeedCreate(BaseModel):
    url: str
    name: str = Field(..., min_length=1)
    type: FeedType = FeedType.CUSTOM
    subtype: str = ""
    enabled: bool = True
    refresh_interval: int = Field(default=DEFAULT_REFRESH_INTERVAL, ge=MIN_REFRESH_INTERVAL)
    geocoding_enabled: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _check_http_url(value)


class FeedUpdate(BaseModel):
    url: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[FeedType] = None
    subtype: Optional[str] = None
    enabled: Optional[bool] = None
    refresh_interval: Optional[int] = Field(default=None, ge=MIN_REFRESH_INTERVAL)
    geocoding_enabled: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_http_url(value) if value is not None else None


class FeedService:
    def __init__(
        self,
        store: SQLiteStore,
        fetcher: FeedFetcher,
        scheduler: RefreshScheduler,
        query_engine: ItemQueryEngine,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.query_engine = query_engine
        self.collections = CollectionService(store)
        self.saved_searches = SavedSearchService(store, query_engine)

    # ----- feeds -----

    def _validate_url(self, url: str) -> None:
        try:
            validate_feed_url(url, self.fetcher)
        except FeedRefreshError as exc:
            raise InvalidFeedError(f"Invalid RSS feed URL or unable to fetch feed: {exc}") from exc

    def create_feed(self, user_id: str, data: FeedCreate) -> Feed:
        self._validate_url(data.url)
        feed = Feed(user_id=user_id, **data.model_dump())
        self.store.add_feed(feed)
        LOGGER.info("Created feed %s (%s) for user %s", feed.name, feed.id, user_id)
        try:
            self.scheduler.refresh_one(feed.id, user_id=user_id)
        except FeedRefreshError as exc:
            # Already recorded as last_error on the feed.
            LOGGER.warning("Initial refresh of %s failed: %s", feed.name, exc)
        return self.get_feed(user_id, feed.id)

    def list_feeds(
        self,
        user_id: str,
        feed_type: FeedType | None = None,
        subtype: str | None = None,
        enabled: bool | None = None,
    ) -> list[Feed]:
        return self.store.list_feeds(user_id=user_id, enabled=enabled, feed_type=feed_type, subtype=subtype)

    def get_feed(self, user_id: str, feed_id: str) -> Feed:
        return load_feed(self.store, feed_id, user_id)

    def update_feed(self, user_id: str, feed_id: str, data: FeedUpdate) -> Feed:
        feed = self.get_feed(user_id, feed_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "url" in changes and changes["url"] != feed.url:
            self._validate_url(changes["url"])
        for key, value in changes.items():
            setattr(feed, key, value)
        return self.store.save_feed(feed)

    def delete_feed(self, user_id: str, feed_id: str) -> None:
        feed = self.get_feed(user_id, feed_id)
        self.store.delete_feed(feed.id)
        LOGGER.info("Deleted feed %s (%s)", feed.name, feed.id)

    def refresh_feed(self, user_id: str, feed_id: str) -> int:
        return self.scheduler.refresh_one(feed_id, user_id=user_id)

    def refresh_all(self, user_id: str) -> RefreshReport:
        return self.scheduler.refresh_all(user_id=user_id)

    # ----- items -----

    def _scope(self, user_id: str) -> set[str]:
        return self.store.feed_ids(user_id=user_id)

    def list_items(self, user_id: str, query: ItemQuery) -> ItemPage:
        return self.query_engine.find_items(self._scope(user_id), query)

    def list_map_items(self, user_id: str, query: MapItemsQuery) -> list[Item]:
        return self.query_engine.find_map_items(self._scope(user_id), query)

    def get_item(self, user_id: str, item_id: str) -> Item:
        item = self.store.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Item with ID {item_id} not found")
        feed = self.store.get_feed(item.feed_id)
        if feed is None or feed.user_id != user_id:
            raise ScopeViolation(f"Item {item_id} is not accessible to user {user_id}")
        return item

    def mark_read(self, user_id: str, item_id: str, read: bool = True) -> Item:
        item = self.get_item(user_id, item_id)
        item.read = read
        return self.store.save_item_state(item)

    def toggle_star(self, user_id: str, item_id: str) -> Item:
        item = self.get_item(user_id, item_id)
        item.starred = not item.starred
        return self.store.save_item_state(item)

    def delete_item(self, user_id: str, item_id: str) -> None:
        item = self.get_item(user_id, item_id)
        self.store.delete_item(item.id)
        self.store.update_item_count(item.feed_id)

    def get_stats(self, user_id: str) -> dict[str, int]:
        feed_ids = self._scope(user_id)
        stats = {"total_feeds": len(feed_ids)}
        stats.update(self.store.item_stats(feed_ids))
        return stats

    def export_items(
        self,
        user_id: str,
        fmt: ExportFormat | str,
        query: ItemQuery | None = None,
        item_ids: list[str] | None = None,
        include_metadata: bool = False,
        fields: list[str] | None = None,
    ) -> str:
        if item_ids:
            items = [self.get_item(user_id, item_id) for item_id in item_ids]
        else:
            filters = (query or ItemQuery()).model_dump(exclude={"limit", "offset"})
            # Exports are capped by MAX_EXPORT_ITEMS, not the page size limit.
            page_query = ItemQuery.model_construct(**filters, limit=MAX_EXPORT_ITEMS, offset=0)
            items = self.query_engine.find_items(self._scope(user_id), page_query).items
        feeds = {feed.id: feed for feed in self.store.list_feeds(user_id=user_id)}
        return export_items(items, fmt, include_metadata=include_metadata, fields=fields, feeds=feeds)


def build_feed_service(settings: IngestSettings, store: SQLiteStore | None = None) -> FeedService:
    store = store or SQLiteStore(settings.db_path)
    fetcher = FeedFetcher(
        timeout=settings.fetch_timeout,
        max_redirects=settings.max_redirects,
        user_agent=settings.feed_user_agent,
    )
    geocoder = NominatimGeocoder(
        GeocodeCache(settings.geocode_cache_size),
        endpoint=settings.geocoder_endpoint,
        user_agent=settings.geocoder_user_agent,
        timeout=settings.geocoder_timeout,
        min_interval=settings.geocoder_min_interval,
    )
    enricher = ItemEnricher(build_extractor(settings.use_gazetteer), geocoder)
    orchestrator = FeedRefreshOrchestrator(store, fetcher, enricher)
    scheduler = RefreshScheduler(
        store,
        orchestrator,
        max_workers=settings.refresh_workers,
        interval_minutes=settings.refresh_interval_minutes,
    )
    return FeedService(store, fetcher, scheduler, ItemQueryEngine(store))
