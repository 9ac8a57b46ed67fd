"""
One feed's refresh cycle: fetch -> parse -> dedupe -> enrich -> persist -> feed metadata.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from src.services.enrichment import ItemEnricher
from src.services.errors import FeedRefreshError, NotFoundError, RefreshCancelled, ScopeViolation
from src.services.feed_fetcher import FeedFetcher
from src.services.feed_parser import parse_feed
from src.services.models import Feed, Item, ParsedItem, utcnow
from src.services.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


@dataclass
class RefreshOutcome:
    feed_id: str
    new_items: int = 0
    duplicates: int = 0
    geocoded: int = 0


def build_item(feed: Feed, parsed: ParsedItem) -> Item:
    item = Item(
        feed_id=feed.id,
        title=parsed.title,
        description=parsed.description,
        link=parsed.link,
        pub_date=parsed.pub_date,
        guid=parsed.guid,
        author=parsed.author,
        categories=list(parsed.categories),
        image_url=parsed.image_url,
        content_snippet=parsed.content_snippet,
    )
    if parsed.has_coordinates:
        item.set_coordinates(parsed.geo_lat, parsed.geo_long)
    return item


def load_feed(store: SQLiteStore, feed_id: str, user_id: str | None = None) -> Feed:
    """Fetch a feed, enforcing ownership when ``user_id`` is given."""
    feed = store.get_feed(feed_id)
    if feed is None:
        raise NotFoundError(f"Feed with ID {feed_id} not found")
    if user_id is not None and feed.user_id != user_id:
        raise ScopeViolation(f"Feed {feed_id} is not accessible to user {user_id}")
    return feed


class FeedRefreshOrchestrator:
    def __init__(self, store: SQLiteStore, fetcher: FeedFetcher, enricher: ItemEnricher | None = None) -> None:
        self.store = store
        self.fetcher = fetcher
        self.enricher = enricher

    def refresh(
        self,
        feed_id: str,
        user_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RefreshOutcome:
        feed = load_feed(self.store, feed_id, user_id)
        _check_cancelled(cancel_event, feed)
        LOGGER.info("Refreshing feed: %s", feed.name)

        try:
            fetched_at = utcnow()
            parsed = parse_feed(self.fetcher.fetch(feed.url), fetched_at=fetched_at)
        except FeedRefreshError as exc:
            self._record_failure(feed, str(exc))
            raise
        except Exception as exc:
            LOGGER.exception("Unexpected failure refreshing feed %s", feed.name)
            self._record_failure(feed, str(exc) or exc.__class__.__name__)
            raise

        outcome = RefreshOutcome(feed_id=feed.id)
        for parsed_item in parsed.items:
            # Items inserted before a cancellation stay committed; there is no run-level rollback.
            _check_cancelled(cancel_event, feed)
            self._ingest_item(feed, parsed_item, outcome)

        feed.last_fetched = utcnow()
        feed.last_error = None
        feed.item_count = self.store.count_feed_items(feed.id)
        # Settings may have been edited during the run; only refresh-owned columns are written.
        self.store.update_refresh_metadata(feed.id, feed.last_fetched, None, feed.item_count)
        LOGGER.info(
            "Refreshed %s: %s new items, %s duplicates, %s geocoded",
            feed.name,
            outcome.new_items,
            outcome.duplicates,
            outcome.geocoded,
        )
        return outcome

    def _ingest_item(self, feed: Feed, parsed_item: ParsedItem, outcome: RefreshOutcome) -> None:
        if self.store.find_item_by_guid(parsed_item.guid) is not None:
            outcome.duplicates += 1
            return
        item = build_item(feed, parsed_item)
        if not item.geocoded and feed.geocoding_enabled and self.enricher is not None:
            self.enricher.enrich(item)
        if not self.store.insert_item(item):
            # Lost the race with a concurrent refresh; the unique constraint decides.
            LOGGER.debug("Guid %s inserted concurrently; skipping", item.guid)
            outcome.duplicates += 1
            return
        outcome.new_items += 1
        if item.geocoded:
            outcome.geocoded += 1

    def _record_failure(self, feed: Feed, message: str) -> None:
        LOGGER.warning("Failed to refresh feed %s: %s", feed.name, message)
        self.store.record_refresh_error(feed.id, message)
        feed.last_error = message


def _check_cancelled(cancel_event: threading.Event | None, feed: Feed) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RefreshCancelled(f"Refresh of feed {feed.id} cancelled")
