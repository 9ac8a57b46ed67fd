from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from src.services.enrichment import ItemEnricher
from src.services.feed_fetcher import FeedFetcher
from src.services.geocoding import GeocodeCache, NominatimGeocoder
from src.services.location_extraction import LocationExtractor
from src.services.models import Feed, FeedType, Item
from src.services.refresh import FeedRefreshOrchestrator
from src.services.storage import SQLiteStore
from tests.helpers import BASE_TIME, GEOCODER_URL, FakeSession


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteStore]:
    db = SQLiteStore(tmp_path / "feeds.sqlite")
    yield db
    db.close()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def geocoder(session: FakeSession) -> NominatimGeocoder:
    return NominatimGeocoder(GeocodeCache(), endpoint=GEOCODER_URL, min_interval=0, session=session)


@pytest.fixture
def orchestrator(store: SQLiteStore, session: FakeSession, geocoder: NominatimGeocoder) -> FeedRefreshOrchestrator:
    fetcher = FeedFetcher(session=session)
    enricher = ItemEnricher(LocationExtractor(), geocoder)
    return FeedRefreshOrchestrator(store, fetcher, enricher)


@pytest.fixture
def make_feed(store: SQLiteStore) -> Callable[..., Feed]:
    def _make(user_id: str = "alice", url: str = "https://feeds.test/news.xml", **kwargs: Any) -> Feed:
        kwargs.setdefault("name", f"Feed {url}")
        kwargs.setdefault("type", FeedType.NEWS)
        return store.add_feed(Feed(user_id=user_id, url=url, **kwargs))

    return _make


@pytest.fixture
def make_item(store: SQLiteStore) -> Callable[..., Item]:
    """Insert an item directly; ``hours_ago`` offsets ``pub_date`` from a fixed base time."""
    counter = {"n": 0}

    def _make(feed: Feed, hours_ago: float = 0, **kwargs: Any) -> Item:
        counter["n"] += 1
        n = counter["n"]
        lat = kwargs.pop("latitude", None)
        lon = kwargs.pop("longitude", None)
        item = Item(
            feed_id=feed.id,
            title=kwargs.pop("title", f"Item {n}"),
            link=kwargs.pop("link", f"https://example.com/items/{n}"),
            pub_date=kwargs.pop("pub_date", BASE_TIME - timedelta(hours=hours_ago)),
            guid=kwargs.pop("guid", f"{feed.id}-item-{n}"),
            **kwargs,
        )
        if lat is not None and lon is not None:
            item.set_coordinates(lat, lon)
        assert store.insert_item(item)
        return item

    return _make
