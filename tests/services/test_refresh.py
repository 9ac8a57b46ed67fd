import threading

import pytest
import requests

from src.services.errors import FetchError, NotFoundError, ParseError, RefreshCancelled, ScopeViolation
from src.services.feed_fetcher import FeedFetcher
from src.services.refresh import FeedRefreshOrchestrator
from tests.helpers import GEOCODER_URL, FakeResponse, rss_document, rss_item

FEED_URL = "https://feeds.test/news.xml"


def test_georss_item_is_stored_geocoded_without_geocoder(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add_feed(
        FEED_URL,
        rss_document(rss_item("nyc-1", "Subway update", extra="<georss:point>40.7128 -74.0060</georss:point>")),
    )

    outcome = orchestrator.refresh(feed.id)

    assert outcome.new_items == 1
    item = store.find_item_by_guid("nyc-1")
    assert item.geocoded
    assert item.latitude == pytest.approx(40.7128)
    assert item.longitude == pytest.approx(-74.006)
    assert session.calls_to(GEOCODER_URL) == []
    stored = store.get_feed(feed.id)
    assert stored.item_count == 1
    assert stored.last_error is None
    assert stored.last_fetched is not None


def test_items_without_geo_tags_are_geocoded_from_text(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL)
    session.add_feed(
        FEED_URL,
        rss_document(
            rss_item("kyiv-1", "Air raid alert in Kyiv, Ukraine")
            + rss_item("kyiv-2", "Power restored in Kyiv, Ukraine")
            + rss_item("none-1", "markets close higher")
        ),
    )
    session.add_place("Kyiv, Ukraine", 50.4501, 30.5234, "Kyiv, Ukraine")

    outcome = orchestrator.refresh(feed.id)

    assert outcome.new_items == 3
    assert outcome.geocoded == 2
    assert store.find_item_by_guid("kyiv-1").location == "Kyiv, Ukraine"
    assert not store.find_item_by_guid("none-1").geocoded
    # The second mention is a cache hit.
    assert len(session.calls_to(GEOCODER_URL)) == 1


def test_geocoding_failure_still_stores_item(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL)
    session.add_feed(FEED_URL, rss_document(rss_item("x-1", "Fire reported in Springfield")))
    session.add(f"{GEOCODER_URL}?q=Springfield", requests.Timeout("slow"))

    outcome = orchestrator.refresh(feed.id)

    assert outcome.new_items == 1
    item = store.find_item_by_guid("x-1")
    assert not item.geocoded
    assert item.latitude is None and item.longitude is None


def test_refresh_is_idempotent(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add_feed(FEED_URL, rss_document(rss_item("a", "First") + rss_item("b", "Second")))

    first = orchestrator.refresh(feed.id)
    second = orchestrator.refresh(feed.id)

    assert (first.new_items, first.duplicates) == (2, 0)
    assert (second.new_items, second.duplicates) == (0, 2)
    assert store.count_feed_items(feed.id) == 2


def test_timeout_records_error_and_keeps_last_fetched(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add_feed(FEED_URL, rss_document(rss_item("a", "First")))
    orchestrator.refresh(feed.id)
    before = store.get_feed(feed.id).last_fetched

    session.add(FEED_URL, requests.Timeout("read timed out"))
    with pytest.raises(FetchError):
        orchestrator.refresh(feed.id)

    stored = store.get_feed(feed.id)
    assert "Timed out" in stored.last_error
    assert stored.last_fetched == before
    assert stored.item_count == 1


def test_timeout_on_first_fetch_stores_nothing(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL)
    session.add(FEED_URL, requests.Timeout("connect timed out"))

    with pytest.raises(FetchError):
        orchestrator.refresh(feed.id)

    stored = store.get_feed(feed.id)
    assert stored.last_error
    assert stored.last_fetched is None
    assert store.count_feed_items(feed.id) == 0


def test_http_and_parse_failures_are_recorded(store, session, orchestrator, make_feed) -> None:
    broken = make_feed(url="https://feeds.test/gone.xml")
    garbage = make_feed(url="https://feeds.test/garbage.xml")
    session.add("https://feeds.test/gone.xml", FakeResponse(status_code=410))
    session.add("https://feeds.test/garbage.xml", FakeResponse(content=b"plain text, no feed here"))

    with pytest.raises(FetchError):
        orchestrator.refresh(broken.id)
    with pytest.raises(ParseError):
        orchestrator.refresh(garbage.id)

    assert "HTTP 410" in store.get_feed(broken.id).last_error
    assert store.get_feed(garbage.id).last_error
    assert store.get_feed(garbage.id).last_fetched is None


def test_success_clears_previous_error(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add(FEED_URL, FakeResponse(status_code=500))
    with pytest.raises(FetchError):
        orchestrator.refresh(feed.id)

    session.add_feed(FEED_URL, rss_document(rss_item("a", "Back")))
    orchestrator.refresh(feed.id)

    assert store.get_feed(feed.id).last_error is None


def test_concurrent_refreshes_never_duplicate_guids(store, session, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    items = "".join(rss_item(f"g-{n}", f"Story {n}") for n in range(20))
    session.add_feed(FEED_URL, rss_document(items))
    orchestrator = FeedRefreshOrchestrator(store, FeedFetcher(session=session))
    outcomes = []
    start = threading.Barrier(4)

    def worker() -> None:
        start.wait()
        outcomes.append(orchestrator.refresh(feed.id))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(o.new_items for o in outcomes) == 20
    assert sum(o.duplicates for o in outcomes) == 60
    assert store.count_feed_items(feed.id) == 20


def test_cancelled_refresh_leaves_feed_metadata_untouched(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add_feed(FEED_URL, rss_document(rss_item("a", "First")))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RefreshCancelled):
        orchestrator.refresh(feed.id, cancel_event=cancel)

    stored = store.get_feed(feed.id)
    assert stored.last_fetched is None
    assert stored.last_error is None
    assert session.calls_to(FEED_URL) == []


def test_refresh_enforces_feed_ownership(store, orchestrator, make_feed) -> None:
    feed = make_feed(user_id="alice")

    with pytest.raises(ScopeViolation):
        orchestrator.refresh(feed.id, user_id="bob")
    with pytest.raises(NotFoundError):
        orchestrator.refresh("missing")


def test_fetcher_sends_user_agent_and_limits_redirects(session) -> None:
    session.add_feed(FEED_URL, rss_document(""))
    fetcher = FeedFetcher(timeout=7, max_redirects=3, user_agent="Tester/1.0", session=session)

    fetcher.fetch(FEED_URL)

    [call] = session.calls_to(FEED_URL)
    assert call["headers"]["User-Agent"] == "Tester/1.0"
    assert call["timeout"] == 7
    assert session.max_redirects == 3


def test_fetcher_maps_redirect_loops(session) -> None:
    session.add(FEED_URL, requests.TooManyRedirects("loop"))

    with pytest.raises(FetchError, match="Too many redirects"):
        FeedFetcher(session=session).fetch(FEED_URL)


def test_refresh_keeps_settings_edited_during_the_run(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)

    def edited_while_fetching() -> FakeResponse:
        current = store.get_feed(feed.id)
        current.enabled = False
        current.name = "Renamed by user"
        store.save_feed(current)
        return FakeResponse(content=rss_document(rss_item("a", "First")))

    session.add(FEED_URL, edited_while_fetching)

    orchestrator.refresh(feed.id)

    stored = store.get_feed(feed.id)
    assert stored.enabled is False
    assert stored.name == "Renamed by user"
    assert stored.item_count == 1
    assert stored.last_fetched is not None


def test_feed_deleted_during_refresh_raises_not_found(store, session, orchestrator, make_feed) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)

    def deleted_while_fetching() -> FakeResponse:
        store.delete_feed(feed.id)
        return FakeResponse(content=rss_document(rss_item("a", "First")))

    session.add(FEED_URL, deleted_while_fetching)

    with pytest.raises(NotFoundError):
        orchestrator.refresh(feed.id)

    assert store.get_feed(feed.id) is None
    assert store.find_item_by_guid("a") is None


def test_disabled_geocoding_keeps_feed_coordinates_and_skips_text_lookup(
    store, session, orchestrator, make_feed
) -> None:
    feed = make_feed(url=FEED_URL, geocoding_enabled=False)
    session.add_feed(
        FEED_URL,
        rss_document(
            rss_item("flood-1", "Flooding in Kyiv, Ukraine")
            + rss_item("nyc-2", "Subway update", extra="<georss:point>40.7128 -74.0060</georss:point>")
            + rss_item("flood-3", "Flooding in Lviv, Ukraine")
        ),
    )
    session.add_place("Kyiv, Ukraine", 50.4501, 30.5234)
    session.add_place("Lviv, Ukraine", 49.8397, 24.0297)

    outcome = orchestrator.refresh(feed.id)

    assert outcome.new_items == 3
    assert outcome.geocoded == 1
    assert session.calls_to(GEOCODER_URL) == []
    second = store.find_item_by_guid("nyc-2")
    assert second.geocoded
    assert (second.latitude, second.longitude) == (pytest.approx(40.7128), pytest.approx(-74.006))
    for guid in ("flood-1", "flood-3"):
        item = store.find_item_by_guid(guid)
        assert not item.geocoded
        assert item.latitude is None and item.location is None
