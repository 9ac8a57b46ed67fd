import pytest

from src.services.collections import CollectionCreate, CollectionService, CollectionUpdate
from src.services.errors import InvalidFeedError, NotFoundError, ScopeViolation
from src.services.item_query import ItemQuery, ItemQueryEngine


@pytest.fixture
def collections(store) -> CollectionService:
    return CollectionService(store)


def test_create_with_initial_feeds_and_list_in_sort_order(collections, make_feed) -> None:
    world = make_feed(url="https://feeds.test/world.xml", name="World")
    local = make_feed(url="https://feeds.test/local.xml", name="Local")

    later = collections.create_collection("alice", CollectionCreate(name="Later", sort_order=2))
    news = collections.create_collection(
        "alice", CollectionCreate(name="News", sort_order=1, feed_ids=[world.id, local.id])
    )
    collections.create_collection("bob", CollectionCreate(name="Bob's"))

    assert sorted(news.feed_ids) == sorted([world.id, local.id])
    assert [c.id for c in collections.list_collections("alice")] == [news.id, later.id]


def test_only_one_default_collection_per_user(collections) -> None:
    first = collections.create_collection("alice", CollectionCreate(name="First", is_default=True))
    second = collections.create_collection("alice", CollectionCreate(name="Second", is_default=True))

    assert collections.get_collection("alice", first.id).is_default is False
    assert collections.get_default_collection("alice").id == second.id

    collections.update_collection("alice", first.id, CollectionUpdate(is_default=True))

    assert collections.get_collection("alice", second.id).is_default is False
    assert collections.get_default_collection("alice").id == first.id


def test_adding_feeds_checks_ownership_and_ignores_duplicates(collections, make_feed) -> None:
    mine = make_feed(user_id="alice", url="https://feeds.test/mine.xml")
    theirs = make_feed(user_id="bob", url="https://feeds.test/theirs.xml")
    collection = collections.create_collection("alice", CollectionCreate(name="Mine"))

    collections.add_feeds("alice", collection.id, [mine.id])
    updated = collections.add_feeds("alice", collection.id, [mine.id])

    assert updated.feed_ids == [mine.id]
    with pytest.raises(InvalidFeedError):
        collections.add_feeds("alice", collection.id, [theirs.id])
    with pytest.raises(InvalidFeedError):
        collections.create_collection("alice", CollectionCreate(name="Bad", feed_ids=["missing"]))

    assert collections.remove_feeds("alice", collection.id, [mine.id]).feed_ids == []


def test_collection_access_is_scoped_to_owner(collections) -> None:
    collection = collections.create_collection("alice", CollectionCreate(name="Private"))

    with pytest.raises(ScopeViolation):
        collections.get_collection("bob", collection.id)
    with pytest.raises(ScopeViolation):
        collections.delete_collection("bob", collection.id)
    with pytest.raises(NotFoundError):
        collections.get_collection("alice", "missing")

    collections.delete_collection("alice", collection.id)
    with pytest.raises(NotFoundError):
        collections.get_collection("alice", collection.id)


def test_deleting_a_feed_removes_it_from_collections(store, collections, make_feed) -> None:
    feed = make_feed()
    collection = collections.create_collection("alice", CollectionCreate(name="News", feed_ids=[feed.id]))

    store.delete_feed(feed.id)

    assert collections.get_collection("alice", collection.id).feed_ids == []
    assert collections.collections_for_feed("alice", feed.id) == []


def test_collections_for_feed(collections, make_feed) -> None:
    feed = make_feed()
    other = make_feed(url="https://feeds.test/other.xml")
    holds = collections.create_collection("alice", CollectionCreate(name="Holds", feed_ids=[feed.id]))
    collections.create_collection("alice", CollectionCreate(name="Other", feed_ids=[other.id]))

    assert [c.id for c in collections.collections_for_feed("alice", feed.id)] == [holds.id]
    assert collections.feed_ids("alice", holds.id) == [feed.id]


def test_item_queries_filter_by_collection(store, collections, make_feed, make_item) -> None:
    world = make_feed(url="https://feeds.test/world.xml")
    local = make_feed(url="https://feeds.test/local.xml")
    foreign = make_feed(user_id="bob", url="https://feeds.test/bob.xml")
    in_world = make_item(world)
    make_item(local)
    make_item(foreign)
    collection = collections.create_collection("alice", CollectionCreate(name="World", feed_ids=[world.id]))
    engine = ItemQueryEngine(store)
    scope = store.feed_ids(user_id="alice")

    page = engine.find_items(scope, ItemQuery(collection_ids=[collection.id]))

    assert [item.id for item in page.items] == [in_world.id]
    assert engine.find_items(scope, ItemQuery(collection_ids=["missing"])).total == 0
    # Another user's collection never widens the caller's scope.
    bobs = collections.create_collection("bob", CollectionCreate(name="Bob", feed_ids=[foreign.id]))
    assert engine.find_items(scope, ItemQuery(collection_ids=[bobs.id])).total == 0
