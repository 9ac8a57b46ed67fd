import json
from datetime import datetime, timezone

import pytest

from src.services.export import DEFAULT_CSV_FIELDS, export_items
from src.services.models import Feed, FeedType, Item

PUB = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def make_items() -> tuple[Feed, list[Item]]:
    feed = Feed(user_id="alice", url="https://feeds.test/x.xml", name="Quakes", type=FeedType.DISASTER)
    located = Item(
        feed_id=feed.id,
        title="M5.1 near Tokyo, Japan",
        link="https://example.com/1",
        pub_date=PUB,
        guid="q1",
        categories=["earthquake", "japan"],
        starred=True,
    )
    located.set_coordinates(35.68, 139.69, "Tokyo, Japan")
    plain = Item(feed_id=feed.id, title='Quote "this", please', link="https://example.com/2", pub_date=PUB, guid="q2")
    return feed, [located, plain]


def test_json_export_includes_location_only_for_geocoded_items() -> None:
    feed, items = make_items()

    payload = json.loads(export_items(items, "json", include_metadata=True, feeds={feed.id: feed}))

    assert payload["metadata"]["total_items"] == 2
    assert payload["metadata"]["format"] == "json"
    first, second = payload["items"]
    assert (first["latitude"], first["longitude"], first["location"]) == (35.68, 139.69, "Tokyo, Japan")
    assert "latitude" not in second
    assert first["feed"] == {"id": feed.id, "name": "Quakes", "type": "disaster", "subtype": ""}


def test_json_export_can_select_fields() -> None:
    _, items = make_items()

    payload = json.loads(export_items(items, "json", fields=["title", "latitude"]))

    assert "metadata" not in payload
    assert payload["items"] == [
        {"title": "M5.1 near Tokyo, Japan", "latitude": 35.68},
        {"title": 'Quote "this", please'},
    ]


def test_csv_export_quotes_and_flattens_values() -> None:
    feed, items = make_items()

    text = export_items(items, "csv", feeds={feed.id: feed})

    lines = text.splitlines()
    assert lines[0] == ",".join(DEFAULT_CSV_FIELDS)
    assert lines[1] == (
        '"M5.1 near Tokyo, Japan",https://example.com/1,2025-01-06T10:00:00+00:00,,Quakes,disaster,'
        '"Tokyo, Japan",35.68,139.69,false,true,earthquake;japan'
    )
    assert lines[2].startswith('"Quote ""this"", please",')


def test_empty_csv_export_is_empty_string() -> None:
    assert export_items([], "csv") == ""
    assert json.loads(export_items([], "json")) == {"items": []}


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        export_items([], "xml")
