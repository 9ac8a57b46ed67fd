"""
Serialize items to JSON or CSV for download.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from src.services.models import Feed, Item, utcnow

MAX_EXPORT_ITEMS = 10000

DEFAULT_CSV_FIELDS = [
    "title",
    "link",
    "pub_date",
    "author",
    "feed_name",
    "feed_type",
    "location",
    "latitude",
    "longitude",
    "read",
    "starred",
    "categories",
]


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


MIME_TYPES = {ExportFormat.JSON: "application/json", ExportFormat.CSV: "text/csv"}


def _field_value(item: Item, field: str, feed: Feed | None) -> Any:
    if field == "feed_name":
        return feed.name if feed else None
    if field == "feed_type":
        return feed.type.value if feed else None
    if field == "feed_subtype":
        return feed.subtype if feed else None
    if field == "geocoded":
        return item.geocoded
    return getattr(item, field, None)


def _item_record(item: Item, feed: Feed | None, fields: Sequence[str] | None) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": item.id,
        "title": item.title,
        "link": item.link,
        "description": item.description,
        "pub_date": item.pub_date.isoformat(),
        "author": item.author,
        "categories": list(item.categories),
        "image_url": item.image_url,
        "read": item.read,
        "starred": item.starred,
    }
    if item.geocoded:
        record.update(location=item.location, latitude=item.latitude, longitude=item.longitude)
    if feed is not None:
        record["feed"] = {"id": feed.id, "name": feed.name, "type": feed.type.value, "subtype": feed.subtype}
    if fields:
        record = {key: record[key] for key in fields if key in record}
    return record


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ";".join(str(v) for v in value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def export_items(
    items: Sequence[Item],
    fmt: ExportFormat | str,
    include_metadata: bool = False,
    fields: Sequence[str] | None = None,
    feeds: Mapping[str, Feed] | None = None,
) -> str:
    try:
        fmt = ExportFormat(fmt)
    except ValueError as exc:
        raise ValueError(f"Unsupported export format: {fmt}") from exc
    feeds = feeds or {}

    if fmt is ExportFormat.JSON:
        payload: dict[str, Any] = {}
        if include_metadata:
            payload["metadata"] = {
                "exported_at": utcnow().isoformat(),
                "total_items": len(items),
                "format": fmt.value,
            }
        payload["items"] = [_item_record(item, feeds.get(item.feed_id), fields) for item in items]
        return json.dumps(payload, indent=2)

    if not items:
        return ""
    columns = list(fields or DEFAULT_CSV_FIELDS)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for item in items:
        feed = feeds.get(item.feed_id)
        writer.writerow([_csv_cell(_field_value(item, column, feed)) for column in columns])
    return buffer.getvalue()
