"""
SQLite-backed repository for feeds, items, feed collections and saved searches.

Item guids carry a UNIQUE constraint; ``insert_item`` treats a violation as "already
stored" so concurrent refreshes of the same feed stay idempotent.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from src.services.errors import NotFoundError
from src.services.geo import haversine_km
from src.services.models import Feed, FeedCollection, FeedType, Item, SavedSearch

LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    url TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    subtype TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    refresh_interval INTEGER NOT NULL DEFAULT 15 CHECK (refresh_interval >= 5),
    geocoding_enabled INTEGER NOT NULL DEFAULT 1,
    last_fetched TEXT,
    last_error TEXT,
    item_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    link TEXT NOT NULL,
    pub_date TEXT NOT NULL,
    guid TEXT NOT NULL UNIQUE,
    author TEXT,
    categories TEXT,
    image_url TEXT,
    content_snippet TEXT,
    latitude REAL,
    longitude REAL,
    location TEXT,
    geocoded INTEGER NOT NULL DEFAULT 0,
    read INTEGER NOT NULL DEFAULT 0,
    starred INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    CHECK (geocoded = (latitude IS NOT NULL AND longitude IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS idx_feeds_user ON feeds(user_id);
CREATE INDEX IF NOT EXISTS idx_items_feed_pub ON items(feed_id, pub_date);
CREATE INDEX IF NOT EXISTS idx_items_geocoded ON items(geocoded);
CREATE INDEX IF NOT EXISTS idx_items_geo ON items(latitude, longitude);
CREATE TABLE IF NOT EXISTS collections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT,
    icon TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS collection_feeds (
    collection_id TEXT NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    PRIMARY KEY (collection_id, feed_id)
);
CREATE TABLE IF NOT EXISTS saved_searches (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    filters TEXT NOT NULL,
    is_default INTEGER NOT NULL DEFAULT 0,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    last_used_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_collections_user ON collections(user_id);
CREATE INDEX IF NOT EXISTS idx_saved_searches_user ON saved_searches(user_id);
"""

ITEM_COLUMNS = (
    "id, feed_id, title, description, link, pub_date, guid, author, categories, image_url, "
    "content_snippet, latitude, longitude, location, geocoded, read, starred, created_at"
)


def to_db_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteStore:
    """One shared connection guarded by a re-entrant lock."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.create_function("haversine_km", 4, haversine_km, deterministic=True)
        self.lock = threading.RLock()
        with self.lock:
            self.conn.execute("PRAGMA foreign_keys=ON")
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # ----- feeds -----

    def add_feed(self, feed: Feed) -> Feed:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO feeds (
                    id, user_id, url, name, type, subtype, enabled, refresh_interval,
                    geocoding_enabled, last_fetched, last_error, item_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feed.id,
                    feed.user_id,
                    feed.url,
                    feed.name,
                    feed.type.value,
                    feed.subtype,
                    int(feed.enabled),
                    feed.refresh_interval,
                    int(feed.geocoding_enabled),
                    to_db_time(feed.last_fetched),
                    feed.last_error,
                    feed.item_count,
                    to_db_time(feed.created_at),
                ),
            )
            self.conn.commit()
        return feed

    def save_feed(self, feed: Feed) -> Feed:
        """Persist user-editable settings. Refresh metadata has its own writers below."""
        with self.lock:
            self.conn.execute(
                """
                UPDATE feeds SET url = ?, name = ?, type = ?, subtype = ?, enabled = ?,
                    refresh_interval = ?, geocoding_enabled = ?
                WHERE id = ?
                """,
                (
                    feed.url,
                    feed.name,
                    feed.type.value,
                    feed.subtype,
                    int(feed.enabled),
                    feed.refresh_interval,
                    int(feed.geocoding_enabled),
                    feed.id,
                ),
            )
            self.conn.commit()
        return feed

    def update_refresh_metadata(
        self,
        feed_id: str,
        last_fetched: datetime | None,
        last_error: str | None,
        item_count: int,
    ) -> None:
        """Write only the columns a refresh owns; user-editable settings are left alone."""
        with self.lock:
            self.conn.execute(
                "UPDATE feeds SET last_fetched = ?, last_error = ?, item_count = ? WHERE id = ?",
                (to_db_time(last_fetched), last_error, item_count, feed_id),
            )
            self.conn.commit()

    def record_refresh_error(self, feed_id: str, message: str) -> None:
        with self.lock:
            self.conn.execute("UPDATE feeds SET last_error = ? WHERE id = ?", (message, feed_id))
            self.conn.commit()

    def update_item_count(self, feed_id: str) -> int:
        with self.lock:
            count = self.count_feed_items(feed_id)
            self.conn.execute("UPDATE feeds SET item_count = ? WHERE id = ?", (count, feed_id))
            self.conn.commit()
        return count

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        with self.lock:
            row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return self._row_to_feed(row) if row else None

    def list_feeds(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
        feed_type: FeedType | None = None,
        subtype: str | None = None,
    ) -> list[Feed]:
        sql = "SELECT * FROM feeds WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if enabled is not None:
            sql += " AND enabled = ?"
            params.append(int(enabled))
        if feed_type is not None:
            sql += " AND type = ?"
            params.append(feed_type.value)
        if subtype is not None:
            sql += " AND subtype = ?"
            params.append(subtype)
        sql += " ORDER BY created_at DESC"
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_feed(row) for row in rows]

    def feed_ids(
        self,
        user_id: str | None = None,
        types: Iterable[FeedType] | None = None,
        subtypes: Iterable[str] | None = None,
    ) -> set[str]:
        sql = "SELECT id FROM feeds WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if types:
            values = [FeedType(t).value for t in types]
            sql += f" AND type IN ({_placeholders(values)})"
            params.extend(values)
        if subtypes:
            values = list(subtypes)
            sql += f" AND subtype IN ({_placeholders(values)})"
            params.extend(values)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return {row["id"] for row in rows}

    def delete_feed(self, feed_id: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            self.conn.commit()

    # ----- items -----

    def get_item(self, item_id: str) -> Optional[Item]:
        with self.lock:
            row = self.conn.execute(f"SELECT {ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def find_item_by_guid(self, guid: str) -> Optional[Item]:
        with self.lock:
            row = self.conn.execute(f"SELECT {ITEM_COLUMNS} FROM items WHERE guid = ?", (guid,)).fetchone()
        return self._row_to_item(row) if row else None

    def insert_item(self, item: Item) -> bool:
        """Insert unless the guid is already stored; returns False for a duplicate."""
        with self.lock:
            try:
                self.conn.execute(
                    f"INSERT INTO items ({ITEM_COLUMNS}) VALUES ({_placeholders(ITEM_COLUMNS.split(','))})",
                    (
                        item.id,
                        item.feed_id,
                        item.title,
                        item.description,
                        item.link,
                        to_db_time(item.pub_date),
                        item.guid,
                        item.author,
                        json.dumps(item.categories or []),
                        item.image_url,
                        item.content_snippet,
                        item.latitude,
                        item.longitude,
                        item.location,
                        int(item.geocoded),
                        int(item.read),
                        int(item.starred),
                        to_db_time(item.created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                if "items.guid" in str(exc):
                    return False
                if "FOREIGN KEY" in str(exc):
                    raise NotFoundError(f"Feed with ID {item.feed_id} no longer exists") from exc
                raise
            self.conn.commit()
        return True

    def save_item_state(self, item: Item) -> Item:
        with self.lock:
            self.conn.execute(
                "UPDATE items SET read = ?, starred = ? WHERE id = ?",
                (int(item.read), int(item.starred), item.id),
            )
            self.conn.commit()
        return item

    def delete_item(self, item_id: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
            self.conn.commit()

    def count_feed_items(self, feed_id: str) -> int:
        with self.lock:
            row = self.conn.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,)).fetchone()
        return int(row[0])

    def select_items(
        self,
        where: Sequence[str],
        params: Sequence[Any],
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Item]:
        sql = f"SELECT {ITEM_COLUMNS} FROM items"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY pub_date DESC, created_at DESC"
        args = list(params)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            args.extend([limit, offset])
        with self.lock:
            rows = self.conn.execute(sql, args).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_items(self, where: Sequence[str], params: Sequence[Any]) -> int:
        sql = "SELECT COUNT(*) FROM items"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self.lock:
            row = self.conn.execute(sql, list(params)).fetchone()
        return int(row[0])

    def item_stats(self, feed_ids: Iterable[str]) -> dict[str, int]:
        ids = list(feed_ids)
        if not ids:
            return {"total_items": 0, "geocoded_items": 0, "unread_items": 0}
        with self.lock:
            row = self.conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(geocoded), 0) AS geocoded,
                       COALESCE(SUM(CASE WHEN read = 0 THEN 1 ELSE 0 END), 0) AS unread
                FROM items WHERE feed_id IN ({_placeholders(ids)})
                """,
                ids,
            ).fetchone()
        return {
            "total_items": int(row["total"]),
            "geocoded_items": int(row["geocoded"]),
            "unread_items": int(row["unread"]),
        }

    # ----- collections -----

    def add_collection(self, collection: FeedCollection) -> FeedCollection:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO collections (
                    id, user_id, name, description, color, icon, is_default, sort_order,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    collection.id,
                    collection.user_id,
                    collection.name,
                    collection.description,
                    collection.color,
                    collection.icon,
                    int(collection.is_default),
                    collection.sort_order,
                    to_db_time(collection.created_at),
                    to_db_time(collection.updated_at),
                ),
            )
            self._insert_collection_feeds(collection.id, collection.feed_ids)
            self.conn.commit()
        return collection

    def save_collection(self, collection: FeedCollection) -> FeedCollection:
        with self.lock:
            self.conn.execute(
                """
                UPDATE collections SET name = ?, description = ?, color = ?, icon = ?,
                    is_default = ?, sort_order = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    collection.name,
                    collection.description,
                    collection.color,
                    collection.icon,
                    int(collection.is_default),
                    collection.sort_order,
                    to_db_time(collection.updated_at),
                    collection.id,
                ),
            )
            self.conn.commit()
        return collection

    def get_collection(self, collection_id: str) -> Optional[FeedCollection]:
        with self.lock:
            row = self.conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
            if not row:
                return None
            return self._row_to_collection(row, self._collection_members(collection_id))

    def list_collections(self, user_id: str) -> list[FeedCollection]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM collections WHERE user_id = ? ORDER BY sort_order, name",
                (user_id,),
            ).fetchall()
            return [self._row_to_collection(row, self._collection_members(row["id"])) for row in rows]

    def delete_collection(self, collection_id: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
            self.conn.commit()

    def clear_default_collection(self, user_id: str) -> None:
        with self.lock:
            self.conn.execute("UPDATE collections SET is_default = 0 WHERE user_id = ?", (user_id,))
            self.conn.commit()

    def add_collection_feeds(self, collection_id: str, feed_ids: Iterable[str]) -> None:
        with self.lock:
            try:
                self._insert_collection_feeds(collection_id, feed_ids)
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                raise NotFoundError(f"Collection {collection_id} or one of its feeds no longer exists") from exc
            self.conn.commit()

    def remove_collection_feeds(self, collection_id: str, feed_ids: Iterable[str]) -> None:
        ids = list(feed_ids)
        if not ids:
            return
        with self.lock:
            self.conn.execute(
                f"DELETE FROM collection_feeds WHERE collection_id = ? AND feed_id IN ({_placeholders(ids)})",
                [collection_id, *ids],
            )
            self.conn.commit()

    def collection_feed_ids(self, collection_ids: Iterable[str]) -> set[str]:
        ids = list(collection_ids)
        if not ids:
            return set()
        with self.lock:
            rows = self.conn.execute(
                f"SELECT feed_id FROM collection_feeds WHERE collection_id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        return {row["feed_id"] for row in rows}

    def _insert_collection_feeds(self, collection_id: str, feed_ids: Iterable[str]) -> None:
        self.conn.executemany(
            "INSERT OR IGNORE INTO collection_feeds (collection_id, feed_id) VALUES (?, ?)",
            [(collection_id, feed_id) for feed_id in feed_ids],
        )

    def _collection_members(self, collection_id: str) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT cf.feed_id FROM collection_feeds cf JOIN feeds f ON f.id = cf.feed_id
            WHERE cf.collection_id = ? ORDER BY f.name
            """,
            (collection_id,),
        ).fetchall()
        return [row["feed_id"] for row in rows]

    # ----- saved searches -----

    def add_saved_search(self, search: SavedSearch) -> SavedSearch:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO saved_searches (
                    id, user_id, name, description, filters, is_default, is_pinned, sort_order,
                    last_used_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    search.id,
                    search.user_id,
                    search.name,
                    search.description,
                    json.dumps(search.filters),
                    int(search.is_default),
                    int(search.is_pinned),
                    search.sort_order,
                    to_db_time(search.last_used_at),
                    to_db_time(search.created_at),
                    to_db_time(search.updated_at),
                ),
            )
            self.conn.commit()
        return search

    def save_saved_search(self, search: SavedSearch) -> SavedSearch:
        with self.lock:
            self.conn.execute(
                """
                UPDATE saved_searches SET name = ?, description = ?, filters = ?, is_default = ?,
                    is_pinned = ?, sort_order = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    search.name,
                    search.description,
                    json.dumps(search.filters),
                    int(search.is_default),
                    int(search.is_pinned),
                    search.sort_order,
                    to_db_time(search.updated_at),
                    search.id,
                ),
            )
            self.conn.commit()
        return search

    def touch_saved_search(self, search_id: str, used_at: datetime) -> None:
        with self.lock:
            self.conn.execute(
                "UPDATE saved_searches SET last_used_at = ? WHERE id = ?",
                (to_db_time(used_at), search_id),
            )
            self.conn.commit()

    def get_saved_search(self, search_id: str) -> Optional[SavedSearch]:
        with self.lock:
            row = self.conn.execute("SELECT * FROM saved_searches WHERE id = ?", (search_id,)).fetchone()
        return self._row_to_saved_search(row) if row else None

    def list_saved_searches(self, user_id: str, pinned: bool | None = None) -> list[SavedSearch]:
        sql = "SELECT * FROM saved_searches WHERE user_id = ?"
        params: list[Any] = [user_id]
        if pinned is not None:
            sql += " AND is_pinned = ?"
            params.append(int(pinned))
        sql += " ORDER BY is_pinned DESC, sort_order, name"
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_saved_search(row) for row in rows]

    def delete_saved_search(self, search_id: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM saved_searches WHERE id = ?", (search_id,))
            self.conn.commit()

    def clear_default_saved_search(self, user_id: str) -> None:
        with self.lock:
            self.conn.execute("UPDATE saved_searches SET is_default = 0 WHERE user_id = ?", (user_id,))
            self.conn.commit()

    # ----- row mapping -----

    @staticmethod
    def _row_to_feed(row: sqlite3.Row) -> Feed:
        return Feed(
            id=row["id"],
            user_id=row["user_id"],
            url=row["url"],
            name=row["name"],
            type=FeedType(row["type"]),
            subtype=row["subtype"],
            enabled=bool(row["enabled"]),
            refresh_interval=int(row["refresh_interval"]),
            geocoding_enabled=bool(row["geocoding_enabled"]),
            last_fetched=from_db_time(row["last_fetched"]),
            last_error=row["last_error"],
            item_count=int(row["item_count"]),
            created_at=from_db_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        categories: list[str] = []
        if row["categories"]:
            try:
                categories = list(json.loads(row["categories"]))
            except json.JSONDecodeError:
                categories = []
        return Item(
            id=row["id"],
            feed_id=row["feed_id"],
            title=row["title"],
            description=row["description"],
            link=row["link"],
            pub_date=from_db_time(row["pub_date"]),
            guid=row["guid"],
            author=row["author"],
            categories=categories,
            image_url=row["image_url"],
            content_snippet=row["content_snippet"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            location=row["location"],
            read=bool(row["read"]),
            starred=bool(row["starred"]),
            created_at=from_db_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_collection(row: sqlite3.Row, feed_ids: list[str]) -> FeedCollection:
        return FeedCollection(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            icon=row["icon"],
            is_default=bool(row["is_default"]),
            sort_order=int(row["sort_order"]),
            feed_ids=feed_ids,
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @staticmethod
    def _row_to_saved_search(row: sqlite3.Row) -> SavedSearch:
        return SavedSearch(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            filters=dict(json.loads(row["filters"])),
            is_default=bool(row["is_default"]),
            is_pinned=bool(row["is_pinned"]),
            sort_order=int(row["sort_order"]),
            last_used_at=from_db_time(row["last_used_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
