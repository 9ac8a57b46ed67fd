"""
User-defined feed collections. A collection's id can be passed to item queries as
``collection_ids`` to filter by its member feeds.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from src.services.errors import InvalidFeedError, NotFoundError, ScopeViolation
from src.services.models import FeedCollection, utcnow
from src.services.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


class CollectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: bool = False
    sort_order: int = Field(default=0, ge=0)
    feed_ids: List[str] = Field(default_factory=list)


class CollectionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: Optional[bool] = None
    sort_order: Optional[int] = Field(default=None, ge=0)


class CollectionFeeds(BaseModel):
    feed_ids: List[str] = Field(..., min_length=1)


class CollectionService:
    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def _check_feeds(self, user_id: str, feed_ids: list[str]) -> None:
        missing = set(feed_ids) - self.store.feed_ids(user_id=user_id)
        if missing:
            raise InvalidFeedError(f"Some feeds not found or do not belong to you: {', '.join(sorted(missing))}")

    def create_collection(self, user_id: str, data: CollectionCreate) -> FeedCollection:
        self._check_feeds(user_id, data.feed_ids)
        if data.is_default:
            self.store.clear_default_collection(user_id)
        collection = FeedCollection(user_id=user_id, **data.model_dump())
        self.store.add_collection(collection)
        LOGGER.info("Created collection %s (%s) for user %s", collection.name, collection.id, user_id)
        return self.get_collection(user_id, collection.id)

    def list_collections(self, user_id: str) -> list[FeedCollection]:
        return self.store.list_collections(user_id)

    def get_collection(self, user_id: str, collection_id: str) -> FeedCollection:
        collection = self.store.get_collection(collection_id)
        if collection is None:
            raise NotFoundError(f"Collection with ID {collection_id} not found")
        if collection.user_id != user_id:
            raise ScopeViolation(f"Collection {collection_id} is not accessible to user {user_id}")
        return collection

    def get_default_collection(self, user_id: str) -> Optional[FeedCollection]:
        return next((c for c in self.store.list_collections(user_id) if c.is_default), None)

    def update_collection(self, user_id: str, collection_id: str, data: CollectionUpdate) -> FeedCollection:
        collection = self.get_collection(user_id, collection_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if changes.get("is_default") and not collection.is_default:
            self.store.clear_default_collection(user_id)
        for key, value in changes.items():
            setattr(collection, key, value)
        collection.updated_at = utcnow()
        self.store.save_collection(collection)
        return self.get_collection(user_id, collection_id)

    def delete_collection(self, user_id: str, collection_id: str) -> None:
        collection = self.get_collection(user_id, collection_id)
        self.store.delete_collection(collection.id)
        LOGGER.info("Deleted collection %s (%s)", collection.name, collection.id)

    def add_feeds(self, user_id: str, collection_id: str, feed_ids: list[str]) -> FeedCollection:
        collection = self.get_collection(user_id, collection_id)
        self._check_feeds(user_id, feed_ids)
        self.store.add_collection_feeds(collection.id, feed_ids)
        return self.get_collection(user_id, collection_id)

    def remove_feeds(self, user_id: str, collection_id: str, feed_ids: list[str]) -> FeedCollection:
        collection = self.get_collection(user_id, collection_id)
        self.store.remove_collection_feeds(collection.id, feed_ids)
        return self.get_collection(user_id, collection_id)

    def collections_for_feed(self, user_id: str, feed_id: str) -> list[FeedCollection]:
        return [c for c in self.store.list_collections(user_id) if feed_id in c.feed_ids]

    def feed_ids(self, user_id: str, collection_id: str) -> list[str]:
        return list(self.get_collection(user_id, collection_id).feed_ids)
