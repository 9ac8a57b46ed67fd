"""
Named, reusable item filters. ``filters`` is stored in the JSON form of ``ItemFilters`` and
validated on every write; applying a search stamps ``last_used_at``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.services.errors import NotFoundError, ScopeViolation
from src.services.item_query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ItemFilters, ItemPage, ItemQuery, ItemQueryEngine
from src.services.models import SavedSearch, utcnow
from src.services.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


class SavedSearchCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    filters: ItemFilters = Field(default_factory=ItemFilters)
    is_default: bool = False
    is_pinned: bool = False
    sort_order: int = Field(default=0, ge=0)


class SavedSearchUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    filters: Optional[ItemFilters] = None
    is_default: Optional[bool] = None
    is_pinned: Optional[bool] = None
    sort_order: Optional[int] = Field(default=None, ge=0)


def _stored_filters(filters: ItemFilters) -> dict[str, Any]:
    return filters.model_dump(mode="json", exclude_none=True)


class SavedSearchService:
    def __init__(self, store: SQLiteStore, query_engine: ItemQueryEngine) -> None:
        self.store = store
        self.query_engine = query_engine

    def create_saved_search(self, user_id: str, data: SavedSearchCreate) -> SavedSearch:
        if data.is_default:
            self.store.clear_default_saved_search(user_id)
        search = SavedSearch(
            user_id=user_id,
            name=data.name,
            description=data.description,
            filters=_stored_filters(data.filters),
            is_default=data.is_default,
            is_pinned=data.is_pinned,
            sort_order=data.sort_order,
        )
        self.store.add_saved_search(search)
        LOGGER.info("Created saved search %s (%s) for user %s", search.name, search.id, user_id)
        return search

    def list_saved_searches(self, user_id: str, pinned: bool | None = None) -> list[SavedSearch]:
        return self.store.list_saved_searches(user_id, pinned=pinned)

    def get_saved_search(self, user_id: str, search_id: str) -> SavedSearch:
        search = self.store.get_saved_search(search_id)
        if search is None:
            raise NotFoundError(f"Saved search with ID {search_id} not found")
        if search.user_id != user_id:
            raise ScopeViolation(f"Saved search {search_id} is not accessible to user {user_id}")
        return search

    def get_default_saved_search(self, user_id: str) -> Optional[SavedSearch]:
        return next((s for s in self.store.list_saved_searches(user_id) if s.is_default), None)

    def update_saved_search(self, user_id: str, search_id: str, data: SavedSearchUpdate) -> SavedSearch:
        search = self.get_saved_search(user_id, search_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True, exclude={"filters"})
        if changes.get("is_default") and not search.is_default:
            self.store.clear_default_saved_search(user_id)
        for key, value in changes.items():
            setattr(search, key, value)
        if data.filters is not None:
            search.filters = _stored_filters(data.filters)
        search.updated_at = utcnow()
        return self.store.save_saved_search(search)

    def delete_saved_search(self, user_id: str, search_id: str) -> None:
        search = self.get_saved_search(user_id, search_id)
        self.store.delete_saved_search(search.id)
        LOGGER.info("Deleted saved search %s (%s)", search.name, search.id)

    def apply_saved_search(self, user_id: str, search_id: str) -> ItemFilters:
        """Return the stored filters and record the use."""
        search = self.get_saved_search(user_id, search_id)
        self.store.touch_saved_search(search.id, utcnow())
        LOGGER.debug("Applied saved search %s", search.id)
        return ItemFilters.model_validate(search.filters)

    def run_saved_search(
        self,
        user_id: str,
        search_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> ItemPage:
        filters = self.apply_saved_search(user_id, search_id)
        query = ItemQuery(**filters.model_dump(), limit=min(limit, MAX_PAGE_SIZE), offset=offset)
        return self.query_engine.find_items(self.store.feed_ids(user_id=user_id), query)
