"""
FastAPI app exposing feed management, item queries and map data over the SQLite store.

Authentication is handled upstream; the caller's user id arrives in the ``X-User-Id`` header.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from src.services.collections import CollectionCreate, CollectionFeeds, CollectionUpdate
from src.services.config import IngestSettings
from src.services.errors import FeedRefreshError, InvalidFeedError, NotFoundError, ScopeViolation
from src.services.export import MIME_TYPES, ExportFormat
from src.services.feed_service import FeedCreate, FeedService, FeedUpdate, build_feed_service
from src.services.item_query import DEFAULT_MAP_LIMIT, ItemFilters, ItemQuery, MapBounds, MapItemsQuery
from src.services.models import Feed, FeedCollection, FeedType, Item, SavedSearch
from src.services.saved_searches import SavedSearchCreate, SavedSearchUpdate

LOGGER = logging.getLogger("feeds_api")
if not LOGGER.handlers:
    LOGGER.setLevel(logging.INFO)
    LOG_PATH = Path("logs")
    LOG_PATH.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(LOG_PATH / "api_requests.log")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler.setFormatter(formatter)
    LOGGER.addHandler(file_handler)


@lru_cache(maxsize=1)
def get_service() -> FeedService:
    return build_feed_service(IngestSettings.from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = IngestSettings.from_env()
    scheduler = None
    if settings.run_scheduler:
        scheduler = get_service().scheduler
        scheduler.start()
    yield
    if scheduler is not None:
        scheduler.stop()


class FeedOut(BaseModel):
    id: str
    url: str
    name: str
    type: FeedType
    subtype: str
    enabled: bool
    refresh_interval: int
    geocoding_enabled: bool
    last_fetched: Optional[datetime] = None
    last_error: Optional[str] = None
    item_count: int
    created_at: datetime

    @classmethod
    def from_feed(cls, feed: Feed) -> "FeedOut":
        return cls(
            id=feed.id,
            url=feed.url,
            name=feed.name,
            type=feed.type,
            subtype=feed.subtype,
            enabled=feed.enabled,
            refresh_interval=feed.refresh_interval,
            geocoding_enabled=feed.geocoding_enabled,
            last_fetched=feed.last_fetched,
            last_error=feed.last_error,
            item_count=feed.item_count,
            created_at=feed.created_at,
        )


class ItemOut(BaseModel):
    id: str
    feed_id: str
    title: str
    description: Optional[str] = None
    link: str
    pub_date: datetime
    guid: str
    author: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    content_snippet: Optional[str] = None
    latitude: Optional[float] = Field(None, description="Latitude in decimal degrees")
    longitude: Optional[float] = Field(None, description="Longitude in decimal degrees")
    location: Optional[str] = None
    geocoded: bool
    read: bool
    starred: bool
    created_at: datetime

    @classmethod
    def from_item(cls, item: Item) -> "ItemOut":
        return cls.model_validate(item.to_serializable())


class ItemPageOut(BaseModel):
    items: List[ItemOut]
    total: int


class RefreshOut(BaseModel):
    message: str
    new_items: int


class RefreshAllOut(BaseModel):
    message: str
    succeeded: int
    failed: int
    skipped: int
    new_items: int
    errors: dict[str, str]


class StatsOut(BaseModel):
    total_feeds: int
    total_items: int
    geocoded_items: int
    unread_items: int


class CollectionOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_default: bool
    sort_order: int
    feed_ids: List[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_collection(cls, collection: FeedCollection) -> "CollectionOut":
        return cls.model_validate(collection.to_serializable())


class SavedSearchOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    filters: dict
    is_default: bool
    is_pinned: bool
    sort_order: int
    last_used_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_saved_search(cls, search: SavedSearch) -> "SavedSearchOut":
        return cls.model_validate(search.to_serializable())


class ReadIn(BaseModel):
    read: bool = True


class ExportIn(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    include_metadata: bool = False
    fields: Optional[List[str]] = None
    item_ids: Optional[List[str]] = None
    filters: Optional[ItemQuery] = None


app = FastAPI(title="Geo Feed Ingestion API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ScopeViolation)
async def _forbidden(request: Request, exc: ScopeViolation) -> JSONResponse:
    LOGGER.warning("Scope violation on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidFeedError)
async def _invalid_feed(request: Request, exc: InvalidFeedError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(FeedRefreshError)
async def _refresh_failed(request: Request, exc: FeedRefreshError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})


def _build_query(model: type[BaseModel], **values: object):
    try:
        return model(**{key: value for key, value in values.items() if value is not None})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/feeds", response_model=FeedOut, status_code=201)
def create_feed(
    payload: FeedCreate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> FeedOut:
    LOGGER.info("Creating feed url=%s for user=%s", payload.url, user_id)
    return FeedOut.from_feed(service.create_feed(user_id, payload))


@app.get("/api/feeds", response_model=list[FeedOut])
def list_feeds(
    type: Optional[FeedType] = Query(default=None),
    subtype: Optional[str] = Query(default=None),
    enabled: Optional[bool] = Query(default=None),
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> list[FeedOut]:
    feeds = service.list_feeds(user_id, feed_type=type, subtype=subtype, enabled=enabled)
    return [FeedOut.from_feed(feed) for feed in feeds]


@app.post("/api/feeds/refresh-all", response_model=RefreshAllOut)
def refresh_all_feeds(
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> RefreshAllOut:
    report = service.refresh_all(user_id)
    return RefreshAllOut(message="Feed refresh completed", **report.to_serializable())


@app.get("/api/feeds/{feed_id}", response_model=FeedOut)
def get_feed(
    feed_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> FeedOut:
    return FeedOut.from_feed(service.get_feed(user_id, feed_id))


@app.put("/api/feeds/{feed_id}", response_model=FeedOut)
def update_feed(
    feed_id: str,
    payload: FeedUpdate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> FeedOut:
    return FeedOut.from_feed(service.update_feed(user_id, feed_id, payload))


@app.delete("/api/feeds/{feed_id}", status_code=204)
def delete_feed(
    feed_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> Response:
    service.delete_feed(user_id, feed_id)
    return Response(status_code=204)


@app.post("/api/feeds/{feed_id}/refresh", response_model=RefreshOut)
def refresh_feed(
    feed_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> RefreshOut:
    new_items = service.refresh_feed(user_id, feed_id)
    return RefreshOut(message="Feed refreshed successfully", new_items=new_items)


@app.get("/api/items", response_model=ItemPageOut)
def list_items(
    feed_ids: Optional[List[str]] = Query(default=None),
    collection_ids: Optional[List[str]] = Query(default=None),
    types: Optional[List[FeedType]] = Query(default=None),
    subtypes: Optional[List[str]] = Query(default=None),
    geocoded: Optional[bool] = Query(default=None),
    read: Optional[bool] = Query(default=None),
    starred: Optional[bool] = Query(default=None),
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    near_lat: Optional[float] = Query(default=None),
    near_lng: Optional[float] = Query(default=None),
    radius_km: Optional[float] = Query(default=None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemPageOut:
    query = _build_query(
        ItemQuery,
        feed_ids=feed_ids,
        collection_ids=collection_ids,
        types=types,
        subtypes=subtypes,
        geocoded=geocoded,
        read=read,
        starred=starred,
        since=since,
        until=until,
        search=search,
        near_lat=near_lat,
        near_lng=near_lng,
        radius_km=radius_km,
        limit=limit,
        offset=offset,
    )
    page = service.list_items(user_id, query)
    return ItemPageOut(items=[ItemOut.from_item(item) for item in page.items], total=page.total)


@app.get("/api/items/{item_id}", response_model=ItemOut)
def get_item(
    item_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemOut:
    return ItemOut.from_item(service.get_item(user_id, item_id))


@app.put("/api/items/{item_id}/read", response_model=ItemOut)
def mark_item_read(
    item_id: str,
    payload: ReadIn,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemOut:
    return ItemOut.from_item(service.mark_read(user_id, item_id, payload.read))


@app.put("/api/items/{item_id}/star", response_model=ItemOut)
def toggle_item_star(
    item_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemOut:
    return ItemOut.from_item(service.toggle_star(user_id, item_id))


@app.delete("/api/items/{item_id}", status_code=204)
def delete_item(
    item_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> Response:
    service.delete_item(user_id, item_id)
    return Response(status_code=204)


@app.get("/api/map-items", response_model=list[ItemOut])
def list_map_items(
    feed_ids: Optional[List[str]] = Query(default=None),
    collection_ids: Optional[List[str]] = Query(default=None),
    types: Optional[List[FeedType]] = Query(default=None),
    subtypes: Optional[List[str]] = Query(default=None),
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
    near_lat: Optional[float] = Query(default=None),
    near_lng: Optional[float] = Query(default=None),
    radius_km: Optional[float] = Query(default=None),
    north: Optional[float] = Query(default=None),
    south: Optional[float] = Query(default=None),
    east: Optional[float] = Query(default=None),
    west: Optional[float] = Query(default=None),
    limit: int = Query(DEFAULT_MAP_LIMIT, ge=1, le=10000),
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> list[ItemOut]:
    edges = (north, south, east, west)
    bounds = None
    if any(edge is not None for edge in edges):
        if not all(edge is not None for edge in edges):
            raise HTTPException(status_code=400, detail="bounds require north, south, east and west")
        bounds = _build_query(MapBounds, north=north, south=south, east=east, west=west)
    LOGGER.info("Fetching map items user=%s bounds=%s limit=%s", user_id, edges, limit)
    query = _build_query(
        MapItemsQuery,
        feed_ids=feed_ids,
        collection_ids=collection_ids,
        types=types,
        subtypes=subtypes,
        since=since,
        until=until,
        near_lat=near_lat,
        near_lng=near_lng,
        radius_km=radius_km,
        bounds=bounds,
        limit=limit,
    )
    return [ItemOut.from_item(item) for item in service.list_map_items(user_id, query)]


@app.get("/api/stats", response_model=StatsOut)
def get_stats(
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> StatsOut:
    return StatsOut(**service.get_stats(user_id))


@app.post("/api/export")
def export(
    payload: ExportIn,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> Response:
    body = service.export_items(
        user_id,
        payload.format,
        query=payload.filters,
        item_ids=payload.item_ids,
        include_metadata=payload.include_metadata,
        fields=payload.fields,
    )
    filename = f"rss-export-{datetime.now(timezone.utc).date().isoformat()}.{payload.format.value}"
    return Response(
        content=body,
        media_type=MIME_TYPES[payload.format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/collections", response_model=list[CollectionOut])
def list_collections(
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> list[CollectionOut]:
    return [CollectionOut.from_collection(c) for c in service.collections.list_collections(user_id)]


@app.post("/api/collections", response_model=CollectionOut, status_code=201)
def create_collection(
    payload: CollectionCreate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> CollectionOut:
    return CollectionOut.from_collection(service.collections.create_collection(user_id, payload))


@app.get("/api/collections/{collection_id}", response_model=CollectionOut)
def get_collection(
    collection_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> CollectionOut:
    return CollectionOut.from_collection(service.collections.get_collection(user_id, collection_id))


@app.put("/api/collections/{collection_id}", response_model=CollectionOut)
def update_collection(
    collection_id: str,
    payload: CollectionUpdate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> CollectionOut:
    return CollectionOut.from_collection(service.collections.update_collection(user_id, collection_id, payload))


@app.delete("/api/collections/{collection_id}", status_code=204)
def delete_collection(
    collection_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> Response:
    service.collections.delete_collection(user_id, collection_id)
    return Response(status_code=204)


@app.post("/api/collections/{collection_id}/feeds", response_model=CollectionOut)
def add_collection_feeds(
    collection_id: str,
    payload: CollectionFeeds,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> CollectionOut:
    collection = service.collections.add_feeds(user_id, collection_id, payload.feed_ids)
    return CollectionOut.from_collection(collection)


@app.delete("/api/collections/{collection_id}/feeds", response_model=CollectionOut)
def remove_collection_feeds(
    collection_id: str,
    payload: CollectionFeeds,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> CollectionOut:
    collection = service.collections.remove_feeds(user_id, collection_id, payload.feed_ids)
    return CollectionOut.from_collection(collection)


@app.get("/api/saved-searches", response_model=list[SavedSearchOut])
def list_saved_searches(
    pinned: Optional[bool] = Query(default=None),
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> list[SavedSearchOut]:
    searches = service.saved_searches.list_saved_searches(user_id, pinned=pinned)
    return [SavedSearchOut.from_saved_search(s) for s in searches]


@app.post("/api/saved-searches", response_model=SavedSearchOut, status_code=201)
def create_saved_search(
    payload: SavedSearchCreate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> SavedSearchOut:
    return SavedSearchOut.from_saved_search(service.saved_searches.create_saved_search(user_id, payload))


@app.get("/api/saved-searches/{search_id}", response_model=SavedSearchOut)
def get_saved_search(
    search_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> SavedSearchOut:
    return SavedSearchOut.from_saved_search(service.saved_searches.get_saved_search(user_id, search_id))


@app.put("/api/saved-searches/{search_id}", response_model=SavedSearchOut)
def update_saved_search(
    search_id: str,
    payload: SavedSearchUpdate,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> SavedSearchOut:
    search = service.saved_searches.update_saved_search(user_id, search_id, payload)
    return SavedSearchOut.from_saved_search(search)


@app.delete("/api/saved-searches/{search_id}", status_code=204)
def delete_saved_search(
    search_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> Response:
    service.saved_searches.delete_saved_search(user_id, search_id)
    return Response(status_code=204)


@app.post("/api/saved-searches/{search_id}/apply", response_model=ItemFilters)
def apply_saved_search(
    search_id: str,
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemFilters:
    return service.saved_searches.apply_saved_search(user_id, search_id)


@app.get("/api/saved-searches/{search_id}/items", response_model=ItemPageOut)
def run_saved_search(
    search_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Header(..., alias="X-User-Id"),
    service: FeedService = Depends(get_service),
) -> ItemPageOut:
    page = service.saved_searches.run_saved_search(user_id, search_id, limit=limit, offset=offset)
    return ItemPageOut(items=[ItemOut.from_item(item) for item in page.items], total=page.total)
