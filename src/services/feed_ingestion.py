"""
Command-line entry point for managing feeds and running refreshes.

Usage:
    python3 scripts/ingest_feeds.py add-feed --user alice --url https://example.com/rss --name Example
    python3 scripts/ingest_feeds.py refresh --all
    python3 scripts/ingest_feeds.py schedule
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from src.services.config import IngestSettings
from src.services.errors import FeedIngestError
from src.services.feed_service import FeedCreate, FeedService, build_feed_service
from src.services.item_query import ItemQuery
from src.services.models import FeedType

LOGGER = logging.getLogger(__name__)


def _parse_cli_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        msg = f"Invalid date '{value}'. Expected YYYY-MM-DD."
        raise argparse.ArgumentTypeError(msg) from exc


def _parse_cli_end_date(value: str) -> datetime:
    """Inclusive upper bound: the last microsecond of the given UTC day."""
    return _parse_cli_date(value) + timedelta(days=1, microseconds=-1)


def _optional_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise argparse.ArgumentTypeError(f"Expected true/false, got '{value}'.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage RSS/Atom feeds and refresh geocoded items.")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path (default: FEEDS_DB_PATH).")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    parser.add_argument("--workers", type=int, default=None, help="Concurrent feed refreshes (1-8).")
    parser.add_argument(
        "--gazetteer",
        action="store_true",
        help="Append the GeoText gazetteer matcher to the location extraction chain.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-feed", help="Validate and register a feed, then fetch its items.")
    add.add_argument("--user", required=True)
    add.add_argument("--url", required=True)
    add.add_argument("--name", required=True)
    add.add_argument("--type", choices=[t.value for t in FeedType], default=FeedType.CUSTOM.value)
    add.add_argument("--subtype", default="")
    add.add_argument("--refresh-interval", type=int, default=15, help="Minutes between refreshes (>= 5).")
    add.add_argument("--no-geocoding", action="store_true", help="Disable text geocoding for this feed.")

    refresh = sub.add_parser("refresh", help="Refresh one feed, a user's feeds, or every enabled feed.")
    target = refresh.add_mutually_exclusive_group(required=True)
    target.add_argument("--feed-id")
    target.add_argument("--user")
    target.add_argument("--all", action="store_true")
    refresh.add_argument("--owner", help="Owning user id when refreshing a single feed.")

    sub.add_parser("schedule", help="Refresh all enabled feeds on the configured interval until interrupted.")

    items = sub.add_parser("items", help="Print a user's items as JSON lines.")
    items.add_argument("--user", required=True)
    items.add_argument("--type", dest="types", action="append", choices=[t.value for t in FeedType])
    items.add_argument("--subtype", dest="subtypes", action="append")
    items.add_argument("--feed-id", dest="feed_ids", action="append")
    items.add_argument("--read", type=_optional_bool, default=None)
    items.add_argument("--starred", type=_optional_bool, default=None)
    items.add_argument("--geocoded", type=_optional_bool, default=None)
    items.add_argument("--from-date", type=_parse_cli_date, default=None)
    items.add_argument("--to-date", type=_parse_cli_end_date, default=None)
    items.add_argument("--search", default=None)
    items.add_argument("--limit", type=int, default=50)
    items.add_argument("--offset", type=int, default=0)

    stats = sub.add_parser("stats", help="Print feed/item counts for a user.")
    stats.add_argument("--user", required=True)
    return parser


def _run_command(args: argparse.Namespace, service: FeedService) -> int:
    if args.command == "add-feed":
        feed = service.create_feed(
            args.user,
            FeedCreate(
                url=args.url,
                name=args.name,
                type=args.type,
                subtype=args.subtype,
                refresh_interval=args.refresh_interval,
                geocoding_enabled=not args.no_geocoding,
            ),
        )
        print(json.dumps(feed.to_serializable()))
        return 0

    if args.command == "refresh":
        if args.feed_id:
            new_items = service.scheduler.refresh_one(args.feed_id, user_id=args.owner)
            print(json.dumps({"feed_id": args.feed_id, "new_items": new_items}))
            return 0
        report = service.scheduler.refresh_all(user_id=args.user)
        print(json.dumps(report.to_serializable()))
        return 0

    if args.command == "schedule":
        stop_event = threading.Event()
        try:
            service.scheduler.run_forever(stop_event)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; stopping scheduler.")
            stop_event.set()
        return 0

    if args.command == "items":
        query = ItemQuery(
            feed_ids=args.feed_ids,
            types=args.types,
            subtypes=args.subtypes,
            read=args.read,
            starred=args.starred,
            geocoded=args.geocoded,
            since=args.from_date,
            until=args.to_date,
            search=args.search,
            limit=args.limit,
            offset=args.offset,
        )
        page = service.list_items(args.user, query)
        for item in page.items:
            print(json.dumps(item.to_serializable()))
        LOGGER.info("Printed %s of %s matching items", len(page.items), page.total)
        return 0

    if args.command == "stats":
        print(json.dumps(service.get_stats(args.user)))
        return 0

    raise ValueError(f"Unknown command {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    settings = IngestSettings.from_env(dotenv_path=Path(__file__).resolve().parents[2] / ".env")
    if args.db:
        settings.db_path = args.db
    if args.workers:
        settings.refresh_workers = args.workers
    if args.gazetteer:
        settings.use_gazetteer = True
    LOGGER.debug("Running %s with settings %s", args.command, settings)

    service = build_feed_service(settings)
    try:
        return _run_command(args, service)
    except ValidationError as exc:
        LOGGER.error("Invalid arguments: %s", exc)
        return 1
    except FeedIngestError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1
    except Exception:  # noqa: BLE001
        LOGGER.exception("Command %s failed.", args.command)
        return 1
    finally:
        service.store.close()


if __name__ == "__main__":
    sys.exit(main())
