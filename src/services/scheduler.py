"""
Manual and periodic refresh triggers.

``refresh_all`` fans feeds out over a bounded thread pool and collects a per-feed outcome
into a ``RefreshReport``; one failing feed never stops the others.
"""

from __future__ import annotations

import concurrent.futures as _fut
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta

from src.services.errors import FeedIngestError, RefreshCancelled
from src.services.models import Feed, utcnow
from src.services.refresh import FeedRefreshOrchestrator, RefreshOutcome
from src.services.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 10
DEFAULT_WORKERS = 4
MAX_WORKERS = 8


@dataclass
class RefreshReport:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    new_items: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def to_serializable(self) -> dict[str, object]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "new_items": self.new_items,
            "errors": dict(self.errors),
        }


class RefreshScheduler:
    def __init__(
        self,
        store: SQLiteStore,
        orchestrator: FeedRefreshOrchestrator,
        max_workers: int = DEFAULT_WORKERS,
        interval_minutes: float = DEFAULT_INTERVAL_MINUTES,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.max_workers = max(1, min(MAX_WORKERS, int(max_workers or 1)))
        self.interval_minutes = interval_minutes
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def refresh_one(self, feed_id: str, user_id: str | None = None) -> int:
        """Refresh a single feed; errors propagate to the caller."""
        return self.orchestrator.refresh(feed_id, user_id=user_id).new_items

    def refresh_all(
        self,
        user_id: str | None = None,
        respect_interval: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> RefreshReport:
        feeds = self.store.list_feeds(user_id=user_id, enabled=True)
        report = RefreshReport()
        now = utcnow()
        tolerance = timedelta(minutes=self.interval_minutes)
        due: list[Feed] = []
        for feed in feeds:
            if respect_interval and not feed.is_due(now, tolerance):
                report.skipped += 1
                continue
            due.append(feed)

        LOGGER.info("Refreshing %s enabled feeds (%s not due)...", len(due), report.skipped)
        if not due:
            return report

        with _fut.ThreadPoolExecutor(max_workers=min(self.max_workers, len(due))) as ex:
            futures = {
                ex.submit(self.orchestrator.refresh, feed.id, None, cancel_event): feed
                for feed in due
            }
            for fu in _fut.as_completed(futures):
                self._collect(report, futures[fu], fu)

        LOGGER.info(
            "Feed refresh completed: %s successful, %s failed, %s skipped, %s new items",
            report.succeeded,
            report.failed,
            report.skipped,
            report.new_items,
        )
        return report

    @staticmethod
    def _collect(report: RefreshReport, feed: Feed, fu: _fut.Future) -> None:
        try:
            outcome: RefreshOutcome = fu.result()
        except RefreshCancelled:
            report.skipped += 1
            return
        except FeedIngestError as exc:
            LOGGER.error('Error refreshing feed "%s" (%s): %s', feed.name, feed.id, exc)
            report.failed += 1
            report.errors[feed.id] = str(exc)
            return
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception('Unexpected error refreshing feed "%s" (%s)', feed.name, feed.id)
            report.failed += 1
            report.errors[feed.id] = str(exc) or exc.__class__.__name__
            return
        report.succeeded += 1
        report.new_items += outcome.new_items

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """Refresh every ``interval_minutes`` until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        LOGGER.info("Starting scheduled feed refresh every %s minutes", self.interval_minutes)
        while not stop_event.is_set():
            try:
                self.refresh_all(respect_interval=True, cancel_event=stop_event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduled feed refresh failed.")
            if stop_event.wait(self.interval_minutes * 60):
                break
        LOGGER.info("Scheduled feed refresh stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="feed-refresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 30) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
