"""
Environment-driven settings for the ingestion services.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from src.services import feed_fetcher, geocoding, scheduler

LOGGER = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("datasets/feeds/feeds.sqlite")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class IngestSettings:
    db_path: Path = DEFAULT_DB_PATH
    fetch_timeout: float = feed_fetcher.DEFAULT_TIMEOUT
    max_redirects: int = feed_fetcher.DEFAULT_MAX_REDIRECTS
    feed_user_agent: str = feed_fetcher.DEFAULT_USER_AGENT
    geocoder_endpoint: str = geocoding.DEFAULT_ENDPOINT
    geocoder_user_agent: str = geocoding.DEFAULT_USER_AGENT
    geocoder_timeout: float = geocoding.DEFAULT_TIMEOUT
    geocoder_min_interval: float = 1.0
    geocode_cache_size: int = geocoding.DEFAULT_CACHE_SIZE
    use_gazetteer: bool = False
    refresh_workers: int = scheduler.DEFAULT_WORKERS
    refresh_interval_minutes: float = scheduler.DEFAULT_INTERVAL_MINUTES
    run_scheduler: bool = False

    @classmethod
    def from_env(cls, dotenv_path: Path | None = None) -> "IngestSettings":
        if load_dotenv(dotenv_path=dotenv_path):
            LOGGER.debug("Loaded environment variables from .env file.")
        workers = _env_int("REFRESH_WORKERS", scheduler.DEFAULT_WORKERS)
        return cls(
            db_path=Path(os.getenv("FEEDS_DB_PATH") or DEFAULT_DB_PATH),
            fetch_timeout=_env_float("FEED_FETCH_TIMEOUT", feed_fetcher.DEFAULT_TIMEOUT),
            max_redirects=_env_int("FEED_MAX_REDIRECTS", feed_fetcher.DEFAULT_MAX_REDIRECTS),
            feed_user_agent=os.getenv("FEED_USER_AGENT") or feed_fetcher.DEFAULT_USER_AGENT,
            geocoder_endpoint=os.getenv("GEOCODER_ENDPOINT") or geocoding.DEFAULT_ENDPOINT,
            geocoder_user_agent=os.getenv("GEOCODER_USER_AGENT") or geocoding.DEFAULT_USER_AGENT,
            geocoder_timeout=_env_float("GEOCODER_TIMEOUT", geocoding.DEFAULT_TIMEOUT),
            geocoder_min_interval=_env_float("GEOCODER_MIN_INTERVAL", 1.0),
            geocode_cache_size=_env_int("GEOCODE_CACHE_SIZE", geocoding.DEFAULT_CACHE_SIZE),
            use_gazetteer=_env_bool("GEOCODE_GAZETTEER", False),
            refresh_workers=max(1, min(scheduler.MAX_WORKERS, workers)),
            refresh_interval_minutes=_env_float("REFRESH_INTERVAL_MINUTES", scheduler.DEFAULT_INTERVAL_MINUTES),
            run_scheduler=_env_bool("FEEDS_RUN_SCHEDULER", False),
        )
