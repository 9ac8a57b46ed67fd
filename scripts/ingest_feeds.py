#!/usr/bin/env python3
"""
Entry point used by cron or a service manager to refresh RSS/Atom feeds.

Usage:
    python3 scripts/ingest_feeds.py refresh --all
    python3 scripts/ingest_feeds.py schedule
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.feed_ingestion import main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
