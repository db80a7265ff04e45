from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Crawl tunables. Every value can be overridden from the environment or from
# a .env file at the repository root.

load_dotenv(Path(__file__).resolve().parents[1] / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


# -----------------------------
# HTTP
# -----------------------------

USER_AGENT: str = os.getenv(
    "CRAWLER_USER_AGENT",
    "venture-site-crawler/1.0 (+https://example.com/bot)",
)

# Seconds. Bounded so a single unresponsive host cannot stall a job.
REQUEST_TIMEOUT_S: float = _env_float("CRAWLER_REQUEST_TIMEOUT", 15.0)
CONNECT_TIMEOUT_S: float = _env_float("CRAWLER_CONNECT_TIMEOUT", 10.0)

# -----------------------------
# Crawl defaults
# -----------------------------

CRAWL_DELAY_S: float = _env_float("CRAWLER_DELAY", 0.5)
DEFAULT_MAX_DEPTH: int = _env_int("CRAWLER_MAX_DEPTH", 2)
DEFAULT_MAX_PAGES: int = _env_int("CRAWLER_MAX_PAGES", 50)
DEFAULT_DOMAIN_ONLY: bool = True

# Background job workers (each runs one job at a time)
JOB_WORKERS: int = _env_int("CRAWLER_JOB_WORKERS", 2)

# -----------------------------
# Logging
# -----------------------------

LOG_LEVEL: str = os.getenv("CRAWLER_LOG_LEVEL", "INFO").upper()
LOG_FILE: Optional[str] = os.getenv("CRAWLER_LOG_FILE") or None
