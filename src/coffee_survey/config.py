from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directories
DATA_DIR = Path(os.getenv("COFFEE_SURVEY_DATA_DIR", str(PROJECT_ROOT / "data")))
CACHE_DIR = DATA_DIR / "cache"            # opportunistic feed cache (small CSV payloads)

CACHE_DIR.mkdir(parents=True, exist_ok=True)

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Coffee Taste Test Insights"
APP_VERSION = "0.1.0"

# DEBUG reproduces the per-attempt fetch diagnostics
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

# ---------------------------------------------------------------------------
# Published Google Sheets feeds
#
# Each feed is a sheet published to the web as CSV:
#   File -> Share -> Publish to the web -> CSV
#
# The taste test workbook publishes several tabs; they share the same
# publisher id and differ by gid. Override any of them via environment.
# ---------------------------------------------------------------------------

_TASTE_TEST_BOOK = (
    "https://docs.google.com/spreadsheets/d/e/"
    "2PACX-1vSv3n8ZAHU4alXKFZ3n00LCePq_lN2Qo28KwONiyu7Jo-WUKV6uBOBvlSNpbaBOOJkZeHzqfZBgswFx"
)
_PREFERENCE_BOOK = (
    "https://docs.google.com/spreadsheets/d/e/"
    "2PACX-1vQrlMfnRHT16l37W1V_IOAy2SJlJkq-fZIRo8JnIw052IRWeM2cG4xC1GF-rgLgbCXvgziy1bun_oC7"
)

TASTE_TEST_URL = os.getenv("TASTE_TEST_URL", f"{_TASTE_TEST_BOOK}/pub?output=csv").strip()
PREFERENCE_URL = os.getenv("PREFERENCE_URL", f"{_PREFERENCE_BOOK}/pub?output=csv").strip()
COFFEE_DATA_URL = os.getenv(
    "COFFEE_DATA_URL", f"{_TASTE_TEST_BOOK}/pub?gid=81480195&single=true&output=csv"
).strip()
COFFEE_QUALITY_URL = os.getenv(
    "COFFEE_QUALITY_URL", f"{_TASTE_TEST_BOOK}/pub?gid=546056256&single=true&output=csv"
).strip()
PARTICIPANT_HARSHNESS_URL = os.getenv(
    "PARTICIPANT_HARSHNESS_URL", f"{_TASTE_TEST_BOOK}/pub?gid=1783973184&single=true&output=csv"
).strip()

# Placeholder left in freshly cloned configs; feeds carrying it are never fetched
UNCONFIGURED_MARKER = "YOUR_SHEET_ID_HERE"

# ---------------------------------------------------------------------------
# Fetch tuning
#
# Google's publishing endpoint is slow and occasionally rejects requests
# depending on headers, so every logical fetch tries several URL forms and
# header sets before backing off and trying again.
# ---------------------------------------------------------------------------

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "1.0"))

# Coffee metadata changes rarely; keep it for a day
COFFEE_DATA_CACHE_TTL_SECONDS = int(os.getenv("COFFEE_DATA_CACHE_TTL_SECONDS", str(24 * 60 * 60)))


@dataclass(frozen=True)
class FetchSettings:
    """
    Knobs for one fetch orchestration.

    Passed explicitly into FeedFetcher / SurveyDataAssembler so tests can use
    short timeouts and zero delays without touching module state.
    """
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    max_retries: int = MAX_RETRIES
    retry_delay_seconds: float = RETRY_DELAY_SECONDS

    @classmethod
    def from_env(cls) -> "FetchSettings":
        return cls(
            timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", str(REQUEST_TIMEOUT_SECONDS))),
            max_retries=int(os.getenv("MAX_RETRIES", str(MAX_RETRIES))),
            retry_delay_seconds=float(os.getenv("RETRY_DELAY_SECONDS", str(RETRY_DELAY_SECONDS))),
        )
