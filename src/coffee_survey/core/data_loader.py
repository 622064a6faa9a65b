from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from coffee_survey.config import FetchSettings
from coffee_survey.core.errors import (
    DataServiceError,
    FetchTimeoutError,
    NetworkError,
    NoDataError,
)
from coffee_survey.core.feed_parser import split_lines

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    text: str
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


# (url, headers, timeout_seconds) -> HttpResponse; may raise requests exceptions
Transport = Callable[[str, Mapping[str, str], float], HttpResponse]


def _build_session() -> requests.Session:
    """
    Build a requests Session for the publishing endpoint.

    Retries are switched off at the urllib3 level: FeedFetcher decides when to
    change URL, change headers or back off, and it needs every failed attempt
    to surface so it can attribute the failure.
    """
    session = requests.Session()

    retry = Retry(
        total=0,
        connect=0,
        read=0,
        status=0,
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=5, pool_maxsize=5)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_session()
    return _SESSION


_CHUNK_SIZE = 64 * 1024

# Swapped in tests to drive the whole-attempt deadline
_clock = time.monotonic


def requests_transport(url: str, headers: Mapping[str, str], timeout_seconds: float) -> HttpResponse:
    """
    GET `url` with a deadline on the whole attempt.

    The requests timeout only bounds connecting and each socket read, so a
    server trickling bytes could hold an attempt open indefinitely. The body
    is streamed and the elapsed time checked after every chunk.
    """
    started = _clock()
    with _get_session().get(url, headers=dict(headers), timeout=timeout_seconds, stream=True) as resp:
        chunks: List[bytes] = []
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            if _clock() - started > timeout_seconds:
                raise requests.Timeout(f"Response from {url} not complete after {timeout_seconds}s")
            chunks.append(chunk)
        text = b"".join(chunks).decode(resp.encoding or "utf-8", errors="replace")
        return HttpResponse(status_code=resp.status_code, text=text, reason=resp.reason or "")


# ---------------------------------------------------------------------------
# URL variants
# ---------------------------------------------------------------------------

_PUBLISHER_ID = re.compile(r"/d/e/([A-Za-z0-9_-]+)")
_SHEETS_BASE = "https://docs.google.com/spreadsheets/d/e"


@dataclass
class UrlDiagnostic:
    original_url: str
    alternatives: List[str]
    is_valid: bool
    issues: List[str]


def derive_url_variants(url: str) -> List[str]:
    """
    Alternate published-CSV forms for the same sheet.

    Purely a function of `url`; unrecognised shapes yield no variants.
    """
    match = _PUBLISHER_ID.search(url or "")
    if not match:
        return []
    sheet_id = match.group(1)
    return [
        f"{_SHEETS_BASE}/{sheet_id}/pub?output=csv",
        f"{_SHEETS_BASE}/{sheet_id}/pub?gid=0&single=true&output=csv",
        f"{_SHEETS_BASE}/{sheet_id}/pub?gid=0&output=csv",
    ]


def diagnose_url(url: str) -> UrlDiagnostic:
    """
    Explain what looks wrong with a feed URL. Informational only.
    """
    issues: List[str] = []
    is_sheet = "docs.google.com/spreadsheets" in url
    is_published = "/pub?" in url
    is_csv = "output=csv" in url

    if not is_sheet:
        issues.append("URL is not a Google Sheets URL")
    if not is_published:
        issues.append("URL is not in published format (/pub?)")
    if not is_csv:
        issues.append("URL does not specify CSV output format")

    return UrlDiagnostic(
        original_url=url,
        alternatives=derive_url_variants(url),
        is_valid=is_sheet and is_published and is_csv,
        issues=issues,
    )


def candidate_urls(url: str) -> List[str]:
    """Primary URL first, then derived variants, without duplicates."""
    seen: Dict[str, None] = {}
    for candidate in [url, *derive_url_variants(url)]:
        seen.setdefault(candidate, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Request strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchStrategy:
    name: str
    headers: Mapping[str, str] = field(default_factory=dict)


_CSV_ACCEPT = "text/csv,text/plain,*/*"

FETCH_STRATEGIES: Tuple[FetchStrategy, ...] = (
    FetchStrategy("Standard Fetch", {"Accept": _CSV_ACCEPT}),
    FetchStrategy(
        "No-Cache Fetch",
        {"Accept": _CSV_ACCEPT, "Cache-Control": "no-cache", "Pragma": "no-cache"},
    ),
    FetchStrategy("Minimal Headers", {}),
    FetchStrategy("Explicit Accept", {"Accept": _CSV_ACCEPT, "User-Agent": "coffee-survey/0.1"}),
)

# Statuses the endpoint uses when it dislikes the request shape rather than the sheet
STRATEGY_SENSITIVE_STATUSES = frozenset({400, 403, 405})


# ---------------------------------------------------------------------------
# Orchestration state machine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Cursor:
    """Position in the URL x strategy matrix for one retry cycle."""
    url_index: int
    strategy_index: int
    cycle: int


def first_cursor(cycle: int, n_urls: int, n_strategies: int) -> Optional[Cursor]:
    """
    Starting position for a cycle.

    On retry cycles (cycle > 0) the (URL 0, strategy 0) pair is skipped since
    it failed in the previous cycle. Safe because candidate_urls() is
    deterministic for a given primary URL.
    """
    if n_urls <= 0 or n_strategies <= 0:
        return None
    start = Cursor(0, 0, cycle)
    if cycle > 0:
        return next_cursor(start, n_urls, n_strategies)
    return start


def next_cursor(cursor: Cursor, n_urls: int, n_strategies: int) -> Optional[Cursor]:
    """Next strategy for the same URL, else first strategy of the next URL, else None."""
    if cursor.strategy_index + 1 < n_strategies:
        return Cursor(cursor.url_index, cursor.strategy_index + 1, cursor.cycle)
    if cursor.url_index + 1 < n_urls:
        return Cursor(cursor.url_index + 1, 0, cursor.cycle)
    return None


def iter_cycle(cycle: int, n_urls: int, n_strategies: int) -> Iterator[Cursor]:
    cursor = first_cursor(cycle, n_urls, n_strategies)
    while cursor is not None:
        yield cursor
        cursor = next_cursor(cursor, n_urls, n_strategies)


@dataclass
class Attempt:
    url: str
    strategy: FetchStrategy
    text: Optional[str] = None
    error: Optional[DataServiceError] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


class FeedFetcher:
    """
    Fetch CSV text from an unreliable publishing endpoint.

    Every logical fetch walks the (URL variant x strategy) matrix, one request
    at a time, and returns the first body that looks like CSV. When a whole
    cycle fails it waits `retry_delay_seconds * cycle_number` and walks the
    matrix again, up to `max_retries` extra cycles. Nothing partial is ever
    returned: callers get text or a DataServiceError.

    `transport` and `sleep` are injectable so tests never hit the network or
    actually wait.
    """

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        *,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], None] = time.sleep,
        strategies: Sequence[FetchStrategy] = FETCH_STRATEGIES,
    ) -> None:
        self.settings = settings or FetchSettings()
        self.transport: Transport = transport or requests_transport
        self.sleep = sleep
        self.strategies = tuple(strategies)

    def fetch_text(self, url: str) -> str:
        max_retries = max(0, int(self.settings.max_retries))
        last_error: Optional[DataServiceError] = None
        cycle = 0

        while True:
            diagnostic = diagnose_url(url)
            if not diagnostic.is_valid:
                logger.debug("URL validation issues for %s: %s", url, diagnostic.issues)

            urls = candidate_urls(url)
            logger.debug(
                "Fetch cycle %s/%s for %s (%s URL forms x %s strategies)",
                cycle + 1, max_retries + 1, url, len(urls), len(self.strategies),
            )

            for cursor in iter_cycle(cycle, len(urls), len(self.strategies)):
                attempt = self._attempt(urls[cursor.url_index], self.strategies[cursor.strategy_index])
                if attempt.ok:
                    logger.debug(
                        "Fetched %s using URL %s with strategy %r",
                        url, cursor.url_index + 1, attempt.strategy.name,
                    )
                    return attempt.text  # type: ignore[return-value]

                last_error = attempt.error
                logger.debug(
                    "Strategy %r failed for URL %s/%s: %s",
                    attempt.strategy.name, cursor.url_index + 1, len(urls), attempt.error,
                )

            if cycle >= max_retries:
                break

            delay = self.settings.retry_delay_seconds * (cycle + 1)
            logger.warning(
                "All URLs and strategies failed for %s (cycle %s/%s), retrying in %.1fs",
                url, cycle + 1, max_retries + 1, delay,
            )
            self.sleep(delay)
            cycle += 1

        if last_error is None:
            last_error = NetworkError("All fetch URLs and strategies failed")
        logger.error("Giving up on %s after %s cycle(s): %s", url, cycle + 1, last_error)
        raise last_error from last_error.original

    def _attempt(self, url: str, strategy: FetchStrategy) -> Attempt:
        """One request; never raises, the outcome is classified on the Attempt."""
        timeout = self.settings.timeout_seconds
        attempt = Attempt(url=url, strategy=strategy)

        try:
            response = self.transport(url, strategy.headers, timeout)
        except (requests.Timeout, TimeoutError) as exc:
            attempt.error = FetchTimeoutError(f"Request timed out after {timeout}s", original=exc)
            return attempt
        except Exception as exc:  # noqa: BLE001 - any transport failure moves to the next candidate
            attempt.error = NetworkError(f"Request failed: {exc}", original=exc)
            return attempt

        attempt.status_code = response.status_code
        if not response.ok:
            if response.status_code in STRATEGY_SENSITIVE_STATUSES:
                logger.debug("HTTP %s from %s, request shape rejected", response.status_code, url)
            attempt.error = NetworkError(f"HTTP {response.status_code}: {response.reason}")
            return attempt

        text = response.text or ""
        if not text.strip():
            attempt.error = NoDataError("Received empty response from Google Sheets")
            return attempt

        lines = split_lines(text)
        if len(lines) < 2:
            attempt.error = NoDataError(f"Insufficient data received: only {len(lines)} lines")
            return attempt

        attempt.text = text
        return attempt


def fetch_text(
    url: str,
    *,
    settings: Optional[FetchSettings] = None,
    transport: Optional[Transport] = None,
) -> str:
    return FeedFetcher(settings, transport=transport).fetch_text(url)


def timed_fetch_text(
    url: str,
    *,
    settings: Optional[FetchSettings] = None,
    transport: Optional[Transport] = None,
) -> Tuple[str, float]:
    """
    Convenience helper for UI timing logs.
    """
    t0 = time.perf_counter()
    text = fetch_text(url, settings=settings, transport=transport)
    return text, (time.perf_counter() - t0)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@dataclass
class ProbeResult:
    strategy: str
    url: str
    success: bool
    status: Optional[int] = None
    data_length: Optional[int] = None
    line_count: Optional[int] = None
    looks_like_csv: Optional[bool] = None
    first_chars: str = ""
    error: Optional[str] = None


@dataclass
class UrlProbeReport:
    url: str
    diagnostic: UrlDiagnostic
    results: List[ProbeResult] = field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return any(r.success for r in self.results)


_PROBE_STRATEGIES: Tuple[FetchStrategy, ...] = (
    FetchStrategy("Basic GET", {}),
    FetchStrategy("With CSV headers", {"Accept": "text/csv"}),
    FetchStrategy("No cache", {"Cache-Control": "no-cache"}),
)


def _probe_once(
    transport: Transport, url: str, strategy: FetchStrategy, timeout_seconds: float
) -> ProbeResult:
    try:
        resp = transport(url, strategy.headers, timeout_seconds)
    except Exception as exc:  # noqa: BLE001 - probing reports, it does not raise
        return ProbeResult(strategy=strategy.name, url=url, success=False, error=f"{type(exc).__name__}: {exc}")

    text = resp.text or ""
    return ProbeResult(
        strategy=strategy.name,
        url=url,
        success=resp.ok,
        status=resp.status_code,
        data_length=len(text),
        line_count=len(text.split("\n")),
        looks_like_csv="," in text and "\n" in text,
        first_chars=text[:200],
    )


def probe_url(
    url: str,
    *,
    transport: Optional[Transport] = None,
    timeout_seconds: float = 30.0,
) -> UrlProbeReport:
    """
    Developer diagnostics for a feed URL that refuses to load.

    Tries a few plain request shapes once each (no retries, no backoff), stops
    at the first non-empty success, and only if all of them fail tries the
    first two alternate URL forms.
    """
    send = transport or requests_transport
    report = UrlProbeReport(url=url, diagnostic=diagnose_url(url))

    for strategy in _PROBE_STRATEGIES:
        result = _probe_once(send, url, strategy, timeout_seconds)
        report.results.append(result)
        logger.info("Probe %s %s: %s", strategy.name, url, result)
        if result.success and result.data_length:
            return report

    if report.any_success:
        return report

    for alt in report.diagnostic.alternatives[:2]:
        result = _probe_once(send, alt, _PROBE_STRATEGIES[0], timeout_seconds)
        report.results.append(result)
        logger.info("Probe alternative %s: %s", alt, result)
        if result.success and result.data_length:
            break

    return report
