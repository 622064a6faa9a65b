# tests/test_data_loader.py
from unittest.mock import MagicMock, patch

import pytest
import requests

from coffee_survey.config import FetchSettings
from coffee_survey.core import data_loader
from coffee_survey.core.data_loader import (
    FETCH_STRATEGIES,
    Cursor,
    FeedFetcher,
    HttpResponse,
    candidate_urls,
    derive_url_variants,
    diagnose_url,
    iter_cycle,
    probe_url,
)
from coffee_survey.core.errors import (
    NO_DATA_ERROR,
    TIMEOUT_ERROR,
    FetchTimeoutError,
    NetworkError,
    NoDataError,
)

PLAIN_URL = "https://example.com/feed.csv"
SHEET_URL = "https://docs.google.com/spreadsheets/d/e/2PACX-abc/pub?gid=123&single=true&output=csv"
CSV_BODY = "UUID,Which Coffee,Overall Enjoyment\nu1,A,4.5\n"


class FakeTransport:
    """Records every request and answers with `responder(call_index, url, headers)`."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def __call__(self, url, headers, timeout_seconds):
        self.calls.append((url, dict(headers), timeout_seconds))
        return self.responder(len(self.calls) - 1, url, headers)


def _fetcher(transport, sleeps=None, **settings):
    recorded = sleeps if sleeps is not None else []
    return FeedFetcher(
        FetchSettings(**settings),
        transport=transport,
        sleep=recorded.append,
    )


# --- URL variants --- #


def test_derive_url_variants_uses_publisher_id():
    assert derive_url_variants(SHEET_URL) == [
        "https://docs.google.com/spreadsheets/d/e/2PACX-abc/pub?output=csv",
        "https://docs.google.com/spreadsheets/d/e/2PACX-abc/pub?gid=0&single=true&output=csv",
        "https://docs.google.com/spreadsheets/d/e/2PACX-abc/pub?gid=0&output=csv",
    ]


def test_derive_url_variants_for_unrecognised_url_is_empty():
    assert derive_url_variants(PLAIN_URL) == []
    assert candidate_urls(PLAIN_URL) == [PLAIN_URL]


def test_candidate_urls_puts_primary_first_without_duplicates():
    primary = "https://docs.google.com/spreadsheets/d/e/2PACX-abc/pub?output=csv"
    urls = candidate_urls(primary)
    assert urls[0] == primary
    assert len(urls) == len(set(urls)) == 3


def test_diagnose_url_reports_issues():
    diag = diagnose_url(PLAIN_URL)
    assert not diag.is_valid
    assert "URL is not a Google Sheets URL" in diag.issues
    assert diagnose_url(SHEET_URL).is_valid


# --- State machine --- #


def test_first_cycle_visits_every_pair_in_order():
    assert list(iter_cycle(0, 2, 2)) == [
        Cursor(0, 0, 0), Cursor(0, 1, 0), Cursor(1, 0, 0), Cursor(1, 1, 0),
    ]


def test_retry_cycle_skips_primary_url_with_first_strategy():
    cursors = list(iter_cycle(1, 2, 2))
    assert cursors[0] == Cursor(0, 1, 1)
    assert len(cursors) == 3


def test_retry_cycle_with_single_pair_is_empty():
    assert list(iter_cycle(1, 1, 1)) == []
    assert list(iter_cycle(0, 0, 4)) == []


# --- Orchestration --- #


def test_rejected_request_shape_moves_to_next_strategy():
    transport = FakeTransport(
        lambda i, url, headers: HttpResponse(403, "", "Forbidden") if i == 0 else HttpResponse(200, CSV_BODY)
    )
    sleeps = []

    assert _fetcher(transport, sleeps).fetch_text(PLAIN_URL) == CSV_BODY
    assert len(transport.calls) == 2
    assert transport.calls[1][0] == PLAIN_URL
    assert transport.calls[1][1] == dict(FETCH_STRATEGIES[1].headers)
    assert sleeps == []


def test_falls_through_to_url_variant():
    def responder(i, url, headers):
        if "gid=0&single=true" in url:
            return HttpResponse(200, CSV_BODY)
        return HttpResponse(404, "", "Not Found")

    transport = FakeTransport(responder)
    assert _fetcher(transport).fetch_text(SHEET_URL) == CSV_BODY
    # primary (4 strategies), first variant (4 strategies), then success
    assert len(transport.calls) == 9


def test_all_timeouts_retry_with_linear_backoff_then_raise():
    def responder(i, url, headers):
        raise requests.Timeout("read timed out")

    transport = FakeTransport(responder)
    sleeps = []
    fetcher = _fetcher(transport, sleeps, timeout_seconds=5, max_retries=3, retry_delay_seconds=1.0)

    with pytest.raises(FetchTimeoutError) as exc_info:
        fetcher.fetch_text(PLAIN_URL)

    assert sleeps == [1.0, 2.0, 3.0]
    # 4 strategies on the first cycle, 3 on each of the 3 retry cycles
    assert len(transport.calls) == 4 + 3 * 3
    assert all(timeout == 5 for _, _, timeout in transport.calls)
    assert exc_info.value.kind == TIMEOUT_ERROR
    assert isinstance(exc_info.value, TimeoutError)
    assert isinstance(exc_info.value.__cause__, requests.Timeout)


def test_retry_cycle_starts_with_second_strategy():
    transport = FakeTransport(lambda i, url, headers: HttpResponse(500, "", "Server Error"))

    with pytest.raises(NetworkError):
        _fetcher(transport, max_retries=1, retry_delay_seconds=0).fetch_text(PLAIN_URL)

    assert len(transport.calls) == 7
    assert transport.calls[4][1] == dict(FETCH_STRATEGIES[1].headers)


def test_raises_error_from_last_attempt():
    def responder(i, url, headers):
        if i < 3:
            raise requests.Timeout("slow")
        return HttpResponse(500, "", "Server Error")

    with pytest.raises(NetworkError) as exc_info:
        _fetcher(FakeTransport(responder), max_retries=0).fetch_text(PLAIN_URL)

    assert "HTTP 500" in str(exc_info.value)


def test_connection_error_is_wrapped_with_original():
    boom = requests.ConnectionError("refused")

    def responder(i, url, headers):
        raise boom

    with pytest.raises(NetworkError) as exc_info:
        _fetcher(FakeTransport(responder), max_retries=0).fetch_text(PLAIN_URL)

    assert exc_info.value.original is boom
    assert exc_info.value.__cause__ is boom


@pytest.mark.parametrize("body", ["", "   \n  ", "UUID,Which Coffee,Overall Enjoyment\n"])
def test_empty_or_header_only_body_is_no_data(body):
    transport = FakeTransport(lambda i, url, headers: HttpResponse(200, body))

    with pytest.raises(NoDataError) as exc_info:
        _fetcher(transport, max_retries=0).fetch_text(PLAIN_URL)

    assert exc_info.value.kind == NO_DATA_ERROR
    assert len(transport.calls) == len(FETCH_STRATEGIES)


def test_zero_retries_never_sleeps():
    transport = FakeTransport(lambda i, url, headers: HttpResponse(503, "", "Unavailable"))
    sleeps = []

    with pytest.raises(NetworkError):
        _fetcher(transport, sleeps, max_retries=0).fetch_text(PLAIN_URL)

    assert sleeps == []


def test_module_fetch_text_uses_given_transport():
    transport = FakeTransport(lambda i, url, headers: HttpResponse(200, CSV_BODY))
    text, elapsed = data_loader.timed_fetch_text(PLAIN_URL, transport=transport)

    assert text == CSV_BODY
    assert elapsed >= 0
    assert len(transport.calls) == 1


# --- requests transport --- #


def _streaming_session(chunks, status_code=200, reason="OK", encoding="utf-8"):
    mock_response = MagicMock(status_code=status_code, reason=reason, encoding=encoding)
    mock_response.__enter__.return_value = mock_response
    mock_response.iter_content.return_value = iter(chunks)
    mock_session = MagicMock()
    mock_session.get.return_value = mock_response
    return mock_session


@patch("coffee_survey.core.data_loader._get_session")
def test_requests_transport_wraps_session_response(mock_get_session):
    body = CSV_BODY.encode("utf-8")
    mock_session = _streaming_session([body[:10], body[10:]])
    mock_get_session.return_value = mock_session

    resp = data_loader.requests_transport(PLAIN_URL, {"Accept": "text/csv"}, 12)

    mock_session.get.assert_called_once_with(
        PLAIN_URL, headers={"Accept": "text/csv"}, timeout=12, stream=True
    )
    assert resp == HttpResponse(200, CSV_BODY, "OK")
    assert resp.ok


@patch("coffee_survey.core.data_loader._get_session")
def test_requests_transport_enforces_whole_attempt_deadline(mock_get_session, monkeypatch):
    mock_get_session.return_value = _streaming_session([b"UUID,", b"Which Coffee\n", b"u1,A\n"])
    ticks = iter([0.0, 1.0, 31.0, 62.0])
    monkeypatch.setattr(data_loader, "_clock", lambda: next(ticks))

    with pytest.raises(requests.Timeout):
        data_loader.requests_transport(PLAIN_URL, {}, 30)


@patch("coffee_survey.core.data_loader._get_session")
def test_slow_body_is_classified_as_timeout(mock_get_session, monkeypatch):
    mock_get_session.return_value = _streaming_session([b"a,b\n", b"1,2\n"])
    ticks = iter([0.0, 45.0, 90.0])
    monkeypatch.setattr(data_loader, "_clock", lambda: next(ticks))

    fetcher = FeedFetcher(FetchSettings(timeout_seconds=30, max_retries=0), sleep=lambda s: None)
    fetcher.strategies = fetcher.strategies[:1]

    with pytest.raises(FetchTimeoutError):
        fetcher.fetch_text(PLAIN_URL)


def test_build_session_disables_transport_retries():
    session = data_loader._build_session()
    adapter = session.get_adapter("https://docs.google.com")
    assert adapter.max_retries.total == 0


# --- Probing --- #


def test_probe_url_stops_at_first_success():
    transport = FakeTransport(lambda i, url, headers: HttpResponse(200, CSV_BODY))
    report = probe_url(SHEET_URL, transport=transport)

    assert report.any_success
    assert len(report.results) == 1
    assert report.results[0].looks_like_csv is True
    assert report.results[0].line_count == 3


def test_probe_url_tries_alternatives_when_everything_fails():
    def responder(i, url, headers):
        raise requests.ConnectionError("down")

    transport = FakeTransport(responder)
    report = probe_url(SHEET_URL, transport=transport)

    assert not report.any_success
    # three request shapes on the primary URL, then two alternate URLs
    assert len(report.results) == 5
    assert report.results[0].error.startswith("ConnectionError")
