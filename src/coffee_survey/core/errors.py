"""Error types shared by the fetch, parse and assembly layers."""
from __future__ import annotations

from typing import Optional

NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT_ERROR = "TIMEOUT_ERROR"
PARSE_ERROR = "PARSE_ERROR"
NO_DATA_ERROR = "NO_DATA_ERROR"


class DataServiceError(Exception):
    """
    Base class for feed retrieval failures.

    `kind` is one of the *_ERROR constants above; `original` keeps the
    lower-level exception (requests error, parse failure, ...) for diagnostics.
    """

    kind = NETWORK_ERROR

    def __init__(self, message: str, original: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original = original


class NetworkError(DataServiceError):
    """Transport failure or non-success HTTP status."""

    kind = NETWORK_ERROR


class FetchTimeoutError(DataServiceError, TimeoutError):
    """A single request attempt exceeded its deadline."""

    kind = TIMEOUT_ERROR


class ParseError(DataServiceError):
    """The CSV document is structurally unusable (no header + data)."""

    kind = PARSE_ERROR


class NoDataError(DataServiceError):
    """The endpoint answered but the body was empty or header-only."""

    kind = NO_DATA_ERROR
