from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from urllib.error import URLError

from app.services.source_http import SourceApiError, SourceTransportError

KIND_AUTHENTICATION = "authentication"
KIND_RATE_LIMITED = "rate_limited"
KIND_NETWORK = "network"
KIND_API = "api"
KIND_PARSE = "parse"
KIND_STORAGE = "storage"
KIND_CRITICAL = "critical"
KIND_CONFIGURATION = "configuration"
KIND_OVERLAP = "overlap"
KIND_UNEXPECTED = "unexpected"

AUTH_FAILED_MESSAGE = "Authentication failed - invalid or expired token"
RATE_LIMITED_MESSAGE = "API rate limit exceeded"
DATABASE_UNAVAILABLE_MESSAGE = "Database connection failed"

_NETWORK_EXCEPTIONS = (TimeoutError, socket.timeout, ConnectionError, URLError)


@dataclass(frozen=True)
class SyncFailure:
    kind: str
    message: str
    log_level: int = logging.ERROR

    @property
    def evict_credential(self) -> bool:
        return self.kind == KIND_AUTHENTICATION


def classify_fetch_error(exc: BaseException) -> SyncFailure:
    if isinstance(exc, SourceApiError):
        if exc.status_code in (401, 403):
            return SyncFailure(kind=KIND_AUTHENTICATION, message=AUTH_FAILED_MESSAGE)
        if exc.status_code == 429:
            return SyncFailure(kind=KIND_RATE_LIMITED, message=RATE_LIMITED_MESSAGE, log_level=logging.WARNING)
        return SyncFailure(kind=KIND_API, message=f"API error: {exc.status_code} {_truncate(exc.detail)}")
    if isinstance(exc, SourceTransportError):
        return SyncFailure(kind=KIND_NETWORK, message=f"Network error: {exc.code} - {_truncate(exc.detail)}")
    if isinstance(exc, _NETWORK_EXCEPTIONS):
        code = "ETIMEDOUT" if isinstance(exc, (TimeoutError, socket.timeout)) else "ENETWORK"
        return SyncFailure(kind=KIND_NETWORK, message=f"Network error: {code} - {_truncate(str(exc))}")
    return SyncFailure(kind=KIND_API, message=f"API error: {_truncate(str(exc))}")


def parse_failure(message: str) -> SyncFailure:
    return SyncFailure(kind=KIND_PARSE, message=f"Invalid API response format: {message}")


def storage_failure(exc: BaseException) -> SyncFailure:
    return SyncFailure(kind=KIND_STORAGE, message=f"Database error: {_truncate(str(exc))}")


def critical_failure() -> SyncFailure:
    return SyncFailure(kind=KIND_CRITICAL, message=DATABASE_UNAVAILABLE_MESSAGE, log_level=logging.CRITICAL)


def unexpected_failure(exc: BaseException) -> SyncFailure:
    return SyncFailure(kind=KIND_UNEXPECTED, message=f"Unexpected error: {_truncate(str(exc))}")


def _truncate(text: str, limit: int = 500) -> str:
    clean = (text or "").strip()
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."
