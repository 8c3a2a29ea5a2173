from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """Per-credential access token cache with single-flight refresh.

    ``fetch_token`` exchanges a long-lived credential for a short-lived access
    token. Concurrent callers sharing a credential wait on one refresh instead
    of issuing their own. ``clock`` returns monotonic seconds and is injectable
    so expiry can be exercised without sleeping.
    """

    def __init__(
        self,
        *,
        fetch_token: Callable[[str], str],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_token = fetch_token
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._logger = logging.getLogger("app.token_cache")
        self._lock = Lock()
        self._tokens: dict[str, CachedToken] = {}
        self._refresh_locks: dict[str, Lock] = {}

    def get(self, credential: str) -> str:
        if not credential:
            raise ValueError("Refresh token is required")

        cached = self._valid_entry(credential)
        if cached is not None:
            return cached.token

        with self._refresh_lock_for(credential):
            # Another caller may have refreshed while this one waited.
            cached = self._valid_entry(credential)
            if cached is not None:
                return cached.token

            self._logger.info("requesting new access token")
            token = self._fetch_token(credential)
            entry = CachedToken(token=token, expires_at=self._clock() + self._ttl_seconds)
            with self._lock:
                self._tokens[credential] = entry
            return entry.token

    def invalidate(self, credential: str) -> None:
        with self._lock:
            removed = self._tokens.pop(credential, None)
        if removed is not None:
            self._logger.info("evicted cached access token")

    def size(self) -> int:
        with self._lock:
            return len(self._tokens)

    def _valid_entry(self, credential: str) -> CachedToken | None:
        with self._lock:
            entry = self._tokens.get(credential)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    def _refresh_lock_for(self, credential: str) -> Lock:
        with self._lock:
            lock = self._refresh_locks.get(credential)
            if lock is None:
                lock = Lock()
                self._refresh_locks[credential] = lock
            return lock
