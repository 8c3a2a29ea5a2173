from __future__ import annotations

import logging
from datetime import date
from typing import Any

from app.services.source_http import JsonHttpClient, SourceApiError
from app.services.token_cache import TokenCache

TOKEN_LIFETIME_SECONDS = 3600
AGGREGATION_LEVEL = "Hour"


class EloverblikClient(JsonHttpClient):
    source_name = "eloverblik"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 15.0,
        token_ttl_seconds: float = TOKEN_LIFETIME_SECONDS - 30,
        token_cache: TokenCache | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds)
        self._logger = logging.getLogger("app.eloverblik_client")
        self._token_cache = token_cache or TokenCache(
            fetch_token=self._request_access_token,
            ttl_seconds=token_ttl_seconds,
        )

    @property
    def token_cache(self) -> TokenCache:
        return self._token_cache

    def get_consumption(
        self,
        refresh_token: str,
        metering_point_id: str,
        date_from: date,
        date_to: date,
    ) -> dict[str, Any]:
        """Fetch hourly time series for one metering point.

        ``date_to`` is exclusive and must be later than ``date_from``.
        """
        access_token = self._token_cache.get(refresh_token)
        path = f"meterdata/gettimeseries/{date_from.isoformat()}/{date_to.isoformat()}/{AGGREGATION_LEVEL}"
        self._logger.info(
            "fetching consumption data metering_point_id=%s date_from=%s date_to=%s",
            metering_point_id,
            date_from,
            date_to,
        )
        try:
            payload = self._request_json(
                "POST",
                path,
                payload={"meteringPoints": {"meteringPoint": [metering_point_id]}},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except SourceApiError as exc:
            if exc.status_code == 401:
                self._token_cache.invalidate(refresh_token)
            raise
        if not isinstance(payload, dict):
            raise SourceApiError(
                source=self.source_name,
                status_code=502,
                detail="Time series payload is not a JSON object",
            )
        result = payload.get("result")
        self._logger.info(
            "fetched consumption data metering_point_id=%s documents=%s",
            metering_point_id,
            len(result) if isinstance(result, list) else 0,
        )
        return payload

    def invalidate_credential(self, refresh_token: str) -> None:
        self._token_cache.invalidate(refresh_token)

    def _request_access_token(self, refresh_token: str) -> str:
        payload = self._request_json(
            "GET",
            "token",
            headers={"Authorization": f"Bearer {refresh_token}"},
        )
        token = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(token, str) or token.strip() == "":
            raise SourceApiError(
                source=self.source_name,
                status_code=502,
                detail="Token response did not contain an access token",
            )
        return token
