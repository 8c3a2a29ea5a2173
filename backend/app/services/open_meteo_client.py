from __future__ import annotations

import logging
from datetime import date
from typing import Any

from app.services.source_http import JsonHttpClient, SourceApiError

HOURLY_PARAMETERS: tuple[str, ...] = (
    "temperature_2m",
    "relative_humidity_2m",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
    "pressure_msl",
)


class OpenMeteoClient(JsonHttpClient):
    source_name = "open-meteo"

    def __init__(self, *, archive_url: str, timeout_seconds: float = 30.0) -> None:
        super().__init__(base_url=archive_url, timeout_seconds=timeout_seconds)
        self._logger = logging.getLogger("app.open_meteo_client")

    def fetch_historical(
        self,
        *,
        latitude: float,
        longitude: float,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Hourly archive observations; both dates are inclusive."""
        self._logger.info(
            "fetching weather data latitude=%s longitude=%s start_date=%s end_date=%s",
            latitude,
            longitude,
            start_date,
            end_date,
        )
        payload = self._request_json(
            "GET",
            "",
            query={
                "latitude": f"{latitude}",
                "longitude": f"{longitude}",
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "hourly": ",".join(HOURLY_PARAMETERS),
                "timezone": "auto",
            },
        )
        if not isinstance(payload, dict):
            raise SourceApiError(
                source=self.source_name,
                status_code=502,
                detail="Archive payload is not a JSON object",
            )
        hourly = payload.get("hourly")
        hours = len(hourly.get("time") or []) if isinstance(hourly, dict) else 0
        self._logger.info("fetched weather data hours=%s", hours)
        return payload
