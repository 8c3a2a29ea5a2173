from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any

from app.repositories.timeseries import WeatherRow
from app.services.consumption_parser import ParseFailure, ParseOk, ParseResult, describe_shape

WMO_CONDITIONS: dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with hail",
    99: "Thunderstorm with heavy hail",
}


def weather_condition(code: int | None) -> str:
    if code is None:
        return "Unknown"
    return WMO_CONDITIONS.get(code, f"Weather code {code}")


def parse_weather_response(
    payload: Any,
    *,
    location_key: str,
    property_id: int | None = None,
) -> ParseResult:
    if not isinstance(payload, dict):
        return ParseFailure(message="response is not a JSON object", shape=describe_shape(payload))
    hourly = payload.get("hourly")
    if not isinstance(hourly, dict) or not isinstance(hourly.get("time"), list):
        return ParseFailure(message="Invalid weather data format", shape=describe_shape(payload))

    offset = timedelta(seconds=_as_int(payload.get("utc_offset_seconds")) or 0)
    times: list[Any] = hourly["time"]
    rows: list[WeatherRow] = []
    for index, raw_time in enumerate(times):
        try:
            timestamp = _parse_local_time(raw_time, offset)
        except ValueError as exc:
            return ParseFailure(message=str(exc), shape=describe_shape(payload))
        code = _as_int(_at(hourly, "weather_code", index))
        rows.append(
            WeatherRow(
                location_key=location_key,
                property_id=property_id,
                timestamp=timestamp,
                temperature_celsius=_as_float(_at(hourly, "temperature_2m", index)),
                humidity_percent=_as_float(_at(hourly, "relative_humidity_2m", index)),
                precipitation_mm=_as_float(_at(hourly, "precipitation", index)),
                wind_speed_kmh=_as_float(_at(hourly, "wind_speed_10m", index)),
                pressure_hpa=_as_float(_at(hourly, "pressure_msl", index)),
                weather_code=code,
                weather_condition=weather_condition(code),
            )
        )
    return ParseOk(rows=rows)


def _parse_local_time(value: Any, offset: timedelta) -> datetime:
    if not isinstance(value, str) or value.strip() == "":
        raise ValueError(f"invalid hourly time '{value}'")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid hourly time '{value}'") from exc
    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc)
    return (parsed - offset).replace(tzinfo=timezone.utc)


def _at(hourly: dict[str, Any], key: str, index: int) -> Any:
    values = hourly.get(key)
    if not isinstance(values, list) or index >= len(values):
        return None
    return values[index]


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_int(value: Any) -> int | None:
    number = _as_float(value)
    return int(number) if number is not None else None
