from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from app.db.models import AGGREGATION_HOUR
from app.repositories.timeseries import ConsumptionRow

_logger = logging.getLogger("app.consumption_parser")

DEFAULT_QUALITY = "OK"
DEFAULT_UNIT = "kWh"
RESOLUTION_STEPS: dict[str, timedelta] = {"PT1H": timedelta(hours=1)}


@dataclass(frozen=True)
class ParseOk:
    rows: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ParseFailure:
    message: str
    shape: str


ParseResult = Union[ParseOk, ParseFailure]


class _MalformedResponse(ValueError):
    pass


def parse_consumption_response(payload: Any, metering_point_id: str) -> ParseResult:
    """Flatten an Eloverblik time series response into hourly rows.

    Layout: ``result[].MyEnergyData_MarketDocument.TimeSeries[].Period[].Point[]``.
    A point's instant is ``timeInterval.start + (position - 1) * resolution``.
    """
    try:
        rows = _parse(payload, metering_point_id)
    except _MalformedResponse as exc:
        return ParseFailure(message=str(exc), shape=describe_shape(payload))
    return ParseOk(rows=rows)


def _parse(payload: Any, metering_point_id: str) -> list[ConsumptionRow]:
    if not isinstance(payload, dict):
        raise _MalformedResponse("response is not a JSON object")
    documents = payload.get("result")
    if documents is None:
        _logger.warning("no market document found metering_point_id=%s", metering_point_id)
        return []
    if not isinstance(documents, list):
        raise _MalformedResponse("'result' is not a list")

    rows: list[ConsumptionRow] = []
    for document in documents:
        if not isinstance(document, dict):
            raise _MalformedResponse("result entry is not an object")
        if document.get("success") is False:
            error_text = document.get("errorText") or document.get("errorCode") or "unknown error"
            raise _MalformedResponse(f"provider rejected metering point: {error_text}")
        market_document = document.get("MyEnergyData_MarketDocument")
        if market_document is None:
            continue
        if not isinstance(market_document, dict):
            raise _MalformedResponse("MyEnergyData_MarketDocument is not an object")
        series_list = market_document.get("TimeSeries") or []
        if not isinstance(series_list, list):
            raise _MalformedResponse("TimeSeries is not a list")
        for series in series_list:
            rows.extend(_parse_series(series, metering_point_id))

    if not rows:
        _logger.warning("no time series points in response metering_point_id=%s", metering_point_id)
    return rows


def _parse_series(series: Any, metering_point_id: str) -> list[ConsumptionRow]:
    if not isinstance(series, dict):
        raise _MalformedResponse("TimeSeries entry is not an object")
    unit = DEFAULT_UNIT
    measurement_unit = series.get("measurement_Unit")
    if isinstance(measurement_unit, dict) and measurement_unit.get("name"):
        unit = str(measurement_unit["name"])

    periods = series.get("Period") or []
    if not isinstance(periods, list):
        raise _MalformedResponse("Period is not a list")

    rows: list[ConsumptionRow] = []
    for period in periods:
        if not isinstance(period, dict):
            raise _MalformedResponse("Period entry is not an object")
        interval = period.get("timeInterval")
        start_raw = interval.get("start") if isinstance(interval, dict) else None
        period_start = _parse_instant(start_raw)
        resolution = str(period.get("resolution") or "PT1H")
        step = RESOLUTION_STEPS.get(resolution)
        if step is None:
            raise _MalformedResponse(f"unsupported resolution '{resolution}'")

        points = period.get("Point") or []
        if not isinstance(points, list):
            raise _MalformedResponse("Point is not a list")
        for point in points:
            if not isinstance(point, dict):
                raise _MalformedResponse("Point entry is not an object")
            position = _parse_position(point.get("position"))
            quantity_raw, quality_raw = _point_quantity(point)
            rows.append(
                ConsumptionRow(
                    metering_point_id=metering_point_id,
                    timestamp=period_start + step * (position - 1),
                    quantity=_parse_quantity(quantity_raw),
                    quality=str(quality_raw) if quality_raw not in (None, "") else DEFAULT_QUALITY,
                    measurement_unit=unit,
                    aggregation_level=AGGREGATION_HOUR,
                )
            )
    return rows


def _point_quantity(point: dict[str, Any]) -> tuple[Any, Any]:
    nested = point.get("out_Quantity")
    if isinstance(nested, dict):
        return nested.get("quantity"), nested.get("quality")
    # The live API flattens the nested keys into dotted names.
    return point.get("out_Quantity.quantity"), point.get("out_Quantity.quality")


def _parse_instant(value: Any) -> datetime:
    if not isinstance(value, str) or value.strip() == "":
        raise _MalformedResponse("Period.timeInterval.start is missing")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise _MalformedResponse(f"invalid period start '{value}'") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_position(value: Any) -> int:
    try:
        position = int(str(value))
    except (TypeError, ValueError) as exc:
        raise _MalformedResponse(f"invalid point position '{value}'") from exc
    if position < 1:
        raise _MalformedResponse(f"point position must be 1-indexed, got {position}")
    return position


def _parse_quantity(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        quantity = Decimal(str(value))
    except InvalidOperation as exc:
        raise _MalformedResponse(f"invalid quantity '{value}'") from exc
    if not quantity.is_finite():
        raise _MalformedResponse(f"quantity must be finite, got '{value}'")
    return quantity


def describe_shape(value: Any, depth: int = 0, max_depth: int = 4) -> str:
    if depth >= max_depth:
        return "…"
    if isinstance(value, dict):
        inner = ", ".join(
            f"{key}: {describe_shape(item, depth + 1, max_depth)}" for key, item in list(value.items())[:8]
        )
        return "{" + inner + "}"
    if isinstance(value, list):
        if not value:
            return "[]"
        return f"[{describe_shape(value[0], depth + 1, max_depth)} x{len(value)}]"
    return type(value).__name__
