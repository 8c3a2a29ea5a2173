from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import AGGREGATION_HOUR, ConsumptionRecord, WeatherRecord
from app.repositories.errors import StorageError

# PostgreSQL caps a statement at 65535 bind parameters.
UPSERT_CHUNK_ROWS = 2000


@dataclass(frozen=True)
class ConsumptionRow:
    metering_point_id: str
    timestamp: datetime
    quantity: Decimal
    quality: str = "OK"
    measurement_unit: str = "kWh"
    aggregation_level: str = AGGREGATION_HOUR


@dataclass(frozen=True)
class WeatherRow:
    location_key: str
    timestamp: datetime
    temperature_celsius: float | None = None
    humidity_percent: float | None = None
    precipitation_mm: float | None = None
    wind_speed_kmh: float | None = None
    pressure_hpa: float | None = None
    weather_code: int | None = None
    weather_condition: str | None = None
    property_id: int | None = None
    data_source: str = "open-meteo"


def upsert_consumption(db: Session, records: Sequence[ConsumptionRow]) -> int:
    if not records:
        return 0

    now = datetime.now(timezone.utc)
    values = [
        {
            "metering_point_id": row.metering_point_id,
            "timestamp": _to_utc(row.timestamp),
            "aggregation_level": row.aggregation_level,
            "quantity": row.quantity,
            "quality": row.quality,
            "measurement_unit": row.measurement_unit,
            "created_at": now,
        }
        for row in records
    ]
    _upsert_chunks(
        db,
        model=ConsumptionRecord,
        values=values,
        conflict_columns=["metering_point_id", "timestamp", "aggregation_level"],
        update_columns=["quantity", "quality", "measurement_unit"],
    )
    return len(records)


def upsert_weather(db: Session, records: Sequence[WeatherRow]) -> int:
    if not records:
        return 0

    now = datetime.now(timezone.utc)
    values = [
        {
            "location_key": row.location_key,
            "property_id": row.property_id,
            "timestamp": _to_utc(row.timestamp),
            "temperature_celsius": row.temperature_celsius,
            "humidity_percent": row.humidity_percent,
            "precipitation_mm": row.precipitation_mm,
            "wind_speed_kmh": row.wind_speed_kmh,
            "pressure_hpa": row.pressure_hpa,
            "weather_code": row.weather_code,
            "weather_condition": row.weather_condition,
            "data_source": row.data_source,
            "created_at": now,
            "updated_at": now,
        }
        for row in records
    ]
    _upsert_chunks(
        db,
        model=WeatherRecord,
        values=values,
        conflict_columns=["location_key", "timestamp"],
        update_columns=[
            "temperature_celsius",
            "humidity_percent",
            "precipitation_mm",
            "wind_speed_kmh",
            "pressure_hpa",
            "weather_code",
            "weather_condition",
            "data_source",
            "updated_at",
        ],
    )
    return len(records)


def get_latest_consumption_timestamp(db: Session, metering_point_id: str) -> datetime | None:
    try:
        value = db.scalar(
            select(func.max(ConsumptionRecord.timestamp)).where(
                ConsumptionRecord.metering_point_id == metering_point_id
            )
        )
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to read latest consumption timestamp: {exc}") from exc
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return _to_utc(value)


def list_consumption(
    db: Session,
    *,
    metering_point_id: str,
    aggregation_level: str = AGGREGATION_HOUR,
) -> list[ConsumptionRecord]:
    return list(
        db.scalars(
            select(ConsumptionRecord)
            .where(
                ConsumptionRecord.metering_point_id == metering_point_id,
                ConsumptionRecord.aggregation_level == aggregation_level,
            )
            .order_by(ConsumptionRecord.timestamp.asc())
        )
    )


def list_weather(db: Session, *, location_key: str) -> list[WeatherRecord]:
    return list(
        db.scalars(
            select(WeatherRecord)
            .where(WeatherRecord.location_key == location_key)
            .order_by(WeatherRecord.timestamp.asc())
        )
    )


def _upsert_chunks(
    db: Session,
    *,
    model: Any,
    values: list[dict[str, Any]],
    conflict_columns: list[str],
    update_columns: list[str],
) -> None:
    insert = _dialect_insert(db)
    try:
        for start in range(0, len(values), UPSERT_CHUNK_ROWS):
            stmt = insert(model).values(values[start : start + UPSERT_CHUNK_ROWS])
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_columns,
                set_={column: stmt.excluded[column] for column in update_columns},
            )
            db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Failed to store {model.__tablename__} rows: {exc}") from exc


def _dialect_insert(db: Session) -> Any:
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    raise StorageError(f"Upsert is not supported for database dialect '{dialect_name}'")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
