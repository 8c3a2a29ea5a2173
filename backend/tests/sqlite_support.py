from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session, sessionmaker

from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.models import MeteringPoint, Property, SyncLogEntry
from app.db.session import build_engine, build_session_factory as _session_factory_for


def build_session_factory() -> sessionmaker:
    engine = build_engine("sqlite+pysqlite://")
    Base.metadata.create_all(engine)
    return _session_factory_for(engine)


def add_property(
    db: Session,
    *,
    name: str = "Home",
    refresh_token: str | None = "refresh-token",
    metering_point_ids: tuple[str, ...] = (),
    latitude: str | None = None,
    longitude: str | None = None,
    weather_sync_enabled: bool = True,
) -> Property:
    prop = Property(
        name=name,
        refresh_token=refresh_token,
        latitude=Decimal(latitude) if latitude is not None else None,
        longitude=Decimal(longitude) if longitude is not None else None,
        weather_sync_enabled=weather_sync_enabled,
    )
    for metering_point_id in metering_point_ids:
        prop.metering_points.append(MeteringPoint(metering_point_id=metering_point_id, name=metering_point_id))
    db.add(prop)
    db.commit()
    return prop


def add_sync_log(
    db: Session,
    *,
    entity_key: str,
    sync_type: str,
    status: str,
    created_at: datetime | None = None,
    records_synced: int = 0,
) -> SyncLogEntry:
    entry = SyncLogEntry(
        entity_key=entity_key,
        sync_type=sync_type,
        status=status,
        records_synced=records_synced,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(entry)
    db.commit()
    return entry


def consumption_payload(
    metering_point_id: str,
    *,
    start: str,
    quantities: list[str],
    quality: str | None = None,
) -> dict:
    points = []
    for index, quantity in enumerate(quantities, start=1):
        point = {"position": str(index), "out_Quantity.quantity": quantity}
        if quality is not None:
            point["out_Quantity.quality"] = quality
        points.append(point)
    return {
        "result": [
            {
                "success": True,
                "MyEnergyData_MarketDocument": {
                    "TimeSeries": [
                        {
                            "mRID": metering_point_id,
                            "measurement_Unit": {"name": "KWH"},
                            "Period": [
                                {
                                    "resolution": "PT1H",
                                    "timeInterval": {"start": start, "end": start},
                                    "Point": points,
                                }
                            ],
                        }
                    ]
                },
            }
        ]
    }
