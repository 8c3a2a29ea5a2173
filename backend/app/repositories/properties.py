from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.db.models import MeteringPoint, Property


def get_property(db: Session, property_id: int) -> Property | None:
    return db.scalars(
        select(Property)
        .options(selectinload(Property.metering_points))
        .where(Property.id == property_id)
    ).first()


def get_first_property(db: Session) -> Property | None:
    return db.scalars(select(Property).order_by(Property.id.asc()).limit(1)).first()


def list_properties(db: Session) -> list[Property]:
    return list(
        db.scalars(
            select(Property)
            .options(selectinload(Property.metering_points))
            .order_by(Property.id.asc())
        )
    )


def list_weather_enabled_properties(db: Session) -> list[Property]:
    return list(
        db.scalars(
            select(Property)
            .where(Property.weather_sync_enabled.is_(True))
            .order_by(Property.id.asc())
        )
    )


def find_metering_point(
    db: Session,
    *,
    metering_point_id: str,
    property_id: int | None = None,
) -> MeteringPoint | None:
    stmt = (
        select(MeteringPoint)
        .options(selectinload(MeteringPoint.property))
        .where(MeteringPoint.metering_point_id == metering_point_id)
    )
    if property_id is not None:
        stmt = stmt.where(MeteringPoint.property_id == property_id)
    return db.scalars(stmt.order_by(MeteringPoint.id.asc())).first()
