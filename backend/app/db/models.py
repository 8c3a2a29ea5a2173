from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

SYNC_STATUS_IN_PROGRESS = "in_progress"
SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_ERROR = "error"

SYNC_TYPE_ENERGY = "energy"
SYNC_TYPE_WEATHER = "weather_historical"

AGGREGATION_HOUR = "Hour"


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="My Property")
    address: Mapped[str | None] = mapped_column(String(255))
    refresh_token: Mapped[str | None] = mapped_column(Text)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    weather_sync_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    metering_points: Mapped[list["MeteringPoint"]] = relationship(
        back_populates="property",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MeteringPoint.id",
    )
    weather_records: Mapped[list["WeatherRecord"]] = relationship(
        back_populates="property",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MeteringPoint(Base):
    __tablename__ = "metering_points"
    __table_args__ = (
        UniqueConstraint(
            "property_id",
            "metering_point_id",
            name="uq_metering_points_property_external_id",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("properties.id", ondelete="CASCADE"),
        nullable=False,
    )
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="My Meter")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    property: Mapped[Property] = relationship(back_populates="metering_points")


class ConsumptionRecord(Base):
    __tablename__ = "consumption_data"
    __table_args__ = (
        UniqueConstraint(
            "metering_point_id",
            "timestamp",
            "aggregation_level",
            name="uq_consumption_data_mp_ts_level",
        ),
        Index("ix_consumption_data_mp_ts", "metering_point_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    aggregation_level: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    quality: Mapped[str] = mapped_column(String(50), nullable=False, default="OK")
    measurement_unit: Mapped[str] = mapped_column(String(20), nullable=False, default="kWh")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class WeatherRecord(Base):
    __tablename__ = "weather_data"
    __table_args__ = (
        UniqueConstraint("location_key", "timestamp", name="uq_weather_data_location_ts"),
        Index("ix_weather_data_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    location_key: Mapped[str] = mapped_column(String(64), nullable=False)
    property_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("properties.id", ondelete="CASCADE"),
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    temperature_celsius: Mapped[float | None] = mapped_column(Float)
    humidity_percent: Mapped[float | None] = mapped_column(Float)
    precipitation_mm: Mapped[float | None] = mapped_column(Float)
    wind_speed_kmh: Mapped[float | None] = mapped_column(Float)
    pressure_hpa: Mapped[float | None] = mapped_column(Float)
    weather_code: Mapped[int | None] = mapped_column(Integer)
    weather_condition: Mapped[str | None] = mapped_column(String(100))
    data_source: Mapped[str] = mapped_column(String(50), nullable=False, default="open-meteo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    property: Mapped[Property | None] = relationship(back_populates="weather_records")


class SyncLogEntry(Base):
    __tablename__ = "data_sync_log"
    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress','success','error')",
            name="ck_data_sync_log_status",
        ),
        Index("ix_data_sync_log_entity_type", "entity_key", "sync_type"),
        Index("ix_data_sync_log_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    entity_key: Mapped[str] = mapped_column(String(64), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)
    date_from: Mapped[date | None] = mapped_column(Date)
    date_to: Mapped[date | None] = mapped_column(Date)
    aggregation_level: Mapped[str | None] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    records_synced: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
