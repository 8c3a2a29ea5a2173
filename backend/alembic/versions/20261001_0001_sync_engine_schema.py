"""initial schema for properties, metering points, time series and sync log

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261001_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Numeric(9, 6), nullable=True),
        sa.Column("longitude", sa.Numeric(9, 6), nullable=True),
        sa.Column("weather_sync_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "metering_points",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("metering_point_id", sa.String(length=18), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "property_id",
            "metering_point_id",
            name="uq_metering_points_property_external_id",
        ),
    )

    op.create_table(
        "consumption_data",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("metering_point_id", sa.String(length=18), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("aggregation_level", sa.String(length=20), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=True),
        sa.Column("quality", sa.String(length=50), nullable=False),
        sa.Column("measurement_unit", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "metering_point_id",
            "timestamp",
            "aggregation_level",
            name="uq_consumption_data_mp_ts_level",
        ),
    )
    op.create_index(
        "ix_consumption_data_mp_ts",
        "consumption_data",
        ["metering_point_id", "timestamp"],
        unique=False,
    )

    op.create_table(
        "weather_data",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("location_key", sa.String(length=64), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("temperature_celsius", sa.Float(), nullable=True),
        sa.Column("humidity_percent", sa.Float(), nullable=True),
        sa.Column("precipitation_mm", sa.Float(), nullable=True),
        sa.Column("wind_speed_kmh", sa.Float(), nullable=True),
        sa.Column("pressure_hpa", sa.Float(), nullable=True),
        sa.Column("weather_code", sa.Integer(), nullable=True),
        sa.Column("weather_condition", sa.String(length=100), nullable=True),
        sa.Column("data_source", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("location_key", "timestamp", name="uq_weather_data_location_ts"),
    )
    op.create_index("ix_weather_data_timestamp", "weather_data", ["timestamp"], unique=False)

    op.create_table(
        "data_sync_log",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("entity_key", sa.String(length=64), nullable=False),
        sa.Column("sync_type", sa.String(length=50), nullable=False),
        sa.Column("date_from", sa.Date(), nullable=True),
        sa.Column("date_to", sa.Date(), nullable=True),
        sa.Column("aggregation_level", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("records_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress','success','error')",
            name="ck_data_sync_log_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_data_sync_log_entity_type",
        "data_sync_log",
        ["entity_key", "sync_type"],
        unique=False,
    )
    op.create_index("ix_data_sync_log_created_at", "data_sync_log", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_data_sync_log_created_at", table_name="data_sync_log")
    op.drop_index("ix_data_sync_log_entity_type", table_name="data_sync_log")
    op.drop_table("data_sync_log")
    op.drop_index("ix_weather_data_timestamp", table_name="weather_data")
    op.drop_table("weather_data")
    op.drop_index("ix_consumption_data_mp_ts", table_name="consumption_data")
    op.drop_table("consumption_data")
    op.drop_table("metering_points")
    op.drop_table("properties")
