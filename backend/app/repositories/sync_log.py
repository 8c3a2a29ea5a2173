from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import desc, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import (
    SYNC_STATUS_ERROR,
    SYNC_STATUS_IN_PROGRESS,
    SYNC_STATUS_SUCCESS,
    SyncLogEntry,
)
from app.repositories.errors import StorageError

_logger = logging.getLogger("app.sync_log")

TERMINAL_STATUSES: tuple[str, ...] = (SYNC_STATUS_SUCCESS, SYNC_STATUS_ERROR)


def open_sync_log(
    db: Session,
    *,
    entity_key: str,
    sync_type: str,
    date_from: date | None,
    date_to: date | None,
    aggregation_level: str | None,
) -> int:
    entry = SyncLogEntry(
        entity_key=entity_key,
        sync_type=sync_type,
        date_from=date_from,
        date_to=date_to,
        aggregation_level=aggregation_level,
        status=SYNC_STATUS_IN_PROGRESS,
        records_synced=0,
        created_at=datetime.now(timezone.utc),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Failed to create sync log: {exc}") from exc
    return int(entry.id)


def close_sync_log(
    db: Session,
    *,
    log_id: int,
    status: str,
    records_synced: int | None = None,
    error_message: str | None = None,
) -> bool:
    if status not in TERMINAL_STATUSES:
        _logger.error("refusing non-terminal sync log close log_id=%s status=%s", log_id, status)
        return False

    values: dict[str, object] = {
        "status": status,
        "error_message": error_message,
        "finished_at": datetime.now(timezone.utc),
    }
    if records_synced is not None:
        values["records_synced"] = records_synced

    try:
        db.execute(
            update(SyncLogEntry)
            .where(
                SyncLogEntry.id == log_id,
                SyncLogEntry.status == SYNC_STATUS_IN_PROGRESS,
            )
            .values(**values)
        )
        db.commit()
    except Exception as exc:
        _logger.error(
            "failed to update sync log log_id=%s status=%s error=%s",
            log_id,
            status,
            exc,
        )
        try:
            db.rollback()
        except Exception:
            _logger.debug("rollback after failed sync log update also failed log_id=%s", log_id)
        return False
    return True


def has_recent_in_progress(
    db: Session,
    *,
    entity_keys: Sequence[str],
    sync_type: str,
    within: timedelta,
) -> bool:
    keys = [key for key in dict.fromkeys(entity_keys) if key]
    if not keys:
        return False
    cutoff = datetime.now(timezone.utc) - within
    try:
        row_id = db.scalar(
            select(SyncLogEntry.id)
            .where(
                SyncLogEntry.entity_key.in_(keys),
                SyncLogEntry.sync_type == sync_type,
                SyncLogEntry.status == SYNC_STATUS_IN_PROGRESS,
                SyncLogEntry.created_at > cutoff,
            )
            .limit(1)
        )
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to check in-progress syncs: {exc}") from exc
    return row_id is not None


def get_sync_log(db: Session, log_id: int) -> SyncLogEntry | None:
    return db.get(SyncLogEntry, log_id)


def get_latest_sync_log(db: Session, *, sync_type: str | None = None) -> SyncLogEntry | None:
    stmt = select(SyncLogEntry)
    if sync_type is not None:
        stmt = stmt.where(SyncLogEntry.sync_type == sync_type)
    return db.scalars(stmt.order_by(desc(SyncLogEntry.created_at), desc(SyncLogEntry.id))).first()


def get_last_successful_sync(
    db: Session,
    *,
    entity_key: str,
    sync_type: str,
) -> SyncLogEntry | None:
    return db.scalars(
        select(SyncLogEntry)
        .where(
            SyncLogEntry.entity_key == entity_key,
            SyncLogEntry.sync_type == sync_type,
            SyncLogEntry.status == SYNC_STATUS_SUCCESS,
        )
        .order_by(desc(SyncLogEntry.created_at), desc(SyncLogEntry.id))
    ).first()


def list_sync_logs(
    db: Session,
    *,
    limit: int = 50,
    entity_key: str | None = None,
    sync_type: str | None = None,
    status: str | None = None,
) -> list[SyncLogEntry]:
    stmt = select(SyncLogEntry)
    if entity_key is not None:
        stmt = stmt.where(SyncLogEntry.entity_key == entity_key)
    if sync_type is not None:
        stmt = stmt.where(SyncLogEntry.sync_type == sync_type)
    if status is not None:
        stmt = stmt.where(SyncLogEntry.status == status)
    return list(
        db.scalars(
            stmt.order_by(desc(SyncLogEntry.created_at), desc(SyncLogEntry.id)).limit(limit)
        )
    )


def reconcile_stale_in_progress(db: Session, *, older_than: timedelta) -> int:
    cutoff = datetime.now(timezone.utc) - older_than
    result = db.execute(
        update(SyncLogEntry)
        .where(
            SyncLogEntry.status == SYNC_STATUS_IN_PROGRESS,
            SyncLogEntry.created_at < cutoff,
        )
        .values(
            status=SYNC_STATUS_ERROR,
            error_message="sync interrupted before completion",
            finished_at=datetime.now(timezone.utc),
        )
    )
    db.commit()
    return int(result.rowcount or 0)
