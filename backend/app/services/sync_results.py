from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any


@dataclass
class SyncResult:
    success: bool
    entity_key: str
    sync_type: str
    records_synced: int = 0
    log_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    error: str | None = None
    error_kind: str | None = None
    up_to_date: bool = False
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date_from"] = _iso(self.date_from)
        payload["date_to"] = _iso(self.date_to)
        return payload


@dataclass
class AggregateSyncResult:
    """Outcome of a multi-entity sync; ``success`` only when no entity failed."""

    scope: str
    results: list[SyncResult] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.error_count == 0

    @property
    def error_count(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def records_synced(self) -> int:
        return sum(result.records_synced for result in self.results if result.success)

    @property
    def last_log_id(self) -> int | None:
        for result in reversed(self.results):
            if result.log_id is not None:
                return result.log_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "success": self.success,
            "records_synced": self.records_synced,
            "error_count": self.error_count,
            "error": self.error,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class BackfillResult:
    total_records: int = 0
    results: list[SyncResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(result.success for result in self.results)

    @property
    def batches(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_records": self.total_records,
            "batches": self.batches,
            "results": [result.to_dict() for result in self.results],
        }


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None
