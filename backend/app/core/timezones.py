from __future__ import annotations

import logging
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def resolve_timezone(name: str) -> ZoneInfo:
    text = (name or "").strip()
    if text == "":
        raise ValueError("timezone must not be empty")
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone '{name}'") from exc


def zone_or_utc(name: str, logger: logging.Logger) -> tzinfo:
    try:
        return resolve_timezone(name)
    except ValueError as exc:
        logger.error("%s; falling back to UTC", exc)
        return timezone.utc
