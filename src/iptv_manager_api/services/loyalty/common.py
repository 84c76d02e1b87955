"""Shared helpers for loyalty services: clocks and pagination cursors."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Tuple
from uuid import UUID

from .errors import LoyaltyValidationError

MAX_PAGE_SIZE = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise timestamps read back from backends that drop tzinfo (SQLite)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bounded_limit(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as error:
        raise LoyaltyValidationError("Invalid pagination cursor") from error


__all__ = [
    "MAX_PAGE_SIZE",
    "as_utc",
    "bounded_limit",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
    "utcnow",
]
