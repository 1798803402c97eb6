from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Serialize a datetime for storage.

    Naive values are taken as UTC. Microseconds are always written so that
    stored strings sort in chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid datetime format: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_email_date(value: str, internal_date_ms: Optional[str] = None) -> datetime:
    """Parse a `Date` header, falling back to Gmail's internalDate and then to now."""
    if value and value.strip():
        try:
            parsed = parsedate_to_datetime(value.strip())
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header %r", value)
    if internal_date_ms:
        try:
            ts_ms = int(internal_date_ms)
        except ValueError:
            ts_ms = 0
        if ts_ms > 0:
            return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return utc_now()


def window_start(now: datetime, hours: int) -> datetime:
    return now - timedelta(hours=hours)


def trim_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def elapsed_ms(started: float, finished: float) -> int:
    return max(0, int(round((finished - started) * 1000)))
