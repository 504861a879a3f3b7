from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if ts_utc is None:
        return utcnow()

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def remaining_seconds(ends_at: datetime, now_utc: datetime) -> int:
    delta = normalize_ts(ends_at) - normalize_ts(now_utc)
    return max(0, int(delta.total_seconds()))
