"""
Time helpers shared by the store, the reports and the review timeline.

Recorded evidence starts when the session goes active, so a detection's
position in the session recording is its offset from ``started_at``.
"""
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def video_offset(detected_at: datetime | None, started_at: datetime | None) -> float | None:
    """
    Seconds from session start to ``detected_at``.

    Returns None when the session never started. Detections stamped before
    the start (clock skew between client and server) clamp to 0.
    """
    if detected_at is None or started_at is None:
        return None
    delta = (as_utc(detected_at) - as_utc(started_at)).total_seconds()
    return max(0.0, round(delta, 3))


def format_elapsed(seconds: float | None) -> str:
    if seconds is None:
        return "--:--"
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"
