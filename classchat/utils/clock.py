"""Timestamp helpers. All timestamps are timezone-aware UTC datetimes."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string; naive values are taken to be UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def minutes_until(deadline: datetime, now: datetime) -> int:
    """Whole minutes from *now* until *deadline*, rounded up. Never negative."""
    seconds = (deadline - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)
