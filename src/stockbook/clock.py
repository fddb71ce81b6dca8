"""Time helpers shared by the caches, the store and the activity log."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current timezone-aware UTC datetime."""

    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as the ISO-8601 text persisted in worksheet cells.

    Microseconds are kept whenever they are non-zero.
    """

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse a persisted timestamp cell; naive values are assumed to be UTC.

    Returns ``None`` for blank or unparseable cells so callers can treat the
    value as missing.
    """

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        moment = raw
    else:
        try:
            moment = datetime.fromisoformat(str(raw))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment
