"""Online/offline classification from the last time a device was heard from.

Nothing here is stored: presence is recomputed from ``last_seen`` on every
read, so a device reported online may already be gone.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

PRESENCE_WINDOW = timedelta(minutes=5)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_online(
    last_seen: datetime | None,
    now: datetime | None = None,
    window: timedelta = PRESENCE_WINDOW,
) -> bool:
    """True when ``now - last_seen`` is within ``window``.

    Naive datetimes are taken as UTC. A device never seen is offline.
    """
    if last_seen is None:
        return False
    current = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    return current - _as_utc(last_seen) <= window


def presence_label(last_seen: datetime | None, now: datetime | None = None, window: timedelta = PRESENCE_WINDOW) -> str:
    return "online" if is_online(last_seen, now, window) else "offline"
