from __future__ import annotations

from datetime import datetime, timedelta, timezone

from beacon.presence import PRESENCE_WINDOW, is_online, presence_label

NOW = datetime(2026, 1, 1, 12, 0, 0)


def test_window_is_five_minutes() -> None:
    assert PRESENCE_WINDOW == timedelta(minutes=5)


def test_presence_flips_at_the_window_edge() -> None:
    assert is_online(NOW - timedelta(minutes=4, seconds=59), NOW) is True
    assert is_online(NOW - timedelta(minutes=5, seconds=1), NOW) is False


def test_exactly_on_the_window_is_online() -> None:
    assert is_online(NOW - PRESENCE_WINDOW, NOW) is True


def test_never_seen_is_offline() -> None:
    assert is_online(None, NOW) is False
    assert presence_label(None, NOW) == "offline"


def test_naive_and_aware_timestamps_compare_as_utc() -> None:
    aware_now = NOW.replace(tzinfo=timezone.utc)
    assert is_online(NOW - timedelta(minutes=1), aware_now) is True
    # 13:59 at +02:00 is 11:59 UTC
    plus_two = timezone(timedelta(hours=2))
    assert is_online(datetime(2026, 1, 1, 13, 59, tzinfo=plus_two), NOW) is True


def test_custom_window() -> None:
    last_seen = NOW - timedelta(seconds=90)
    assert is_online(last_seen, NOW, window=timedelta(minutes=1)) is False
    assert presence_label(last_seen, NOW, window=timedelta(minutes=2)) == "online"
