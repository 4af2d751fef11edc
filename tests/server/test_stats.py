from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from timeflow_server.services.stats import StatsCalculator

START = datetime(2024, 6, 10, tzinfo=timezone.utc)
HOUR_MS = 3_600_000


def activity(id, name, parent_id=None):
    return SimpleNamespace(
        id=id, name=name, parent_id=parent_id, icon=None, color="#000000", is_default=False, created_at=None
    )


def session(activity_id, start_hour, hours=None):
    started_at = START + timedelta(hours=start_hour)
    ended_at = started_at + timedelta(hours=hours) if hours is not None else None
    return SimpleNamespace(activity_id=activity_id, started_at=started_at, ended_at=ended_at)


ACTIVITIES = [activity(1, "Work"), activity(2, "Coding", parent_id=1), activity(3, "Sleep")]


def test_empty_range():
    stats = StatsCalculator(ACTIVITIES).calculate([], START, START + timedelta(days=1), include_hourly=True)
    assert stats.total_duration == 0
    assert stats.activities == []
    assert stats.hourly_breakdown == []


def test_durations_per_activity_and_day():
    sessions = [session(2, 9, 2), session(1, 11, 1), session(3, 22, 1), session(2, 24 + 9, 1)]
    stats = StatsCalculator(ACTIVITIES).calculate(sessions, START, START + timedelta(days=2))

    assert stats.session_count == 4
    assert stats.total_duration == 5 * HOUR_MS
    assert [(s.activity.name, s.total_duration) for s in stats.activities] == [
        ("Coding", 3 * HOUR_MS),
        ("Work", HOUR_MS),
        ("Sleep", HOUR_MS),
    ]
    assert [(d.date.isoformat(), d.total_duration) for d in stats.daily_breakdown] == [
        ("2024-06-10", 4 * HOUR_MS),
        ("2024-06-11", HOUR_MS),
    ]
    assert stats.hourly_breakdown is None


def test_max_depth_rolls_children_up():
    sessions = [session(2, 9, 2), session(1, 11, 1)]
    stats = StatsCalculator(ACTIVITIES).calculate(sessions, START, START + timedelta(days=1), max_depth=1)

    assert [(s.activity.name, s.total_duration, s.session_count) for s in stats.activities] == [
        ("Work", 3 * HOUR_MS, 2)
    ]


def test_open_session_counts_until_now():
    now = START + timedelta(hours=10, minutes=30)
    stats = StatsCalculator(ACTIVITIES, now=now).calculate(
        [session(1, 10)], START, now, include_hourly=True
    )

    assert stats.total_duration == HOUR_MS // 2
    assert [(h.hour, h.duration) for h in stats.hourly_breakdown] == [(10, HOUR_MS // 2)]
    assert stats.hourly_breakdown[0].activities[0].name == "Work"
