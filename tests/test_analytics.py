from datetime import datetime

import pytest

import db
from engines.analytics import DAY_MS, fold_sessions, local_date, session_duration_minutes, window_start


def _ms(year, month, day, hour=12):
    return int(datetime(year, month, day, hour).timestamp() * 1000)


def test_duration_rounds_half_up():
    assert session_duration_minutes(0, 90_000) == 2
    assert session_duration_minutes(0, 89_999) == 1
    assert session_duration_minutes(0, 0) == 0


def test_window_start():
    assert window_start(7, 10 * DAY_MS) == 3 * DAY_MS


def test_fold_of_no_sessions_is_all_zero():
    summary = fold_sessions([])

    assert summary["total_sessions"] == 0
    assert summary["total_study_time"] == 0
    assert summary["average_session_length"] == 0.0
    assert summary["daily_stats"] == []
    assert summary["focus_distribution"] == {"high": 0, "medium": 0, "low": 0}
    assert summary["fatigue_distribution"] == {"high": 0, "medium": 0, "low": 0}


def test_fold_groups_by_local_day_in_order():
    sessions = [
        {"start_time": _ms(2024, 3, 1, 9), "duration": 30, "focus_level": "high", "fatigue_level": None},
        {"start_time": _ms(2024, 3, 1, 18), "duration": 45, "focus_level": "low", "fatigue_level": "high"},
        {"start_time": _ms(2024, 3, 2, 10), "duration": 15, "focus_level": None, "fatigue_level": "medium"},
    ]

    summary = fold_sessions(sessions)

    assert summary["total_sessions"] == 3
    assert summary["total_study_time"] == 90
    assert summary["average_session_length"] == pytest.approx(30.0)
    assert summary["daily_stats"] == [
        {"date": "2024-03-01", "sessions": 2, "duration": 75},
        {"date": "2024-03-02", "sessions": 1, "duration": 15},
    ]
    assert summary["focus_distribution"] == {"high": 1, "medium": 0, "low": 1}
    assert summary["fatigue_distribution"] == {"high": 1, "medium": 1, "low": 0}


def test_local_date_uses_local_calendar():
    assert local_date(_ms(2024, 12, 31, 23)) == "2024-12-31"


def test_study_analytics_only_counts_completed_sessions_in_window(temp_db):
    now = _ms(2024, 3, 10)
    old = db.start_session("alice", now=now - 10 * DAY_MS)
    db.end_session("alice", old, now=now - 10 * DAY_MS + 20 * 60_000)
    recent = db.start_session("alice", now=now - DAY_MS)
    db.update_session_activity("alice", recent, {"focus_level": "medium"})
    db.end_session("alice", recent, now=now - DAY_MS + 40 * 60_000)
    db.start_session("alice", now=now - 2 * DAY_MS)

    summary = db.study_analytics("alice", 7, now=now)

    assert summary["total_sessions"] == 1
    assert summary["total_study_time"] == 40
    assert summary["focus_distribution"]["medium"] == 1
    assert summary["days"] == 7
    assert summary["window_start"] == now - 7 * DAY_MS


def test_study_analytics_rejects_non_positive_window(temp_db):
    with pytest.raises(ValueError):
        db.study_analytics("alice", 0)
