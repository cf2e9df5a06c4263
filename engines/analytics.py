"""Study-session analytics folded from completed sessions."""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from engines.scoring import round_half_up

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000
LEVELS = ("high", "medium", "low")


def window_start(days: int, now_ms: int) -> int:
    """Epoch milliseconds ``days`` before ``now_ms``."""
    return now_ms - int(days) * DAY_MS


def session_duration_minutes(start_ms: int, end_ms: int) -> int:
    return round_half_up((end_ms - start_ms) / MINUTE_MS)


def local_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).date().isoformat()


def _empty_distribution() -> Dict[str, int]:
    return {level: 0 for level in LEVELS}


def fold_sessions(sessions: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fold completed sessions into totals, per-day stats and level counts.

    Sessions are expected in ascending start-time order; the daily breakdown
    keeps that order.
    """
    total_sessions = 0
    total_minutes = 0
    daily: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    focus = _empty_distribution()
    fatigue = _empty_distribution()

    for session in sessions:
        duration = int(session.get("duration") or 0)
        total_sessions += 1
        total_minutes += duration

        day = local_date(int(session["start_time"]))
        bucket = daily.setdefault(day, {"sessions": 0, "duration": 0})
        bucket["sessions"] += 1
        bucket["duration"] += duration

        focus_level: Optional[str] = session.get("focus_level")
        if focus_level in focus:
            focus[focus_level] += 1
        fatigue_level: Optional[str] = session.get("fatigue_level")
        if fatigue_level in fatigue:
            fatigue[fatigue_level] += 1

    average = total_minutes / total_sessions if total_sessions else 0.0
    return {
        "total_sessions": total_sessions,
        "total_study_time": total_minutes,
        "average_session_length": average,
        "daily_stats": [{"date": day, **stats} for day, stats in daily.items()],
        "focus_distribution": focus,
        "fatigue_distribution": fatigue,
    }
