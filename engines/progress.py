"""Topic completion bookkeeping and subject progress figures."""

from __future__ import annotations

import math
from functools import cmp_to_key
from typing import Any, Iterable, Mapping, Optional, Sequence

MASTERY_MIN = 0.0
MASTERY_MAX = 100.0

PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}


def clamp_mastery(value: Any) -> float:
    """Clamp a mastery level into the 0-100 range."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"mastery_level must be a number, got {value!r}") from None
    if math.isnan(number):
        raise ValueError("mastery_level must not be NaN")
    return max(MASTERY_MIN, min(MASTERY_MAX, number))


def count_completed(
    topics: Iterable[Mapping[str, Any]],
    *,
    changed_id: Optional[str] = None,
    changed_completed: Optional[bool] = None,
) -> int:
    """Count completed topics.

    When ``changed_id`` is given, that topic is counted by ``changed_completed``
    instead of whatever state was read back for it.
    """
    total = 0
    for topic in topics:
        if changed_id is not None and changed_completed is not None and topic["id"] == changed_id:
            done = bool(changed_completed)
        else:
            done = bool(topic.get("completed"))
        if done:
            total += 1
    return total


def progress_percentage(completed: int, total: int) -> float:
    if not total or total <= 0:
        return 0.0
    return min(100.0, (completed / total) * 100.0)


def average_mastery(topics: Sequence[Mapping[str, Any]]) -> float:
    if not topics:
        return 0.0
    return sum(float(t.get("mastery_level") or 0.0) for t in topics) / len(topics)


def _compare_subjects(a: Mapping[str, Any], b: Mapping[str, Any]) -> int:
    pa = PRIORITY_ORDER.get(a.get("priority"), 0)
    pb = PRIORITY_ORDER.get(b.get("priority"), 0)
    if pa != pb:
        return pb - pa
    if a.get("exam_date") and b.get("exam_date"):
        return (a["exam_date"] > b["exam_date"]) - (a["exam_date"] < b["exam_date"])
    return (a["created_at"] > b["created_at"]) - (a["created_at"] < b["created_at"])


def sort_subjects(subjects: Iterable[Mapping[str, Any]]) -> list:
    """Order by priority (high first), then exam date, then creation time."""
    return sorted(subjects, key=cmp_to_key(_compare_subjects))
