"""Quiz answer scoring."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_answers(selected: Sequence[int], correct: Sequence[int]) -> Dict[str, Any]:
    """Score selected option indices against the correct ones.

    Returns the rounded percentage together with per-question correctness.
    An index of -1 marks an unanswered question and never matches.
    """
    if len(selected) != len(correct):
        raise ValueError(
            f"expected {len(correct)} answers, got {len(selected)}"
        )
    answers: List[Dict[str, Any]] = []
    matches = 0
    for index, (chosen, expected) in enumerate(zip(selected, correct)):
        if not -1 <= int(chosen) <= 3:
            raise ValueError(f"answer {index} must be between -1 and 3; got {chosen}")
        is_correct = int(chosen) == int(expected)
        if is_correct:
            matches += 1
        answers.append(
            {"question_index": index, "selected_answer": int(chosen), "correct": is_correct}
        )
    total = len(correct)
    score = round_half_up(matches / total * 100) if total else 0
    return {
        "score": score,
        "correct_count": matches,
        "total_questions": total,
        "answers": answers,
    }
