"""Pydantic schemas for validated model outputs and helper utilities."""

from __future__ import annotations

import json
from typing import Any, List, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "QuizQuestion",
    "QuizGeneration",
    "ConversationMessage",
    "find_json_array",
    "parse_questions",
]


class QuizQuestion(BaseModel):
    question: str = Field(min_length=1)
    options: List[str] = Field(
        min_length=4,
        max_length=4,
        description="Exactly four answer options, A to D.",
    )
    correct_answer: int = Field(
        ge=0,
        le=3,
        description="Index of the correct option (0-3 for A-D).",
    )
    explanation: str = ""

    @field_validator("options", mode="before")
    @classmethod
    def _stringify_options(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(option) for option in value]
        return value


class QuizGeneration(BaseModel):
    status: Literal["parsed", "fallback"]
    questions: List[QuizQuestion]
    error: str | None = Field(
        default=None,
        description="Parse error that triggered the fallback, if any.",
    )


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: int | None = None


def find_json_array(text: str) -> str | None:
    """Return the greedy ``[ ... ]`` span of ``text``: first '[' to last ']'."""
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end == -1 or end < start:
        return None
    return text[start : end + 1]


def _normalize_question(item: Any) -> Any:
    if isinstance(item, dict) and "correct_answer" not in item and "correctAnswer" in item:
        item = {**item, "correct_answer": item["correctAnswer"]}
    return item


def parse_questions(text: str) -> List[QuizQuestion]:
    """Parse model output into questions.

    The greedy array span is tried first; when there is none the whole text is
    parsed. Raises ``ValueError`` (or ``ValidationError``) when neither yields
    a non-empty list of valid questions.
    """
    snippet = find_json_array(text)
    payload = json.loads(snippet if snippet is not None else text)
    if not isinstance(payload, list):
        raise ValueError("Quiz response is not a JSON array")
    if not payload:
        raise ValueError("Quiz response contained no questions")
    try:
        return [QuizQuestion.model_validate(_normalize_question(item)) for item in payload]
    except ValidationError as exc:
        raise ValueError(f"Invalid quiz question: {exc.errors()[0]['msg']}") from exc
