import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from engines.analytics import local_date
from prompts import get_prompt
from schemas import QuizGeneration, QuizQuestion, parse_questions

logger = logging.getLogger(__name__)

# --------- Model/endpoint from environment ---------
MODEL_ID = os.getenv("MODEL_ID", "gpt-4.1-nano")
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")

EMPTY_RESPONSE_TEXT = "I apologize, but I couldn't generate a response."

DIFFICULTY_INSTRUCTIONS = {
    "easy": "Explain this concept in simple terms with basic examples, suitable for beginners",
    "medium": "Provide a detailed explanation with practical examples and some technical depth",
    "advanced": "Give an in-depth, comprehensive explanation with complex examples and technical details",
}

HISTORY_WINDOW = 6
SUMMARY_CHAR_LIMIT = 4000
HIGH_FATIGUE_NOTE = (
    "Note: The student seems tired. Keep your response concise and encouraging. "
    "Suggest a break if appropriate."
)

FALLBACK_OPTIONS = ("Option A", "Option B", "Option C", "Option D")
FALLBACK_EXPLANATION = "This is a sample question. Please try generating the quiz again."


@dataclass(frozen=True)
class BuiltPrompt:
    feature: str
    prompt_version: str
    text: str

    def as_messages(self) -> list[dict[str, str]]:
        return [{"role": "user", "content": self.text}]


def _build(feature: str, prompt_id: str, **values: Any) -> BuiltPrompt:
    template = get_prompt(prompt_id)
    return BuiltPrompt(feature=feature, prompt_version=template.prompt_version, text=template.render(**values))


def _format_number(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else str(number)


# --------- Prompt builders ---------
def build_explain_prompt(subject: str, topic: str, difficulty: str, context: Optional[str] = None) -> BuiltPrompt:
    if difficulty not in DIFFICULTY_INSTRUCTIONS:
        raise ValueError(f"Unsupported difficulty '{difficulty}'")
    return _build(
        "explain",
        "explain_concept",
        subject=subject,
        difficulty_instruction=DIFFICULTY_INSTRUCTIONS[difficulty],
        topic=topic,
        context_line=f"Additional Context: {context}" if context else "",
    )


def build_quiz_prompt(subject: str, topic: str, difficulty: str, question_count: int) -> BuiltPrompt:
    if int(question_count) < 1:
        raise ValueError("question_count must be at least 1")
    return _build(
        "quiz",
        "generate_quiz",
        subject=subject,
        question_count=int(question_count),
        topic=topic,
        difficulty=difficulty,
    )


def format_history(history: Optional[Sequence[Mapping[str, Any]]]) -> str:
    """Render the last few turns as ``Student:``/``Tutor:`` lines."""
    if not history:
        return ""
    lines = [
        f"{'Student' if msg.get('role') == 'user' else 'Tutor'}: {msg.get('content', '')}"
        for msg in list(history)[-HISTORY_WINDOW:]
    ]
    return "\n\nPrevious conversation:\n" + "\n".join(lines)


def build_chat_prompt(
    message: str,
    *,
    subject: Optional[str] = None,
    difficulty: Optional[str] = None,
    fatigue_level: Optional[str] = None,
    history: Optional[Sequence[Mapping[str, Any]]] = None,
) -> BuiltPrompt:
    context_info = []
    if subject:
        context_info.append(f"Subject: {subject}")
    if difficulty:
        context_info.append(f"Preferred difficulty: {difficulty}")
    if fatigue_level:
        context_info.append(f"Current fatigue level: {fatigue_level}")
    return _build(
        "chat",
        "chat",
        context_line=f"Context: {', '.join(context_info)}" if context_info else "",
        history_block=format_history(history),
        fatigue_note=f"\n\n{HIGH_FATIGUE_NOTE}" if fatigue_level == "high" else "",
        message=message,
    )


def truncate_for_summary(text: str) -> str:
    marker = "..." if len(text) > SUMMARY_CHAR_LIMIT else ""
    return f"{text[:SUMMARY_CHAR_LIMIT]} {marker}"


def build_summary_prompt(subject: str, text: str) -> BuiltPrompt:
    return _build("summarize", "summarize_text", subject=subject, text=truncate_for_summary(text))


def format_plan_subject(subject: Mapping[str, Any]) -> str:
    details = f"{subject['difficulty']} difficulty, {int(subject['topics'])} topics"
    if subject.get("exam_date"):
        details += f", exam: {local_date(int(subject['exam_date']))}"
    return f"{subject['name']} ({details})"


def build_study_plan_prompt(
    subjects: Sequence[Mapping[str, Any]],
    daily_hours: float,
    study_intensity: str,
) -> BuiltPrompt:
    return _build(
        "study_plan",
        "study_plan",
        subjects_info="\n".join(format_plan_subject(s) for s in subjects),
        daily_hours=_format_number(daily_hours),
        study_intensity=study_intensity,
    )


# --------- Quiz parsing ---------
def fallback_question(topic: str) -> QuizQuestion:
    return QuizQuestion(
        question=f"What is an important concept in {topic}?",
        options=list(FALLBACK_OPTIONS),
        correct_answer=0,
        explanation=FALLBACK_EXPLANATION,
    )


def parse_quiz_questions(text: str, topic: str) -> QuizGeneration:
    """Extract quiz questions from a completion, degrading to a placeholder."""
    try:
        questions = parse_questions(text or "")
    except ValueError as exc:
        logger.warning("Failed to parse quiz JSON for topic %r: %s", topic, exc)
        return QuizGeneration(status="fallback", questions=[fallback_question(topic)], error=str(exc))
    return QuizGeneration(status="parsed", questions=questions)
