# app.py: StudyMate API
# - Subjects, topics, study sessions and analytics scoped to the caller
# - AI helpers over an OpenAI-compatible chat-completion endpoint (non-streaming)

import logging
import os, json, requests, hashlib, hmac, secrets, sqlite3, time
from contextlib import asynccontextmanager, contextmanager
from typing import Annotated, Any, Iterator, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

import db, tutor
from schemas import ConversationMessage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("OpenAI-style params in use: %s | model: %s", _base_params(), tutor.MODEL_ID)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="StudyMate", version="1.0.0", lifespan=_lifespan)

TOKENS = {}

_PUBLIC_PATHS = frozenset({"/", "/health"})
_PUBLIC_PREFIXES = ("/auth/",)


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _request_token(request: Request) -> Optional[str]:
    header_token = _extract_token(request.headers.get("authorization"))
    if header_token:
        return header_token
    return request.headers.get("x-token") or request.query_params.get("token")


def _authenticate_request(request: Request) -> Optional[str]:
    token = _request_token(request)
    if token and token in TOKENS:
        return TOKENS[token]
    return None


def _is_public(path: str) -> bool:
    return path in _PUBLIC_PATHS or any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


@app.middleware("http")
async def _enforce_token(request: Request, call_next):
    normalized_path = _normalize_path(request.url.path)
    if not _is_public(normalized_path):
        user_id = _authenticate_request(request)
        if not user_id:
            return Response(
                status_code=401,
                content=json.dumps({"detail": "missing or invalid token"}),
                media_type="application/json",
            )
        request.state.user_id = user_id
    return await call_next(request)


_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"

_LLM_LOGGER = logging.getLogger("studymate.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

LLM_FAILURE_DETAIL = "Failed to generate AI response"


# ---------- Helpers ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def _hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def _verify_password(password: str, stored_hash: Optional[str], stored_salt: Optional[str]) -> bool:
    if not stored_hash or not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash, derived)


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _caller(request: Request) -> str:
    return request.state.user_id


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Translate db/tutor exceptions into HTTP responses."""
    try:
        yield
    except db.RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except db.ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _base_params():
    """OpenAI-style sampling fields sent with every completion call."""
    return {
        "temperature": _safe_float("LLM_TEMPERATURE", 0.7),
        "max_tokens": _safe_int("LLM_MAX_TOKENS", 1000),
    }


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _llm_call(
    messages,
    *,
    feature: str,
    user_id: Optional[str] = None,
    prompt_version: Optional[str] = None,
) -> str:
    payload = {"model": tutor.MODEL_ID, "messages": messages, **_base_params()}
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("LLM_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    outcome = "error"
    try:
        try:
            r = requests.post(
                os.getenv("LLM_API_URL") or tutor.LLM_API_URL,
                json=payload,
                headers=headers,
                timeout=_safe_float("LLM_TIMEOUT", 120),
            )
            r.raise_for_status()
            data = r.json()
            content = data["choices"][0]["message"].get("content")
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.error("LLM call for %s failed: %s", feature, e, exc_info=True)
            raise HTTPException(status_code=502, detail=LLM_FAILURE_DETAIL) from e

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

        if not content:
            outcome = "empty"
            return tutor.EMPTY_RESPONSE_TEXT
        outcome = "ok"
        return content
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        try:
            db.record_llm_metric(
                user_id,
                feature,
                tutor.MODEL_ID,
                latency_ms,
                prompt_version=prompt_version,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                outcome=outcome,
            )
        except sqlite3.Error as exc:
            logger.debug("Could not persist LLM metric: %s", exc)
        log_record = {
            "event": "llm_call",
            "feature": feature,
            "user_id": user_id,
            "prompt_version": prompt_version or "default",
            "model": tutor.MODEL_ID,
            "latency_ms": latency_ms,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "outcome": outcome,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


def _complete(prompt: tutor.BuiltPrompt, user_id: str) -> str:
    return _llm_call(
        prompt.as_messages(),
        feature=prompt.feature,
        user_id=user_id,
        prompt_version=prompt.prompt_version,
    )


# ---------- Request bodies ----------
Level = Literal["low", "medium", "high"]
SubjectDifficulty = Literal["easy", "medium", "hard"]


class RegisterBody(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1)

class LoginBody(BaseModel):
    user_id: str
    password: str


class ProfileBody(BaseModel):
    name: str = Field(min_length=1)
    study_intensity: Level
    preferred_difficulty: Literal["easy", "medium", "advanced"]
    daily_study_hours: float = Field(gt=0, le=24)
    break_frequency: int = Field(gt=0)


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    study_intensity: Optional[Level] = None
    preferred_difficulty: Optional[Literal["easy", "medium", "advanced"]] = None
    daily_study_hours: Optional[float] = Field(default=None, gt=0, le=24)
    break_frequency: Optional[int] = Field(default=None, gt=0)


class SubjectBody(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    difficulty: SubjectDifficulty
    exam_date: Optional[int] = None
    total_topics: int = Field(default=0, ge=0)
    priority: Level


class SubjectUpdateBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    difficulty: Optional[SubjectDifficulty] = None
    exam_date: Optional[int] = None
    total_topics: Optional[int] = Field(default=None, ge=0)
    priority: Optional[Level] = None


class TopicBody(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    difficulty: SubjectDifficulty
    estimated_hours: float = Field(default=0, ge=0)


class TopicProgressBody(BaseModel):
    completed: Optional[bool] = None
    mastery_level: Optional[float] = None


class SessionStartBody(BaseModel):
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None


class SessionActivityBody(BaseModel):
    interaction_count: Optional[int] = Field(default=None, ge=0)
    breaks_count: Optional[int] = Field(default=None, ge=0)
    focus_level: Optional[Level] = None
    fatigue_level: Optional[Level] = None


class SessionEndBody(BaseModel):
    notes: Optional[str] = None


class QuizAttemptBody(BaseModel):
    answers: List[Annotated[int, Field(ge=-1, le=3)]] = Field(
        min_length=1, description="Selected option (0-3) per question; -1 when skipped."
    )
    time_spent: int = Field(default=0, ge=0, description="Seconds spent on the attempt.")


class ExplainBody(BaseModel):
    topic: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    difficulty: Literal["easy", "medium", "advanced"]
    context: Optional[str] = None


class QuizGenerateBody(BaseModel):
    subject: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    difficulty: SubjectDifficulty
    question_count: int = Field(default=5, ge=1, le=20)
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None


class ChatBody(BaseModel):
    message: str = Field(min_length=1)
    subject: Optional[str] = None
    difficulty: Optional[str] = None
    fatigue_level: Optional[Level] = None
    current_topic: Optional[str] = None
    conversation_history: Optional[List[ConversationMessage]] = None
    conversation_id: Optional[str] = None
    subject_id: Optional[str] = None
    persist: bool = True


class SummarizeBody(BaseModel):
    subject: str = Field(min_length=1)
    text: str = Field(min_length=1)


class PlanSubject(BaseModel):
    name: str
    difficulty: str
    exam_date: Optional[int] = None
    topics: int = Field(ge=0)


class StudyPlanBody(BaseModel):
    subjects: Optional[List[PlanSubject]] = None
    daily_hours: Optional[float] = Field(default=None, gt=0, le=24)
    study_intensity: Optional[str] = None


@app.get("/")
def root():
    return {"name": app.title, "version": app.version}


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------- Auth ----------
@app.post("/auth/register")
def auth_register(body: RegisterBody):
    if db.get_user_auth(body.user_id):
        raise HTTPException(status_code=400, detail="user_id exists")
    pw_hash, pw_salt = _hash_password(body.password)
    try:
        db.create_user(body.user_id, pw_hash, pw_salt)
    except db.ConflictError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True}

@app.post("/auth/login")
def auth_login(body: LoginBody):
    row = db.get_user_auth(body.user_id)
    if not row or not _verify_password(body.password, row["pw_hash"], row["pw_salt"]):
        raise HTTPException(status_code=401, detail="invalid credentials")
    token = secrets.token_urlsafe(24)
    TOKENS[token] = body.user_id
    return {"token": token, "user_id": body.user_id}

@app.post("/auth/logout")
def auth_logout(request: Request):
    token = _request_token(request)
    if not token or TOKENS.pop(token, None) is None:
        raise HTTPException(status_code=401, detail="missing or invalid token")
    return {"ok": True}


# ---------- Profile ----------
@app.get("/profile")
def profile_get(request: Request):
    return db.get_profile(_caller(request))

@app.post("/profile")
def profile_create(request: Request, body: ProfileBody):
    with _domain_errors():
        profile_id = db.create_profile(_caller(request), **body.model_dump())
    return {"id": profile_id}

@app.patch("/profile")
def profile_update(request: Request, body: ProfileUpdateBody):
    with _domain_errors():
        profile_id = db.update_profile(_caller(request), body.model_dump(exclude_unset=True))
    return {"id": profile_id}


# ---------- Subjects & topics ----------
@app.get("/subjects")
def subjects_list(request: Request):
    return db.list_subjects(_caller(request))

@app.post("/subjects")
def subjects_create(request: Request, body: SubjectBody):
    fields = body.model_dump()
    with _domain_errors():
        subject_id = db.create_subject(
            _caller(request),
            fields.pop("name"),
            fields.pop("difficulty"),
            fields.pop("total_topics"),
            fields.pop("priority"),
            **fields,
        )
    return {"id": subject_id}

@app.patch("/subjects/{subject_id}")
def subjects_update(subject_id: str, request: Request, body: SubjectUpdateBody):
    with _domain_errors():
        db.update_subject(_caller(request), subject_id, body.model_dump(exclude_unset=True))
        return db.get_subject(_caller(request), subject_id)

@app.delete("/subjects/{subject_id}")
def subjects_delete(subject_id: str, request: Request):
    with _domain_errors():
        removed = db.delete_subject(_caller(request), subject_id)
    return {"ok": True, "deleted": removed}

@app.get("/subjects/{subject_id}/progress")
def subjects_progress(subject_id: str, request: Request):
    with _domain_errors():
        return db.get_subject_progress(_caller(request), subject_id)

@app.get("/subjects/{subject_id}/topics")
def topics_list(subject_id: str, request: Request):
    return db.list_topics_by_subject(_caller(request), subject_id)

@app.post("/subjects/{subject_id}/topics")
def topics_create(subject_id: str, request: Request, body: TopicBody):
    with _domain_errors():
        topic_id = db.create_topic(
            _caller(request),
            subject_id,
            body.name,
            body.difficulty,
            body.estimated_hours,
            description=body.description,
        )
    return {"id": topic_id}

@app.patch("/topics/{topic_id}/progress")
def topics_update_progress(topic_id: str, request: Request, body: TopicProgressBody):
    with _domain_errors():
        return db.update_topic_progress(
            _caller(request),
            topic_id,
            completed=body.completed,
            mastery_level=body.mastery_level,
        )

@app.delete("/topics/{topic_id}")
def topics_delete(topic_id: str, request: Request):
    with _domain_errors():
        return db.delete_topic(_caller(request), topic_id)


# ---------- Study sessions ----------
@app.post("/sessions")
def sessions_start(request: Request, body: SessionStartBody):
    with _domain_errors():
        session_id = db.start_session(_caller(request), subject_id=body.subject_id, topic_id=body.topic_id)
    return {"id": session_id}

@app.get("/sessions/active")
def sessions_active(request: Request):
    return db.get_active_session(_caller(request))

@app.get("/sessions/recent")
def sessions_recent(request: Request, limit: int = Query(default=10, ge=1, le=100)):
    return db.list_recent_sessions(_caller(request), limit)

@app.patch("/sessions/{session_id}")
def sessions_update(session_id: str, request: Request, body: SessionActivityBody):
    with _domain_errors():
        db.update_session_activity(_caller(request), session_id, body.model_dump(exclude_unset=True))
        return db.get_session(_caller(request), session_id)

@app.post("/sessions/{session_id}/end")
def sessions_end(session_id: str, request: Request, body: Optional[SessionEndBody] = None):
    with _domain_errors():
        return db.end_session(_caller(request), session_id, notes=body.notes if body else None)

@app.get("/analytics")
def analytics(request: Request, days: int = Query(default=7, ge=1, le=365)):
    with _domain_errors():
        return db.study_analytics(_caller(request), days)


# ---------- Quizzes ----------
@app.get("/quizzes")
def quizzes_list(request: Request, subject_id: Optional[str] = None):
    return db.list_quizzes(_caller(request), subject_id)

@app.get("/quizzes/{quiz_id}")
def quizzes_get(quiz_id: str, request: Request):
    with _domain_errors():
        return db.get_quiz(_caller(request), quiz_id)

@app.delete("/quizzes/{quiz_id}")
def quizzes_delete(quiz_id: str, request: Request):
    with _domain_errors():
        db.delete_quiz(_caller(request), quiz_id)
    return {"ok": True}

@app.get("/quizzes/{quiz_id}/attempts")
def quizzes_attempts(quiz_id: str, request: Request):
    with _domain_errors():
        return db.list_quiz_attempts(_caller(request), quiz_id)

@app.post("/quizzes/{quiz_id}/attempts")
def quizzes_record_attempt(quiz_id: str, request: Request, body: QuizAttemptBody):
    with _domain_errors():
        return db.record_quiz_attempt(_caller(request), quiz_id, body.answers, time_spent=body.time_spent)


# ---------- AI ----------
@app.post("/ai/explain")
def ai_explain(request: Request, body: ExplainBody):
    with _domain_errors():
        prompt = tutor.build_explain_prompt(body.subject, body.topic, body.difficulty, body.context)
    return {"explanation": _complete(prompt, _caller(request))}

@app.post("/ai/quiz")
def ai_quiz(request: Request, body: QuizGenerateBody):
    user_id = _caller(request)
    with _domain_errors():
        if body.topic_id and not body.subject_id:
            raise ValueError("topic_id requires subject_id")
        if body.subject_id:
            db.get_subject(user_id, body.subject_id)
        if body.topic_id:
            db.get_topic(user_id, body.topic_id, subject_id=body.subject_id)
        prompt = tutor.build_quiz_prompt(body.subject, body.topic, body.difficulty, body.question_count)
    text = _complete(prompt, user_id)
    generation = tutor.parse_quiz_questions(text, body.topic)

    result = generation.model_dump()
    result["quiz_id"] = None
    if body.subject_id:
        with _domain_errors():
            result["quiz_id"] = db.save_quiz(
                user_id,
                body.subject_id,
                f"{body.subject}: {body.topic}",
                body.difficulty,
                result["questions"],
                status=generation.status,
                topic_id=body.topic_id,
            )
    return result

@app.post("/ai/chat")
def ai_chat(request: Request, body: ChatBody):
    user_id = _caller(request)
    history: list[dict[str, Any]] = [m.model_dump() for m in body.conversation_history or []]
    with _domain_errors():
        if body.conversation_id and not history:
            stored = db.get_conversation(user_id, body.conversation_id)
            history = list(stored.get("messages") or [])
        elif body.conversation_id:
            db.get_conversation(user_id, body.conversation_id)
        prompt = tutor.build_chat_prompt(
            body.message,
            subject=body.subject,
            difficulty=body.difficulty,
            fatigue_level=body.fatigue_level,
            history=history,
        )
    reply = _complete(prompt, user_id)

    conversation_id = body.conversation_id
    if body.persist:
        context = {
            "current_topic": body.current_topic,
            "difficulty": body.difficulty,
            "fatigue_level": body.fatigue_level,
        }
        with _domain_errors():
            conversation_id = db.append_conversation(
                user_id,
                [
                    {"role": "user", "content": body.message},
                    {"role": "assistant", "content": reply},
                ],
                conversation_id=body.conversation_id,
                subject_id=body.subject_id,
                context={k: v for k, v in context.items() if v is not None},
            )
    return {"response": reply, "conversation_id": conversation_id}

@app.post("/ai/summarize")
def ai_summarize(request: Request, body: SummarizeBody):
    prompt = tutor.build_summary_prompt(body.subject, body.text)
    return {"analysis": _complete(prompt, _caller(request))}

@app.post("/ai/study-plan")
def ai_study_plan(request: Request, body: StudyPlanBody):
    user_id = _caller(request)
    if body.subjects is not None:
        subjects = [s.model_dump() for s in body.subjects]
    else:
        subjects = [
            {
                "name": s["name"],
                "difficulty": s["difficulty"],
                "exam_date": s["exam_date"],
                "topics": s["total_topics"],
            }
            for s in db.list_subjects(user_id)
        ]
    daily_hours = body.daily_hours
    study_intensity = body.study_intensity
    if daily_hours is None or study_intensity is None:
        profile = db.get_profile(user_id) or {}
        daily_hours = daily_hours if daily_hours is not None else profile.get("daily_study_hours")
        study_intensity = study_intensity or profile.get("study_intensity")
    if not subjects:
        raise HTTPException(status_code=400, detail="no subjects to plan")
    if daily_hours is None or not study_intensity:
        raise HTTPException(status_code=400, detail="daily_hours and study_intensity required when no profile exists")

    prompt = tutor.build_study_plan_prompt(subjects, daily_hours, study_intensity)
    return {"plan": _complete(prompt, user_id)}


# ---------- Conversations ----------
@app.get("/conversations")
def conversations_list(request: Request, limit: int = Query(default=20, ge=1, le=100)):
    return db.list_conversations(_caller(request), limit)

@app.get("/conversations/{conversation_id}")
def conversations_get(conversation_id: str, request: Request):
    with _domain_errors():
        return db.get_conversation(_caller(request), conversation_id)

@app.delete("/conversations/{conversation_id}")
def conversations_delete(conversation_id: str, request: Request):
    with _domain_errors():
        db.delete_conversation(_caller(request), conversation_id)
    return {"ok": True}
