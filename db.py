import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from engines import progress
from engines.analytics import fold_sessions, session_duration_minutes, window_start
from engines.scoring import score_answers

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")


def _max_connections() -> int:
    try:
        return int(os.getenv("DB_MAX_CONNECTIONS", "") or 10)
    except ValueError:
        return 10


_pool = SQLiteConnectionPool(DB_PATH, max_connections=_max_connections())

SUBJECT_DIFFICULTIES = ("easy", "medium", "hard")
PRIORITIES = ("low", "medium", "high")
LEVELS = ("low", "medium", "high")
STUDY_INTENSITIES = ("low", "medium", "high")
PREFERRED_DIFFICULTIES = ("easy", "medium", "advanced")
QUIZ_STATUSES = ("parsed", "fallback")
MESSAGE_ROLES = ("user", "assistant")

_BOOL_FIELDS = {"completed"}
_JSON_FIELDS = {"questions", "answers", "messages", "context"}


class RecordNotFoundError(LookupError):
    """Target record is missing or belongs to another user."""


class ConflictError(Exception):
    """Operation conflicts with the current state of a record."""


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid4().hex


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Stored JSON field could not be decoded; returning raw text")
        return value


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for key in _BOOL_FIELDS & data.keys():
        data[key] = bool(data[key])
    for key in _JSON_FIELDS & data.keys():
        data[key] = _decode_json_field(data[key])
    return data


def _check_choice(field: str, value: Any, choices: Sequence[str]) -> None:
    if value not in choices:
        raise ValueError(f"{field} must be one of {', '.join(choices)}; got {value!r}")


def _owned_row(con: sqlite3.Connection, table: str, record_id: str, user_id: str, label: str) -> sqlite3.Row:
    row = con.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
    if row is None or row["user_id"] != user_id:
        raise RecordNotFoundError(f"{label} not found or access denied")
    return row


def _owned_topic(
    con: sqlite3.Connection, topic_id: str, user_id: str, subject_id: Optional[str] = None
) -> sqlite3.Row:
    topic = _owned_row(con, "topics", topic_id, user_id, "Topic")
    if subject_id is not None and topic["subject_id"] != subject_id:
        raise ValueError("topic does not belong to the given subject")
    return topic


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id          TEXT PRIMARY KEY,
              pw_hash     TEXT,
              pw_salt     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS profiles (
              id                   TEXT PRIMARY KEY,
              user_id              TEXT NOT NULL UNIQUE,
              name                 TEXT NOT NULL,
              study_intensity      TEXT NOT NULL,
              preferred_difficulty TEXT NOT NULL,
              daily_study_hours    REAL NOT NULL,
              break_frequency      INTEGER NOT NULL,
              created_at           INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS subjects (
              id               TEXT PRIMARY KEY,
              user_id          TEXT NOT NULL,
              name             TEXT NOT NULL,
              description      TEXT,
              difficulty       TEXT NOT NULL,
              exam_date        INTEGER,
              total_topics     INTEGER NOT NULL DEFAULT 0,
              completed_topics INTEGER NOT NULL DEFAULT 0,
              priority         TEXT NOT NULL,
              created_at       INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_subjects_user ON subjects(user_id);
            CREATE INDEX IF NOT EXISTS idx_subjects_exam_date ON subjects(user_id, exam_date);

            CREATE TABLE IF NOT EXISTS topics (
              id              TEXT PRIMARY KEY,
              subject_id      TEXT NOT NULL,
              user_id         TEXT NOT NULL,
              name            TEXT NOT NULL,
              description     TEXT,
              difficulty      TEXT NOT NULL,
              estimated_hours REAL NOT NULL DEFAULT 0,
              completed       INTEGER NOT NULL DEFAULT 0,
              last_studied    INTEGER,
              mastery_level   REAL NOT NULL DEFAULT 0,
              created_at      INTEGER NOT NULL,
              FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_topics_subject ON topics(subject_id);
            CREATE INDEX IF NOT EXISTS idx_topics_user ON topics(user_id);
            CREATE INDEX IF NOT EXISTS idx_topics_completion ON topics(user_id, completed);

            CREATE TABLE IF NOT EXISTS study_sessions (
              id                TEXT PRIMARY KEY,
              user_id           TEXT NOT NULL,
              subject_id        TEXT,
              topic_id          TEXT,
              start_time        INTEGER NOT NULL,
              end_time          INTEGER,
              duration          INTEGER,
              focus_level       TEXT,
              fatigue_level     TEXT,
              interaction_count INTEGER NOT NULL DEFAULT 0,
              breaks_count      INTEGER NOT NULL DEFAULT 0,
              completed         INTEGER NOT NULL DEFAULT 0,
              notes             TEXT,
              FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE SET NULL,
              FOREIGN KEY(topic_id) REFERENCES topics(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_user ON study_sessions(user_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_date ON study_sessions(user_id, start_time);

            CREATE TABLE IF NOT EXISTS quizzes (
              id         TEXT PRIMARY KEY,
              user_id    TEXT NOT NULL,
              subject_id TEXT NOT NULL,
              topic_id   TEXT,
              title      TEXT NOT NULL,
              difficulty TEXT NOT NULL,
              questions  TEXT NOT NULL,
              status     TEXT NOT NULL DEFAULT 'parsed',
              created_at INTEGER NOT NULL,
              FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE CASCADE,
              FOREIGN KEY(topic_id) REFERENCES topics(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_quizzes_user ON quizzes(user_id);
            CREATE INDEX IF NOT EXISTS idx_quizzes_subject ON quizzes(subject_id);

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id              TEXT PRIMARY KEY,
              user_id         TEXT NOT NULL,
              quiz_id         TEXT NOT NULL,
              score           INTEGER NOT NULL,
              total_questions INTEGER NOT NULL,
              time_spent      INTEGER NOT NULL DEFAULT 0,
              answers         TEXT NOT NULL,
              completed_at    INTEGER NOT NULL,
              FOREIGN KEY(quiz_id) REFERENCES quizzes(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_attempts_user ON quiz_attempts(user_id);
            CREATE INDEX IF NOT EXISTS idx_attempts_quiz ON quiz_attempts(quiz_id);

            CREATE TABLE IF NOT EXISTS conversations (
              id         TEXT PRIMARY KEY,
              user_id    TEXT NOT NULL,
              subject_id TEXT,
              messages   TEXT NOT NULL,
              context    TEXT,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);

            CREATE TABLE IF NOT EXISTS llm_metrics (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT,
              feature        TEXT NOT NULL,
              model_id       TEXT NOT NULL,
              prompt_version TEXT,
              latency_ms     INTEGER NOT NULL,
              tokens_in      INTEGER,
              tokens_out     INTEGER,
              outcome        TEXT NOT NULL,
              created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        con.commit()


# -------------- users / auth --------------
def get_user_auth(user_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT id, pw_hash, pw_salt FROM users WHERE id = ?", (user_id,))
    return rows[0] if rows else None


def create_user(user_id: str, pw_hash: str, pw_salt: Optional[str] = None) -> None:
    try:
        _exec(
            "INSERT INTO users(id, pw_hash, pw_salt) VALUES (?,?,?)",
            (user_id, pw_hash, pw_salt),
        )
    except sqlite3.IntegrityError:
        raise ConflictError("user_id exists") from None


# -------------- profiles --------------
_PROFILE_FIELDS = ("name", "study_intensity", "preferred_difficulty", "daily_study_hours", "break_frequency")


def _validate_profile_fields(fields: Mapping[str, Any]) -> None:
    if "study_intensity" in fields:
        _check_choice("study_intensity", fields["study_intensity"], STUDY_INTENSITIES)
    if "preferred_difficulty" in fields:
        _check_choice("preferred_difficulty", fields["preferred_difficulty"], PREFERRED_DIFFICULTIES)


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM profiles WHERE user_id = ?", (user_id,))
    return _row_to_dict(rows[0]) if rows else None


def create_profile(
    user_id: str,
    name: str,
    study_intensity: str,
    preferred_difficulty: str,
    daily_study_hours: float,
    break_frequency: int,
    *,
    now: Optional[int] = None,
) -> str:
    _validate_profile_fields(
        {"study_intensity": study_intensity, "preferred_difficulty": preferred_difficulty}
    )
    profile_id = _new_id()
    with _conn() as con:
        existing = con.execute("SELECT id FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        if existing:
            raise ConflictError("Profile already exists")
        try:
            con.execute(
                """
                INSERT INTO profiles(id, user_id, name, study_intensity, preferred_difficulty,
                                     daily_study_hours, break_frequency, created_at)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    profile_id,
                    user_id,
                    name,
                    study_intensity,
                    preferred_difficulty,
                    float(daily_study_hours),
                    int(break_frequency),
                    now if now is not None else _now_ms(),
                ),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Profile already exists") from None
        con.commit()
    return profile_id


def update_profile(user_id: str, updates: Mapping[str, Any]) -> str:
    changes = {k: v for k, v in updates.items() if k in _PROFILE_FIELDS and v is not None}
    _validate_profile_fields(changes)
    with _conn() as con:
        row = con.execute("SELECT id FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError("Profile not found")
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            con.execute(
                f"UPDATE profiles SET {assignments} WHERE id = ?",
                (*changes.values(), row["id"]),
            )
            con.commit()
    return row["id"]


# -------------- subjects --------------
_SUBJECT_FIELDS = ("name", "description", "difficulty", "exam_date", "total_topics", "priority")
_SUBJECT_NULLABLE = {"description", "exam_date"}


def _with_progress(subject: Dict[str, Any]) -> Dict[str, Any]:
    subject["progress_percentage"] = progress.progress_percentage(
        subject["completed_topics"], subject["total_topics"]
    )
    return subject


def list_subjects(user_id: str) -> list[Dict[str, Any]]:
    rows = _query("SELECT * FROM subjects WHERE user_id = ?", (user_id,))
    subjects = [_with_progress(_row_to_dict(row)) for row in rows]
    return progress.sort_subjects(subjects)


def get_subject(user_id: str, subject_id: str) -> Dict[str, Any]:
    with _conn() as con:
        row = _owned_row(con, "subjects", subject_id, user_id, "Subject")
    return _with_progress(_row_to_dict(row))


def get_topic(user_id: str, topic_id: str, *, subject_id: Optional[str] = None) -> Dict[str, Any]:
    """Load an owned topic, optionally requiring it to sit under ``subject_id``."""
    with _conn() as con:
        row = _owned_topic(con, topic_id, user_id, subject_id)
    return _row_to_dict(row)


def create_subject(
    user_id: str,
    name: str,
    difficulty: str,
    total_topics: int,
    priority: str,
    *,
    description: Optional[str] = None,
    exam_date: Optional[int] = None,
    now: Optional[int] = None,
) -> str:
    _check_choice("difficulty", difficulty, SUBJECT_DIFFICULTIES)
    _check_choice("priority", priority, PRIORITIES)
    subject_id = _new_id()
    _exec(
        """
        INSERT INTO subjects(id, user_id, name, description, difficulty, exam_date,
                             total_topics, completed_topics, priority, created_at)
        VALUES (?,?,?,?,?,?,?,0,?,?)
        """,
        (
            subject_id,
            user_id,
            name,
            description,
            difficulty,
            exam_date,
            int(total_topics),
            priority,
            now if now is not None else _now_ms(),
        ),
    )
    return subject_id


def update_subject(user_id: str, subject_id: str, updates: Mapping[str, Any]) -> str:
    changes: Dict[str, Any] = {}
    for key, value in updates.items():
        if key not in _SUBJECT_FIELDS:
            continue
        if value is None and key not in _SUBJECT_NULLABLE:
            continue
        changes[key] = value
    if "difficulty" in changes:
        _check_choice("difficulty", changes["difficulty"], SUBJECT_DIFFICULTIES)
    if "priority" in changes:
        _check_choice("priority", changes["priority"], PRIORITIES)

    with _conn() as con:
        _owned_row(con, "subjects", subject_id, user_id, "Subject")
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            con.execute(
                f"UPDATE subjects SET {assignments} WHERE id = ?",
                (*changes.values(), subject_id),
            )
            con.commit()
    return subject_id


def delete_subject(user_id: str, subject_id: str) -> Dict[str, int]:
    """Delete a subject together with its topics and quizzes."""
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        _owned_row(con, "subjects", subject_id, user_id, "Subject")
        topics = con.execute("DELETE FROM topics WHERE subject_id = ?", (subject_id,)).rowcount
        quizzes = con.execute("DELETE FROM quizzes WHERE subject_id = ?", (subject_id,)).rowcount
        con.execute("DELETE FROM subjects WHERE id = ?", (subject_id,))
        con.commit()
    logger.info("Deleted subject %s (%d topics, %d quizzes)", subject_id, topics, quizzes)
    return {"topics": topics, "quizzes": quizzes}


def get_subject_progress(user_id: str, subject_id: str) -> Dict[str, Any]:
    with _conn() as con:
        subject = _owned_row(con, "subjects", subject_id, user_id, "Subject")
        topic_rows = con.execute(
            "SELECT * FROM topics WHERE subject_id = ? ORDER BY created_at ASC", (subject_id,)
        ).fetchall()
    topics = [_row_to_dict(row) for row in topic_rows]
    completed = progress.count_completed(topics)
    return {
        "subject": _with_progress(_row_to_dict(subject)),
        "topics": topics,
        "completed_topics": completed,
        "total_topics": len(topics),
        "progress_percentage": progress.progress_percentage(completed, len(topics)),
        "average_mastery": progress.average_mastery(topics),
    }


# -------------- topics --------------
def _recount_completed(
    con: sqlite3.Connection,
    subject_id: str,
    *,
    changed_id: Optional[str] = None,
    changed_completed: Optional[bool] = None,
) -> int:
    rows = con.execute("SELECT id, completed FROM topics WHERE subject_id = ?", (subject_id,)).fetchall()
    count = progress.count_completed(
        (dict(row) for row in rows), changed_id=changed_id, changed_completed=changed_completed
    )
    con.execute("UPDATE subjects SET completed_topics = ? WHERE id = ?", (count, subject_id))
    return count


def list_topics_by_subject(user_id: str, subject_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM topics WHERE subject_id = ? AND user_id = ? ORDER BY created_at ASC",
        (subject_id, user_id),
    )
    return [_row_to_dict(row) for row in rows]


def create_topic(
    user_id: str,
    subject_id: str,
    name: str,
    difficulty: str,
    estimated_hours: float,
    *,
    description: Optional[str] = None,
    now: Optional[int] = None,
) -> str:
    _check_choice("difficulty", difficulty, SUBJECT_DIFFICULTIES)
    topic_id = _new_id()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        _owned_row(con, "subjects", subject_id, user_id, "Subject")
        con.execute(
            """
            INSERT INTO topics(id, subject_id, user_id, name, description, difficulty,
                               estimated_hours, completed, mastery_level, created_at)
            VALUES (?,?,?,?,?,?,?,0,0,?)
            """,
            (
                topic_id,
                subject_id,
                user_id,
                name,
                description,
                difficulty,
                float(estimated_hours),
                now if now is not None else _now_ms(),
            ),
        )
        _recount_completed(con, subject_id)
        con.commit()
    return topic_id


def update_topic_progress(
    user_id: str,
    topic_id: str,
    *,
    completed: Optional[bool] = None,
    mastery_level: Optional[float] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Patch completion/mastery of a topic and resync its subject's count."""
    updates: Dict[str, Any] = {"last_studied": now if now is not None else _now_ms()}
    if completed is not None:
        updates["completed"] = 1 if completed else 0
    if mastery_level is not None:
        updates["mastery_level"] = progress.clamp_mastery(mastery_level)

    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        topic = _owned_row(con, "topics", topic_id, user_id, "Topic")
        assignments = ", ".join(f"{column} = ?" for column in updates)
        con.execute(f"UPDATE topics SET {assignments} WHERE id = ?", (*updates.values(), topic_id))
        completed_count = _recount_completed(
            con,
            topic["subject_id"],
            changed_id=topic_id,
            changed_completed=bool(completed) if completed is not None else None,
        )
        row = con.execute("SELECT * FROM topics WHERE id = ?", (topic_id,)).fetchone()
        con.commit()
    result = _row_to_dict(row)
    result["subject_completed_topics"] = completed_count
    return result


def delete_topic(user_id: str, topic_id: str) -> Dict[str, Any]:
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        topic = _owned_row(con, "topics", topic_id, user_id, "Topic")
        con.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
        completed_count = _recount_completed(con, topic["subject_id"])
        con.commit()
    return {"topic_id": topic_id, "subject_completed_topics": completed_count}


# -------------- study sessions --------------
_SESSION_ACTIVITY_FIELDS = ("interaction_count", "breaks_count", "focus_level", "fatigue_level")


def start_session(
    user_id: str,
    *,
    subject_id: Optional[str] = None,
    topic_id: Optional[str] = None,
    now: Optional[int] = None,
) -> str:
    session_id = _new_id()
    with _conn() as con:
        if subject_id is not None:
            _owned_row(con, "subjects", subject_id, user_id, "Subject")
        if topic_id is not None:
            _owned_topic(con, topic_id, user_id, subject_id)
        con.execute(
            """
            INSERT INTO study_sessions(id, user_id, subject_id, topic_id, start_time,
                                       interaction_count, breaks_count, completed)
            VALUES (?,?,?,?,?,0,0,0)
            """,
            (session_id, user_id, subject_id, topic_id, now if now is not None else _now_ms()),
        )
        con.commit()
    return session_id


def get_session(user_id: str, session_id: str) -> Dict[str, Any]:
    with _conn() as con:
        row = _owned_row(con, "study_sessions", session_id, user_id, "Session")
    return _row_to_dict(row)


def update_session_activity(user_id: str, session_id: str, updates: Mapping[str, Any]) -> str:
    changes = {k: v for k, v in updates.items() if k in _SESSION_ACTIVITY_FIELDS and v is not None}
    for level_field in ("focus_level", "fatigue_level"):
        if level_field in changes:
            _check_choice(level_field, changes[level_field], LEVELS)
    for counter in ("interaction_count", "breaks_count"):
        if counter in changes and int(changes[counter]) < 0:
            raise ValueError(f"{counter} must not be negative")

    with _conn() as con:
        _owned_row(con, "study_sessions", session_id, user_id, "Session")
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            con.execute(
                f"UPDATE study_sessions SET {assignments} WHERE id = ?",
                (*changes.values(), session_id),
            )
            con.commit()
    return session_id


def end_session(
    user_id: str,
    session_id: str,
    *,
    notes: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    end_time = now if now is not None else _now_ms()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        session = _owned_row(con, "study_sessions", session_id, user_id, "Session")
        if session["completed"] or session["end_time"] is not None:
            raise ConflictError("Session already ended")
        duration = session_duration_minutes(session["start_time"], end_time)
        con.execute(
            """
            UPDATE study_sessions
            SET end_time = ?, duration = ?, completed = 1, notes = ?
            WHERE id = ?
            """,
            (end_time, duration, notes, session_id),
        )
        con.commit()
    return {"session_id": session_id, "duration": duration}


def get_active_session(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM study_sessions
        WHERE user_id = ? AND completed = 0
        ORDER BY start_time ASC
        LIMIT 1
        """,
        (user_id,),
    )
    return _row_to_dict(rows[0]) if rows else None


def list_recent_sessions(user_id: str, limit: int = 10) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM study_sessions
        WHERE user_id = ? AND completed = 1
        ORDER BY start_time DESC
        LIMIT ?
        """,
        (user_id, int(limit)),
    )
    return [_row_to_dict(row) for row in rows]


def list_completed_sessions_since(user_id: str, start_ms: int) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM study_sessions
        WHERE user_id = ? AND start_time >= ? AND completed = 1
        ORDER BY start_time ASC
        """,
        (user_id, int(start_ms)),
    )
    return [_row_to_dict(row) for row in rows]


def study_analytics(user_id: str, days: int = 7, *, now: Optional[int] = None) -> Dict[str, Any]:
    if days <= 0:
        raise ValueError("days must be positive")
    since = window_start(days, now if now is not None else _now_ms())
    summary = fold_sessions(list_completed_sessions_since(user_id, since))
    summary["days"] = int(days)
    summary["window_start"] = since
    return summary


# -------------- quizzes --------------
def save_quiz(
    user_id: str,
    subject_id: str,
    title: str,
    difficulty: str,
    questions: Sequence[Mapping[str, Any]],
    *,
    status: str = "parsed",
    topic_id: Optional[str] = None,
    now: Optional[int] = None,
) -> str:
    _check_choice("difficulty", difficulty, SUBJECT_DIFFICULTIES)
    _check_choice("status", status, QUIZ_STATUSES)
    if not questions:
        raise ValueError("a quiz needs at least one question")
    quiz_id = _new_id()
    with _conn() as con:
        _owned_row(con, "subjects", subject_id, user_id, "Subject")
        if topic_id is not None:
            _owned_topic(con, topic_id, user_id, subject_id)
        con.execute(
            """
            INSERT INTO quizzes(id, user_id, subject_id, topic_id, title, difficulty,
                                questions, status, created_at)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                quiz_id,
                user_id,
                subject_id,
                topic_id,
                title,
                difficulty,
                json_dumps([dict(q) for q in questions]),
                status,
                now if now is not None else _now_ms(),
            ),
        )
        con.commit()
    return quiz_id


def list_quizzes(user_id: str, subject_id: Optional[str] = None) -> list[Dict[str, Any]]:
    if subject_id:
        rows = _query(
            "SELECT * FROM quizzes WHERE user_id = ? AND subject_id = ? ORDER BY created_at DESC",
            (user_id, subject_id),
        )
    else:
        rows = _query(
            "SELECT * FROM quizzes WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
    return [_row_to_dict(row) for row in rows]


def get_quiz(user_id: str, quiz_id: str) -> Dict[str, Any]:
    with _conn() as con:
        row = _owned_row(con, "quizzes", quiz_id, user_id, "Quiz")
    return _row_to_dict(row)


def delete_quiz(user_id: str, quiz_id: str) -> str:
    with _conn() as con:
        _owned_row(con, "quizzes", quiz_id, user_id, "Quiz")
        con.execute("DELETE FROM quiz_attempts WHERE quiz_id = ?", (quiz_id,))
        con.execute("DELETE FROM quizzes WHERE id = ?", (quiz_id,))
        con.commit()
    return quiz_id


def record_quiz_attempt(
    user_id: str,
    quiz_id: str,
    selected_answers: Sequence[int],
    *,
    time_spent: int = 0,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Score ``selected_answers`` against the stored quiz and persist the attempt."""
    if int(time_spent) < 0:
        raise ValueError("time_spent must not be negative")
    attempt_id = _new_id()
    completed_at = now if now is not None else _now_ms()
    with _conn() as con:
        quiz = _owned_row(con, "quizzes", quiz_id, user_id, "Quiz")
        questions = _decode_json_field(quiz["questions"]) or []
        result = score_answers(
            list(selected_answers), [int(q["correct_answer"]) for q in questions]
        )
        con.execute(
            """
            INSERT INTO quiz_attempts(id, user_id, quiz_id, score, total_questions,
                                      time_spent, answers, completed_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                attempt_id,
                user_id,
                quiz_id,
                result["score"],
                result["total_questions"],
                int(time_spent),
                json_dumps(result["answers"]),
                completed_at,
            ),
        )
        con.commit()
    return {
        "id": attempt_id,
        "quiz_id": quiz_id,
        "score": result["score"],
        "correct_count": result["correct_count"],
        "total_questions": result["total_questions"],
        "time_spent": int(time_spent),
        "answers": result["answers"],
        "completed_at": completed_at,
    }


def list_quiz_attempts(user_id: str, quiz_id: str) -> list[Dict[str, Any]]:
    with _conn() as con:
        _owned_row(con, "quizzes", quiz_id, user_id, "Quiz")
        rows = con.execute(
            "SELECT * FROM quiz_attempts WHERE quiz_id = ? AND user_id = ? ORDER BY completed_at DESC",
            (quiz_id, user_id),
        ).fetchall()
    return [_row_to_dict(row) for row in rows]


# -------------- conversations --------------
def _clean_messages(messages: Sequence[Mapping[str, Any]], default_ts: int) -> list[Dict[str, Any]]:
    cleaned: list[Dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        _check_choice("role", role, MESSAGE_ROLES)
        cleaned.append(
            {
                "role": role,
                "content": str(message.get("content") or ""),
                "timestamp": int(message.get("timestamp") or default_ts),
            }
        )
    return cleaned


def append_conversation(
    user_id: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    conversation_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
    now: Optional[int] = None,
) -> str:
    """Append ``messages`` to a conversation, creating it when no id is given."""
    timestamp = now if now is not None else _now_ms()
    new_messages = _clean_messages(messages, timestamp)
    context_json = json_dumps(dict(context)) if context else None
    with _conn() as con:
        if conversation_id is None:
            if subject_id is not None:
                _owned_row(con, "subjects", subject_id, user_id, "Subject")
            conversation_id = _new_id()
            con.execute(
                """
                INSERT INTO conversations(id, user_id, subject_id, messages, context, created_at, updated_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (conversation_id, user_id, subject_id, json_dumps(new_messages), context_json, timestamp, timestamp),
            )
        else:
            row = _owned_row(con, "conversations", conversation_id, user_id, "Conversation")
            stored = _decode_json_field(row["messages"]) or []
            con.execute(
                """
                UPDATE conversations
                SET messages = ?, context = COALESCE(?, context), updated_at = ?
                WHERE id = ?
                """,
                (json_dumps(list(stored) + new_messages), context_json, timestamp, conversation_id),
            )
        con.commit()
    return conversation_id


def get_conversation(user_id: str, conversation_id: str) -> Dict[str, Any]:
    with _conn() as con:
        row = _owned_row(con, "conversations", conversation_id, user_id, "Conversation")
    return _row_to_dict(row)


def list_conversations(user_id: str, limit: int = 20) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
        (user_id, int(limit)),
    )
    return [_row_to_dict(row) for row in rows]


def delete_conversation(user_id: str, conversation_id: str) -> str:
    with _conn() as con:
        _owned_row(con, "conversations", conversation_id, user_id, "Conversation")
        con.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        con.commit()
    return conversation_id


# -------------- llm metrics --------------
def record_llm_metric(
    user_id: Optional[str],
    feature: str,
    model_id: str,
    latency_ms: int,
    *,
    prompt_version: Optional[str] = None,
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    outcome: str = "ok",
) -> None:
    _exec(
        """
        INSERT INTO llm_metrics(user_id, feature, model_id, prompt_version, latency_ms,
                                tokens_in, tokens_out, outcome)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            user_id,
            feature,
            model_id,
            prompt_version,
            int(latency_ms),
            None if tokens_in is None else int(tokens_in),
            None if tokens_out is None else int(tokens_out),
            outcome,
        ),
    )


def list_llm_metrics(user_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if user_id:
        rows = _query(
            "SELECT * FROM llm_metrics WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, int(limit)),
        )
    else:
        rows = _query("SELECT * FROM llm_metrics ORDER BY id DESC LIMIT ?", (int(limit),))
    return [dict(row) for row in rows]
