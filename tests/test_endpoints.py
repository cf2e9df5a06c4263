import json
from unittest.mock import patch

import db


class _Resp:
    status_code = 200

    def __init__(self, content):
        self._payload = {"choices": [{"message": {"content": content}}]}

    def json(self):
        return self._payload

    def raise_for_status(self):
        return None


def _llm_returns(content):
    return patch("app.requests.post", return_value=_Resp(content))


def _create_subject(api, **overrides):
    payload = {"name": "Biology", "difficulty": "medium", "total_topics": 10, "priority": "high"}
    payload.update(overrides)
    status, data = api.post("/subjects", payload)
    assert status == 200, data
    return data["id"]


def test_health_and_root_are_public(anonymous):
    client = anonymous
    assert client.get("/health") == (200, {"status": "ok"})
    status, data = client.get("/")
    assert status == 200
    assert data["name"] == "StudyMate"


def test_protected_routes_require_token(anonymous):
    client = anonymous
    status, data = client.get("/subjects")
    assert status == 401
    assert data == {"detail": "missing or invalid token"}

    client.token = "not-a-token"
    assert client.get("/analytics")[0] == 401


def test_register_login_logout(anonymous):
    client = anonymous
    assert client.post("/auth/register", {"user_id": "bob", "password": "pw"}) == (200, {"ok": True})
    assert client.post("/auth/register", {"user_id": "bob", "password": "pw"})[0] == 400
    assert client.post("/auth/login", {"user_id": "bob", "password": "wrong"})[0] == 401

    client.login("bob", "pw")
    assert client.get("/subjects") == (200, [])
    assert client.post("/auth/logout")[0] == 200
    assert client.get("/subjects")[0] == 401


def test_profile_lifecycle(api):
    assert api.get("/profile") == (200, None)
    assert api.patch("/profile", {"name": "Al"})[0] == 404

    profile = {
        "name": "Alice",
        "study_intensity": "medium",
        "preferred_difficulty": "advanced",
        "daily_study_hours": 3,
        "break_frequency": 25,
    }
    assert api.post("/profile", profile)[0] == 200
    status, data = api.post("/profile", profile)
    assert status == 409
    assert data["detail"] == "Profile already exists"

    assert api.patch("/profile", {"daily_study_hours": 4.5})[0] == 200
    status, stored = api.get("/profile")
    assert stored["daily_study_hours"] == 4.5
    assert stored["name"] == "Alice"


def test_profile_validation_errors(api):
    status, _ = api.post("/profile", {"name": "Alice", "study_intensity": "extreme"})
    assert status == 422


def test_subject_crud_and_progress(api):
    subject_id = _create_subject(api)
    status, topic = api.post(f"/subjects/{subject_id}/topics", {"name": "Cells", "difficulty": "easy", "estimated_hours": 2})
    assert status == 200

    status, updated = api.patch(f"/topics/{topic['id']}/progress", {"completed": True, "mastery_level": 150})
    assert status == 200
    assert updated["mastery_level"] == 100.0
    assert updated["subject_completed_topics"] == 1

    status, subjects = api.get("/subjects")
    assert subjects[0]["completed_topics"] == 1
    assert subjects[0]["progress_percentage"] == 10.0

    status, progress = api.get(f"/subjects/{subject_id}/progress")
    assert progress["progress_percentage"] == 100.0

    status, patched = api.patch(f"/subjects/{subject_id}", {"description": "Life", "priority": "low"})
    assert status == 200
    assert patched["description"] == "Life"
    assert patched["name"] == "Biology"

    status, deleted = api.delete(f"/subjects/{subject_id}")
    assert status == 200
    assert deleted["deleted"]["topics"] == 1
    assert api.get(f"/subjects/{subject_id}/topics") == (200, [])


def test_other_users_records_are_not_found(api, other_api):
    subject_id = _create_subject(api)
    _, topic = api.post(f"/subjects/{subject_id}/topics", {"name": "Cells", "difficulty": "easy"})

    status, data = other_api.patch(f"/subjects/{subject_id}", {"name": "Mine"})
    assert status == 404
    assert data["detail"] == "Subject not found or access denied"
    assert other_api.delete(f"/subjects/{subject_id}")[0] == 404
    assert other_api.patch(f"/topics/{topic['id']}/progress", {"completed": True})[0] == 404
    assert other_api.get(f"/subjects/{subject_id}/topics") == (200, [])
    assert other_api.get("/subjects") == (200, [])


def test_session_flow(api):
    subject_id = _create_subject(api)
    status, started = api.post("/sessions", {"subject_id": subject_id})
    assert status == 200
    session_id = started["id"]

    assert api.get("/sessions/active")[1]["id"] == session_id
    status, session = api.patch(f"/sessions/{session_id}", {"interaction_count": 3, "fatigue_level": "high"})
    assert session["interaction_count"] == 3
    assert session["fatigue_level"] == "high"

    status, ended = api.post(f"/sessions/{session_id}/end", {"notes": "done"})
    assert status == 200
    assert ended["session_id"] == session_id
    assert api.post(f"/sessions/{session_id}/end", {})[0] == 409

    assert api.get("/sessions/active") == (200, None)
    status, recent = api.get("/sessions/recent")
    assert [s["id"] for s in recent] == [session_id]

    status, summary = api.get("/analytics", {"days": 7})
    assert status == 200
    assert summary["total_sessions"] == 1
    assert summary["fatigue_distribution"]["high"] == 1
    assert api.get("/analytics", {"days": 0})[0] == 422


def test_explain_endpoint(api):
    with _llm_returns("Cells are the unit of life.") as post:
        status, data = api.post(
            "/ai/explain", {"topic": "Cells", "subject": "Biology", "difficulty": "medium"}
        )

    assert status == 200
    assert data == {"explanation": "Cells are the unit of life."}
    prompt = post.call_args.kwargs["json"]["messages"][0]["content"]
    assert "Provide a detailed explanation with practical examples" in prompt


def test_llm_failure_returns_502(api):
    import requests

    with patch("app.requests.post", side_effect=requests.Timeout("slow")):
        status, data = api.post("/ai/summarize", {"subject": "Law", "text": "Contracts"})

    assert status == 502
    assert data["detail"] == "Failed to generate AI response"


def test_quiz_generation_saves_and_scores(api):
    subject_id = _create_subject(api)
    questions = [
        {"question": f"Q{i}?", "options": ["a", "b", "c", "d"], "correct_answer": i, "explanation": ""}
        for i in range(3)
    ]
    with _llm_returns("```json\n" + json.dumps(questions) + "\n```"):
        status, quiz = api.post(
            "/ai/quiz",
            {"subject": "Biology", "topic": "Cells", "difficulty": "easy", "question_count": 3, "subject_id": subject_id},
        )

    assert status == 200
    assert quiz["status"] == "parsed"
    assert len(quiz["questions"]) == 3
    quiz_id = quiz["quiz_id"]

    status, attempt = api.post(f"/quizzes/{quiz_id}/attempts", {"answers": [0, 1, 0], "time_spent": 40})
    assert status == 200
    assert attempt["score"] == 67
    assert api.post(f"/quizzes/{quiz_id}/attempts", {"answers": [0]})[0] == 400

    status, stored = api.get(f"/quizzes/{quiz_id}")
    assert stored["title"] == "Biology: Cells"
    assert len(api.get(f"/quizzes/{quiz_id}/attempts")[1]) == 1
    assert api.get("/quizzes", {"subject_id": subject_id})[1][0]["id"] == quiz_id
    assert api.delete(f"/quizzes/{quiz_id}")[0] == 200


def test_quiz_generation_fallback_is_tagged(api):
    with _llm_returns("I am not able to produce JSON right now."):
        status, quiz = api.post(
            "/ai/quiz", {"subject": "Biology", "topic": "Enzymes", "difficulty": "hard"}
        )

    assert status == 200
    assert quiz["status"] == "fallback"
    assert quiz["quiz_id"] is None
    assert quiz["questions"][0]["question"] == "What is an important concept in Enzymes?"
    assert quiz["questions"][0]["correct_answer"] == 0


def test_chat_persists_conversation(api, other_api):
    with _llm_returns("Let's start with cells."):
        status, first = api.post("/ai/chat", {"message": "Teach me biology", "fatigue_level": "low"})
    assert status == 200
    conversation_id = first["conversation_id"]

    with _llm_returns("Take a short break.") as post:
        status, second = api.post(
            "/ai/chat",
            {"message": "I'm exhausted", "fatigue_level": "high", "conversation_id": conversation_id},
        )
    assert second["conversation_id"] == conversation_id
    prompt = post.call_args.kwargs["json"]["messages"][0]["content"]
    assert "Student: Teach me biology" in prompt
    assert "Tutor: Let's start with cells." in prompt
    assert "The student seems tired" in prompt

    status, conversation = api.get(f"/conversations/{conversation_id}")
    assert [m["role"] for m in conversation["messages"]] == ["user", "assistant", "user", "assistant"]
    assert conversation["context"]["fatigue_level"] == "high"
    assert len(api.get("/conversations")[1]) == 1

    assert other_api.get(f"/conversations/{conversation_id}")[0] == 404
    with _llm_returns("nope"):
        assert other_api.post("/ai/chat", {"message": "hi", "conversation_id": conversation_id})[0] == 404
    assert api.delete(f"/conversations/{conversation_id}")[0] == 200
    assert api.get("/conversations") == (200, [])


def test_study_plan_falls_back_to_stored_data(api):
    assert api.post("/ai/study-plan", {})[0] == 400

    _create_subject(api, name="Chemistry", difficulty="hard", total_topics=12)
    api.post(
        "/profile",
        {
            "name": "Alice",
            "study_intensity": "high",
            "preferred_difficulty": "medium",
            "daily_study_hours": 2,
            "break_frequency": 30,
        },
    )
    with _llm_returns("Plan: study daily.") as post:
        status, data = api.post("/ai/study-plan", {})

    assert status == 200
    assert data == {"plan": "Plan: study daily."}
    prompt = post.call_args.kwargs["json"]["messages"][0]["content"]
    assert "Chemistry (hard difficulty, 12 topics)" in prompt
    assert "Daily study time available: 2 hours" in prompt
    assert "Study intensity preference: high" in prompt
    assert len(db.list_llm_metrics("alice")) == 1


def test_quiz_generation_checks_topic_before_calling_model(api, other_api):
    subject_id = _create_subject(api)
    other_subject_id = _create_subject(api, name="Chemistry")
    _, own_topic = api.post(f"/subjects/{other_subject_id}/topics", {"name": "Acids", "difficulty": "easy"})
    foreign_subject_id = _create_subject(other_api)
    _, foreign_topic = other_api.post(f"/subjects/{foreign_subject_id}/topics", {"name": "Cells", "difficulty": "easy"})
    base = {"subject": "Biology", "topic": "Cells", "difficulty": "easy", "question_count": 3}

    with _llm_returns("[]") as post:
        status, data = api.post("/ai/quiz", {**base, "subject_id": subject_id, "topic_id": foreign_topic["id"]})
        assert status == 404
        assert data["detail"] == "Topic not found or access denied"

        status, data = api.post("/ai/quiz", {**base, "subject_id": subject_id, "topic_id": own_topic["id"]})
        assert status == 400
        assert data["detail"] == "topic does not belong to the given subject"

        status, data = api.post("/ai/quiz", {**base, "topic_id": own_topic["id"]})
        assert status == 400
        assert data["detail"] == "topic_id requires subject_id"

    assert post.call_count == 0
    assert api.get("/quizzes") == (200, [])


def test_quiz_attempt_rejects_out_of_range_answers(api):
    subject_id = _create_subject(api)
    questions = [
        {"question": "Q?", "options": ["a", "b", "c", "d"], "correct_answer": 0, "explanation": ""}
    ]
    quiz_id = db.save_quiz("alice", subject_id, "Biology: Cells", "easy", questions)

    assert api.post(f"/quizzes/{quiz_id}/attempts", {"answers": [42]})[0] == 422
    assert api.post(f"/quizzes/{quiz_id}/attempts", {"answers": [-2]})[0] == 422
    status, attempt = api.post(f"/quizzes/{quiz_id}/attempts", {"answers": [-1]})
    assert status == 200
    assert attempt["score"] == 0
