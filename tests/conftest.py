import asyncio
import json
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    # Fresh pool per test so connections never outlive the temp file
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    return str(db_path)


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    token: Optional[str] = None,
):
    import app

    body = b""
    headers = [(b"host", b"testserver")]
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "null")
    return status, data


class ApiClient:
    """Drives the ASGI app directly, optionally as a logged-in user."""

    def __init__(self):
        self.token: Optional[str] = None

    def request(self, method: str, path: str, payload: Optional[dict] = None, query: Optional[dict] = None):
        return asyncio.run(_call_app(method, path, payload=payload, query=query, token=self.token))

    def get(self, path: str, query: Optional[dict] = None):
        return self.request("GET", path, query=query)

    def post(self, path: str, payload: Optional[dict] = None):
        return self.request("POST", path, payload=payload)

    def patch(self, path: str, payload: dict):
        return self.request("PATCH", path, payload=payload)

    def delete(self, path: str):
        return self.request("DELETE", path)

    def login(self, user_id: str, password: str = "secret") -> str:
        self.token = None
        self.post("/auth/register", {"user_id": user_id, "password": password})
        status, data = self.post("/auth/login", {"user_id": user_id, "password": password})
        assert status == 200, data
        self.token = data["token"]
        return self.token


@pytest.fixture
def api(temp_db):
    client = ApiClient()
    client.login("alice")
    return client


@pytest.fixture
def other_api(temp_db):
    client = ApiClient()
    client.login("mallory")
    return client


@pytest.fixture
def anonymous(temp_db):
    return ApiClient()
