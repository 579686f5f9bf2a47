"""Tests for the practice session HTTP API."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from conftest import seed_questions, seed_quota, seed_topics
from examprep.app.core.cache import InMemoryCache
from examprep.app.core.utils import utc_today
from examprep.app.db.async_session import create_session_maker
from examprep.app.db.base import Base
from examprep.app.exceptions import (
    FatalDatabaseError,
    LockContentionError,
    NoQuestionsAvailableError,
    TransientDatabaseError,
)
from examprep.app.main import create_app
from examprep.app.services.retry import RetryPolicy
from examprep.app.services.session_creator import SessionCreator, get_session_creator


def _sqlite_url_from_absolute_path(path: str) -> str:
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


@pytest.fixture
def api(tmp_path):
    """App wired to a file-backed SQLite store, without running the lifespan."""
    # Requests run on their own event loops; pooled aiosqlite connections must not be shared
    engine = create_async_engine(
        _sqlite_url_from_absolute_path(str(tmp_path / "api.db")), poolclass=NullPool
    )
    session_maker = create_session_maker(engine)

    async def init_db() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await seed_topics(session_maker, 1, [10, 11])
        await seed_questions(session_maker, 1, 10, 4)
        await seed_questions(session_maker, 1, 11, 4)
        await seed_topics(session_maker, 3, [30, 31, 32])
        await seed_questions(session_maker, 3, 32, 4)
        await seed_quota(session_maker, "exhausted", used_today=3, last_usage_day=utc_today())

    asyncio.run(init_db())

    creator = SessionCreator(
        session_maker=session_maker,
        cache=InMemoryCache(),
        retry_policy=RetryPolicy(base_delay=0),
    )
    app = create_app()
    app.dependency_overrides[get_session_creator] = lambda: creator

    client = TestClient(app, raise_server_exceptions=False)
    yield client, creator

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def _post(client, body, user="u1", key=None):
    headers = {"X-User-Id": user}
    if key:
        headers["Idempotency-Key"] = key
    return client.post("/v1/practice-sessions", json=body, headers=headers)


def test_create_session(api):
    client, _ = api

    resp = _post(client, {"subject_id": 1, "question_count": 5}, key="abc")

    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["idempotency_key"] == "abc"
    assert len(data["questions"]) == 5
    assert data["questions"][0]["details"]["question_type"] == "MultipleChoice"
    assert "X-Request-ID" in resp.headers


def test_idempotent_retry_returns_same_session(api):
    client, _ = api

    first = _post(client, {"subject_id": 1}, key="same").json()
    second = _post(client, {"subject_id": 1}, key="same").json()

    assert second["session_id"] == first["session_id"]


def test_generated_idempotency_key(api):
    client, _ = api

    data = _post(client, {"subject_id": 1}).json()

    assert data["idempotency_key"]


def test_missing_user_header(api):
    client, _ = api

    resp = client.post("/v1/practice-sessions", json={"subject_id": 1})

    assert resp.status_code == 422


@pytest.mark.parametrize(
    "body",
    [
        {"subject_id": 1, "question_count": 0},
        {"subject_id": 1, "question_count": 201},
        {"subject_id": 1, "session_type": "Exam"},
        {"question_count": 5},
    ],
)
def test_invalid_body(api, body):
    client, _ = api
    assert _post(client, body).status_code == 422


def test_quota_exceeded(api):
    client, _ = api

    resp = _post(client, {"subject_id": 1}, user="exhausted")

    assert resp.status_code == 429
    data = resp.json()
    assert data["error"] == "quota_exceeded"
    assert data["limit"] == 3
    assert data["reset_at"].endswith("T00:00:00+00:00")


def test_topic_access_denied(api):
    client, _ = api

    resp = _post(client, {"subject_id": 3, "topic_id": 32})

    assert resp.status_code == 403
    assert resp.json()["error"] == "topic_access_denied"


def test_no_questions_available(api):
    client, _ = api

    resp = _post(client, {"subject_id": 1, "topic_id": 10, "subtopic_id": 999})

    assert resp.status_code == 404
    assert resp.json()["error"] == "no_questions_available"


def test_lock_contention_sets_retry_after(api):
    client, creator = api
    creator.create_session = AsyncMock(side_effect=LockContentionError("u1", retry_after=2))

    resp = _post(client, {"subject_id": 1})

    assert resp.status_code == 409
    assert resp.headers["Retry-After"] == "2"
    assert resp.json()["retry_after"] == 2


@pytest.mark.parametrize(
    "error, status",
    [
        (TransientDatabaseError(attempts=3), 503),
        (FatalDatabaseError(), 500),
        (NoQuestionsAvailableError(1), 404),
    ],
)
def test_error_status_mapping(api, error, status):
    client, creator = api
    creator.create_session = AsyncMock(side_effect=error)

    resp = _post(client, {"subject_id": 1})

    assert resp.status_code == status
    assert resp.json()["error"] == error.error_code


def test_active_session(api):
    client, _ = api

    assert client.get(
        "/v1/practice-sessions/active", headers={"X-User-Id": "u1"}
    ).status_code == 404

    created = _post(client, {"subject_id": 1}).json()
    resp = client.get("/v1/practice-sessions/active", headers={"X-User-Id": "u1"})

    assert resp.status_code == 200
    assert resp.json()["session_id"] == created["session_id"]
    assert resp.json()["session_type"] == "Practice"


def test_quota_status(api):
    client, _ = api

    resp = client.get("/v1/practice-sessions/quota", headers={"X-User-Id": "exhausted"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["can_take"] is False
    assert data["limit"] == 3
