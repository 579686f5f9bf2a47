"""Shared fixtures: a real SQLite store and an in-memory shared cache."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

from examprep.app.core.cache import InMemoryCache, reset_cache
from examprep.app.db import models  # noqa: F401 - import to register models
from examprep.app.db.async_session import create_session_maker
from examprep.app.db.base import Base
from examprep.app.db.models import PracticeSession, Question, QuotaRecord, Topic
from examprep.app.services.retry import RetryPolicy
from examprep.app.services.session_creator import reset_session_creator
from examprep.app.services.session_sweeper import reset_session_sweeper

NOW = datetime(2026, 3, 10, 14, 30, tzinfo=timezone.utc)

MULTIPLE_CHOICE_DETAILS = {
    "options": [
        {"option_number": "A", "option_text": "Mitochondria", "is_correct": True},
        {"option_number": "B", "option_text": "Ribosome", "is_correct": False},
        {"option_number": "C", "option_text": "Golgi body", "is_correct": False},
        {"option_number": "D", "option_text": "Lysosome", "is_correct": False},
    ]
}


def _sqlite_url_from_absolute_path(path: str) -> str:
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_cache()
    reset_session_creator()
    reset_session_sweeper()
    yield
    reset_cache()
    reset_session_creator()
    reset_session_sweeper()


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_path = tmp_path / "examprep_test.db"
    engine = create_async_engine(_sqlite_url_from_absolute_path(str(db_path)))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def fast_retry():
    """Retry policy without backoff sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


async def seed_topics(session_maker, subject_id: int, topic_ids: list[int]) -> None:
    async with session_maker() as session:
        async with session.begin():
            for topic_id in topic_ids:
                session.add(
                    Topic(
                        topic_id=topic_id,
                        subject_id=subject_id,
                        topic_name=f"Topic {topic_id}",
                        is_active=True,
                    )
                )


async def seed_questions(
    session_maker,
    subject_id: int,
    topic_id: int,
    count: int,
    subtopic_id=None,
    marks: int = 4,
    details=None,
    question_type: str = "MultipleChoice",
    source_type: str = "AI_Generated",
    is_active: bool = True,
) -> None:
    async with session_maker() as session:
        async with session.begin():
            for i in range(count):
                session.add(
                    Question(
                        subject_id=subject_id,
                        topic_id=topic_id,
                        subtopic_id=subtopic_id,
                        question_type=question_type,
                        source_type=source_type,
                        question_text=f"Subject {subject_id} topic {topic_id} question {i}",
                        details=details if details is not None else MULTIPLE_CHOICE_DETAILS,
                        marks=marks,
                        negative_marks=1,
                        is_active=is_active,
                    )
                )


async def seed_quota(
    session_maker,
    user_id: str,
    used_today: int = 0,
    last_usage_day=None,
    plan_code: str = "free",
    plan_limit=3,
) -> None:
    async with session_maker() as session:
        async with session.begin():
            session.add(
                QuotaRecord(
                    user_id=user_id,
                    plan_code=plan_code,
                    plan_limit=plan_limit,
                    used_today=used_today,
                    last_usage_day=last_usage_day,
                    total_used=used_today,
                )
            )


async def load_quota(session_maker, user_id: str):
    async with session_maker() as session:
        result = await session.execute(
            select(QuotaRecord).where(QuotaRecord.user_id == user_id)
        )
        return result.scalar_one_or_none()


async def count_sessions(session_maker, user_id=None) -> int:
    query = select(func.count()).select_from(PracticeSession)
    if user_id is not None:
        query = query.where(PracticeSession.user_id == user_id)
    async with session_maker() as session:
        return int((await session.execute(query)).scalar_one())
