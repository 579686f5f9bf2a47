"""Practice session CRUD operations.

Every function here leaves commit/rollback to the caller so session
creation stays one all-or-nothing transaction.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from examprep.app.db.models import PracticeSession, Question, SessionQuestion


async def insert_practice_session(
    session: AsyncSession,
    user_id: str,
    subject_id: int,
    topic_id: int | None,
    subtopic_id: int | None,
    session_type: str,
    requested_questions: int,
    start_time: datetime,
    idempotency_key: str | None = None,
) -> PracticeSession:
    """Insert a new open practice session and return it with its id."""
    practice_session = PracticeSession(
        user_id=user_id,
        subject_id=subject_id,
        topic_id=topic_id,
        subtopic_id=subtopic_id,
        session_type=session_type,
        start_time=start_time,
        total_questions=requested_questions,
        questions_attempted=0,
        questions_correct=0,
        is_completed=False,
        score=0,
        max_score=0,
        idempotency_key=idempotency_key,
    )
    session.add(practice_session)
    await session.flush()
    return practice_session


async def insert_session_questions(
    session: AsyncSession,
    session_id: int,
    user_id: str,
    questions: Iterable[tuple[int, int | None]],
) -> int:
    """Insert the ordered question assignments of a session in one batch.

    Args:
        session: Database session
        session_id: Owning practice session
        user_id: Owning user
        questions: (question_id, topic_id) pairs in presentation order

    Returns:
        Number of assignments inserted
    """
    rows = [
        SessionQuestion(
            session_id=session_id,
            question_id=question_id,
            user_id=user_id,
            topic_id=topic_id,
            question_order=order,
            is_bookmarked=False,
            time_spent_seconds=0,
        )
        for order, (question_id, topic_id) in enumerate(questions, start=1)
    ]
    session.add_all(rows)
    await session.flush()
    return len(rows)


async def set_session_totals(
    session: AsyncSession, session_id: int, total_questions: int, max_score: int
) -> None:
    await session.execute(
        update(PracticeSession)
        .where(PracticeSession.session_id == session_id)
        .values(total_questions=total_questions, max_score=max_score)
        .execution_options(synchronize_session=False)
    )


async def get_session_by_idempotency_key(
    session: AsyncSession, user_id: str, idempotency_key: str
) -> PracticeSession | None:
    result = await session.execute(
        select(PracticeSession).where(
            PracticeSession.user_id == user_id,
            PracticeSession.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def get_assigned_questions(session: AsyncSession, session_id: int) -> list[Question]:
    """Questions assigned to a session, in presentation order."""
    result = await session.execute(
        select(Question)
        .join(SessionQuestion, SessionQuestion.question_id == Question.question_id)
        .where(SessionQuestion.session_id == session_id)
        .order_by(SessionQuestion.question_order)
    )
    return list(result.scalars().all())


async def get_active_session(session: AsyncSession, user_id: str) -> PracticeSession | None:
    """Most recently started open session of a user, if any."""
    result = await session.execute(
        select(PracticeSession)
        .where(
            PracticeSession.user_id == user_id,
            PracticeSession.is_completed.is_(False),
        )
        .order_by(PracticeSession.start_time.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_open_sessions_since(
    session: AsyncSession, user_id: str, since: datetime
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(PracticeSession)
        .where(
            PracticeSession.user_id == user_id,
            PracticeSession.is_completed.is_(False),
            PracticeSession.start_time > since,
        )
    )
    return int(result.scalar_one())


async def complete_sessions_started_before(
    session: AsyncSession,
    cutoff: datetime,
    now: datetime,
    user_id: str | None = None,
) -> list[int]:
    """Mark open sessions started before ``cutoff`` as completed.

    Returns:
        Ids of the sessions that were completed
    """
    conditions = [
        PracticeSession.is_completed.is_(False),
        PracticeSession.start_time < cutoff,
    ]
    if user_id is not None:
        conditions.append(PracticeSession.user_id == user_id)

    result = await session.execute(
        select(PracticeSession.session_id).where(*conditions)
    )
    session_ids = list(result.scalars().all())
    if not session_ids:
        return []

    await session.execute(
        update(PracticeSession)
        .where(
            PracticeSession.session_id.in_(session_ids),
            PracticeSession.is_completed.is_(False),
        )
        .values(is_completed=True, end_time=now)
        .execution_options(synchronize_session=False)
    )
    return session_ids


def abandonment_cutoff(now: datetime, hours: float) -> datetime:
    return now - timedelta(hours=hours)
