"""Read-only question and topic queries."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examprep.app.db.models import Question, Topic

PRACTICE_SOURCE_TYPE = "AI_Generated"


async def fetch_questions(
    session: AsyncSession,
    subject_id: int,
    topic_id: int | None = None,
    subtopic_id: int | None = None,
) -> list[Question]:
    """Fetch every active practice question matching the filters.

    Args:
        session: Database session
        subject_id: Subject to draw from
        topic_id: Optional topic filter
        subtopic_id: Optional subtopic filter

    Returns:
        Questions ordered by id
    """
    conditions = [
        Question.subject_id == subject_id,
        Question.source_type == PRACTICE_SOURCE_TYPE,
        Question.is_active.is_(True),
    ]
    if topic_id is not None:
        conditions.append(Question.topic_id == topic_id)
    if subtopic_id is not None:
        conditions.append(Question.subtopic_id == subtopic_id)

    result = await session.execute(
        select(Question).where(*conditions).order_by(Question.question_id)
    )
    return list(result.scalars().all())


async def get_first_topic_ids(
    session: AsyncSession, subject_id: int, limit: int
) -> list[int]:
    """Ids of the first ``limit`` active root topics of a subject, by topic id."""
    result = await session.execute(
        select(Topic.topic_id)
        .where(
            Topic.subject_id == subject_id,
            Topic.is_active.is_(True),
            Topic.parent_topic_id.is_(None),
        )
        .order_by(Topic.topic_id)
        .limit(limit)
    )
    return list(result.scalars().all())
