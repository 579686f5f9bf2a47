from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from examprep.app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaRecord(Base):
    """Per-user daily practice session counter.

    ``plan_limit`` of None means unlimited. ``used_today`` belongs to the UTC
    day in ``last_usage_day`` and is reset lazily on the next request of a
    later day.
    """

    __tablename__ = "user_quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    plan_code: Mapped[str] = mapped_column(String(50), default="free", nullable=False)
    plan_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_usage_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    total_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<QuotaRecord(user_id={self.user_id}, "
            f"used_today={self.used_today}/{self.plan_limit})>"
        )


class Topic(Base):
    __tablename__ = "topics"
    __table_args__ = (Index("idx_topics_subject", "subject_id"),)

    topic_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    topic_name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_topic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_filter", "subject_id", "topic_id", "subtopic_id"),
    )

    question_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    topic_id: Mapped[int] = mapped_column(ForeignKey("topics.topic_id"), nullable=False)
    subtopic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), default="AI_Generated")
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    difficulty_level: Mapped[str | None] = mapped_column(String(20), default="medium")
    marks: Mapped[int | None] = mapped_column(Integer, default=4)
    negative_marks: Mapped[int | None] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PracticeSession(Base):
    __tablename__ = "practice_sessions"
    __table_args__ = (
        Index("idx_practice_sessions_user_open", "user_id", "is_completed"),
        Index("idx_practice_sessions_start", "start_time"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_practice_sessions_idempotency"),
    )

    session_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    topic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subtopic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    session_type: Mapped[str] = mapped_column(String(20), default="Practice")
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    questions_attempted: Mapped[int] = mapped_column(Integer, default=0)
    questions_correct: Mapped[int] = mapped_column(Integer, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0)
    max_score: Mapped[int] = mapped_column(Integer, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<PracticeSession(id={self.session_id}, user={self.user_id}, completed={self.is_completed})>"


class SessionQuestion(Base):
    __tablename__ = "session_questions"
    __table_args__ = (
        UniqueConstraint("session_id", "question_order", name="uq_session_question_order"),
        Index("idx_session_questions_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("practice_sessions.session_id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    topic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_bookmarked: Mapped[bool] = mapped_column(Boolean, default=False)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, default=0)
