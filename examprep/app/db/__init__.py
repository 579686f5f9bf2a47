"""Database package for examprep.

This package provides:
- Database models (QuotaRecord, Topic, Question, PracticeSession, SessionQuestion)
- Asynchronous engine and session management
- CRUD operations for all models
"""

from examprep.app.db.base import Base
from examprep.app.db.models import (
    PracticeSession,
    Question,
    QuotaRecord,
    SessionQuestion,
    Topic,
)
from examprep.app.db.async_session import (
    close_async_engine,
    create_session_maker,
    get_async_engine,
    get_async_session_maker,
    init_async_db,
)

__all__ = [
    "Base",
    "PracticeSession",
    "Question",
    "QuotaRecord",
    "SessionQuestion",
    "Topic",
    "close_async_engine",
    "create_session_maker",
    "get_async_engine",
    "get_async_session_maker",
    "init_async_db",
]
