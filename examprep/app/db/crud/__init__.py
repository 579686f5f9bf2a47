"""CRUD operations package.

- quota.py: Quota record operations
- question.py: Read-only question and topic queries
- session.py: Practice session and assignment operations
"""

from examprep.app.db.crud.quota import (
    create_quota_record,
    get_quota_record,
    increment_daily_usage,
    reset_daily_usage,
)
from examprep.app.db.crud.question import (
    PRACTICE_SOURCE_TYPE,
    fetch_questions,
    get_first_topic_ids,
)
from examprep.app.db.crud.session import (
    abandonment_cutoff,
    complete_sessions_started_before,
    count_open_sessions_since,
    get_active_session,
    get_assigned_questions,
    get_session_by_idempotency_key,
    insert_practice_session,
    insert_session_questions,
    set_session_totals,
)

__all__ = [
    # Quota operations
    "create_quota_record",
    "get_quota_record",
    "increment_daily_usage",
    "reset_daily_usage",
    # Question operations
    "PRACTICE_SOURCE_TYPE",
    "fetch_questions",
    "get_first_topic_ids",
    # Session operations
    "abandonment_cutoff",
    "complete_sessions_started_before",
    "count_open_sessions_since",
    "get_active_session",
    "get_assigned_questions",
    "get_session_by_idempotency_key",
    "insert_practice_session",
    "insert_session_questions",
    "set_session_totals",
]
