"""Services package for examprep.

This package provides:
- Distributed per-user lock and idempotency records on the shared cache
- Daily quota ledger and the freemium-gated question pool
- Transient/fatal retry classification for database work
- The session creation coordinator and the abandoned session sweeper
"""

from examprep.app.services.idempotency import IdempotencyStore
from examprep.app.services.lock import DistributedLock
from examprep.app.services.question_pool import QuestionPool
from examprep.app.services.quota_ledger import QuotaEvaluation, QuotaLedger, is_premium
from examprep.app.services.retry import (
    ErrorKind,
    RetryPolicy,
    classify_error,
    run_with_retry,
    with_retry,
)
from examprep.app.services.schemas import (
    QuestionCandidate,
    SessionCreationRequest,
    SessionCreationResult,
)
from examprep.app.services.session_creator import (
    SessionCreator,
    get_session_creator,
    reset_session_creator,
)
from examprep.app.services.session_sweeper import (
    SessionSweeper,
    get_session_sweeper,
    reset_session_sweeper,
)

__all__ = [
    # Cache primitives
    "DistributedLock",
    "IdempotencyStore",
    # Quota and questions
    "QuotaEvaluation",
    "QuotaLedger",
    "is_premium",
    "QuestionPool",
    "QuestionCandidate",
    # Retry
    "ErrorKind",
    "RetryPolicy",
    "classify_error",
    "run_with_retry",
    "with_retry",
    # Session creation
    "SessionCreationRequest",
    "SessionCreationResult",
    "SessionCreator",
    "get_session_creator",
    "reset_session_creator",
    "SessionSweeper",
    "get_session_sweeper",
    "reset_session_sweeper",
]
