"""Practice session creation coordinator.

Creating a session is guarded three ways:

1. An idempotency record per (user, token) returns the original result to a
   retried request.
2. A per-user distributed lock keeps at most one creation per user in flight
   across every instance. Acquisition never waits; a busy lock is reported to
   the caller as LockContentionError.
3. The quota check, access check, question selection, inserts and quota
   increment run as one transaction, retried as a whole on transient
   database failures.

The idempotency record is checked again after the lock is taken: a request
that waited out a previous holder must see that holder's committed result.
The token is also stored on the session row, unique per user, so a retry
whose cache record was never written still finds the committed session
inside the transaction instead of creating a second one.
"""

import time
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examprep.app.core.cache import CacheBackend, get_cache
from examprep.app.core.cache_keys import session_lock_key, user_cache_keys
from examprep.app.core.config import settings
from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.core.utils import utc_now
from examprep.app.db.async_session import get_async_session_maker
from examprep.app.db.crud import (
    count_open_sessions_since,
    get_active_session,
    get_assigned_questions,
    get_session_by_idempotency_key,
    insert_practice_session,
    insert_session_questions,
    set_session_totals,
)
from examprep.app.db.crud.session import abandonment_cutoff
from examprep.app.db.models import PracticeSession
from examprep.app.exceptions import (
    FatalDatabaseError,
    LockContentionError,
    TopicAccessDeniedError,
)
from examprep.app.services.idempotency import IdempotencyStore
from examprep.app.services.lock import DistributedLock
from examprep.app.services.question_pool import QuestionPool, to_candidate
from examprep.app.services.quota_ledger import QuotaLedger, is_premium
from examprep.app.services.retry import RetryPolicy, run_with_retry
from examprep.app.services.schemas import SessionCreationRequest, SessionCreationResult

logger = get_logger(__name__)


class SessionCreator:
    """Creates practice sessions exactly once per idempotency token.

    Collaborators are constructor arguments; any left out falls back to the
    application defaults built on the shared cache and session maker.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CacheBackend] = None,
        lock: Optional[DistributedLock] = None,
        idempotency: Optional[IdempotencyStore] = None,
        ledger: Optional[QuotaLedger] = None,
        pool: Optional[QuestionPool] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._session_maker = session_maker or get_async_session_maker()
        self._cache = cache or get_cache()
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self.lock = lock or DistributedLock(self._cache)
        self.idempotency = idempotency or IdempotencyStore(self._cache)
        self.ledger = ledger or QuotaLedger(self._session_maker, self._cache, self._retry_policy)
        self.pool = pool or QuestionPool(self._session_maker, self._cache, self._retry_policy)

    async def create_session(
        self,
        request: SessionCreationRequest,
        idempotency_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SessionCreationResult:
        """Create a practice session for ``request.user_id``.

        Args:
            request: What to create
            idempotency_token: Client token deduplicating retries. Generated
                and returned in the result when absent.
            now: Creation instant, defaults to the current UTC time

        Raises:
            LockContentionError: another creation for the user is in flight
            QuotaExceededError: today's quota is used up
            TopicAccessDeniedError: free user asked for a premium topic
            NoQuestionsAvailableError: nothing matches the filters
            TransientDatabaseError: the store stayed unavailable across retries
            FatalDatabaseError: the store rejected the transaction
        """
        start = time.perf_counter()
        user_id = request.user_id
        token = idempotency_token or str(uuid.uuid4())
        context = get_log_context(user_id=user_id, idempotency_key=token)

        if idempotency_token is not None:
            existing = await self.idempotency.get(user_id, token)
            if existing is not None:
                logger.info(
                    f"Returning existing session {existing.session_id} for idempotency key",
                    extra={**context, "session_id": existing.session_id},
                )
                return existing

        lock_key = session_lock_key(user_id)
        holder = await self.lock.acquire(lock_key)
        if holder is None:
            logger.info(
                f"Session creation already in progress for user {user_id}",
                extra={**context, "lock_key": lock_key},
            )
            raise LockContentionError(
                user_id, retry_after=settings.lock_contention_retry_after_seconds
            )

        try:
            if idempotency_token is not None:
                existing = await self.idempotency.get(user_id, token)
                if existing is not None:
                    logger.info(
                        f"Session {existing.session_id} committed by previous lock holder",
                        extra={**context, "session_id": existing.session_id},
                    )
                    return existing

            try:
                result, created = await run_with_retry(
                    lambda: self._create_in_transaction(request, token, now or utc_now()),
                    self._retry_policy,
                    name="create_session",
                )
            except FatalDatabaseError as e:
                if not isinstance(e.__cause__, IntegrityError):
                    raise
                # Another transaction committed a session under this token first
                result = await self._find_committed(user_id, token)
                if result is None:
                    raise
                created = False

            if not created:
                logger.info(
                    f"Returning session {result.session_id} already committed for idempotency key",
                    extra={**context, "session_id": result.session_id},
                )
                await self._remember(user_id, token, result)
                return result

            await self._after_commit(user_id, token, result)

            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                f"Created practice session {result.session_id} with "
                f"{len(result.questions)} questions in {duration_ms:.1f}ms",
                extra={**context, "session_id": result.session_id, "duration_ms": duration_ms},
            )
            return result
        finally:
            await self.lock.release(lock_key, holder)

    async def _create_in_transaction(
        self, request: SessionCreationRequest, token: str, now: datetime
    ) -> tuple[SessionCreationResult, bool]:
        """Run the creation unit; the flag is False when the token was already used."""
        async with self._session_maker() as session:
            async with session.begin():
                existing = await self._load_committed(session, request.user_id, token)
                if existing is not None:
                    return existing, False

                record = await self.ledger.get_or_create(session, request.user_id)
                await self.ledger.reset_if_new_day(session, record, now)
                evaluation = self.ledger.evaluate(record, now)
                if not evaluation.can_take:
                    raise evaluation.to_error()

                premium = is_premium(record)
                if request.topic_id is not None and not await self.pool.is_topic_allowed(
                    request.subject_id, request.topic_id, premium, session=session
                ):
                    raise TopicAccessDeniedError(request.topic_id, request.subject_id)

                candidates = await self.pool.fetch_candidates(
                    request.subject_id, request.topic_id, request.subtopic_id, session=session
                )
                candidates = await self.pool.apply_freemium_filter(
                    candidates, request.subject_id, premium, request.topic_id, session=session
                )
                selected = self.pool.select_random(
                    candidates,
                    request.question_count,
                    request.subject_id,
                    request.topic_id,
                    request.subtopic_id,
                )

                practice_session = await insert_practice_session(
                    session,
                    user_id=request.user_id,
                    subject_id=request.subject_id,
                    topic_id=request.topic_id,
                    subtopic_id=request.subtopic_id,
                    session_type=request.session_type,
                    requested_questions=request.question_count,
                    start_time=now,
                    idempotency_key=token,
                )
                session_id = practice_session.session_id
                await insert_session_questions(
                    session,
                    session_id,
                    request.user_id,
                    [(q.question_id, q.topic_id) for q in selected],
                )
                await set_session_totals(
                    session, session_id, len(selected), sum(q.marks for q in selected)
                )
                await self.ledger.increment_atomic(session, request.user_id, now)

        return (
            SessionCreationResult(session_id=session_id, questions=selected, idempotency_key=token),
            True,
        )

    async def _load_committed(
        self, session: AsyncSession, user_id: str, token: str
    ) -> Optional[SessionCreationResult]:
        practice_session = await get_session_by_idempotency_key(session, user_id, token)
        if practice_session is None:
            return None
        questions = [
            candidate
            for candidate in map(
                to_candidate, await get_assigned_questions(session, practice_session.session_id)
            )
            if candidate is not None
        ]
        return SessionCreationResult(
            session_id=practice_session.session_id,
            questions=questions,
            idempotency_key=token,
        )

    async def _find_committed(self, user_id: str, token: str) -> Optional[SessionCreationResult]:
        async def load() -> Optional[SessionCreationResult]:
            async with self._session_maker() as session:
                return await self._load_committed(session, user_id, token)

        return await run_with_retry(load, self._retry_policy, name="find_committed_session")

    async def _remember(self, user_id: str, token: str, result: SessionCreationResult) -> None:
        try:
            await self.idempotency.put(user_id, token, result)
        except Exception as e:
            logger.warning(
                f"Failed to store idempotency record: {type(e).__name__}: {e}",
                extra={"user_id": user_id, "idempotency_key": token},
            )

    async def _after_commit(
        self, user_id: str, token: str, result: SessionCreationResult
    ) -> None:
        """Record the result and drop stale per-user cache entries.

        The session is already committed; failures here are only logged.
        """
        await self._remember(user_id, token, result)

        for key in user_cache_keys(user_id):
            try:
                if "*" in key:
                    await self._cache.delete_pattern(key)
                else:
                    await self._cache.delete(key)
            except Exception as e:
                logger.warning(
                    f"Failed to invalidate cache key {key}: {type(e).__name__}: {e}",
                    extra={"user_id": user_id},
                )

    async def get_active_session(self, user_id: str) -> Optional[PracticeSession]:
        """The user's most recent open session, if any."""

        async def load() -> Optional[PracticeSession]:
            async with self._session_maker() as session:
                return await get_active_session(session, user_id)

        return await run_with_retry(load, self._retry_policy, name="get_active_session")

    async def has_recent_incomplete_session(
        self,
        user_id: str,
        hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether the user has an open session started within ``hours``."""
        since = abandonment_cutoff(now or utc_now(), hours or settings.abandoned_session_hours)

        async def load() -> int:
            async with self._session_maker() as session:
                return await count_open_sessions_since(session, user_id, since)

        return await run_with_retry(load, self._retry_policy, name="has_recent_incomplete_session") > 0


# Global service instance
_session_creator: Optional[SessionCreator] = None


def get_session_creator() -> SessionCreator:
    """Get the global session creator instance."""
    global _session_creator
    if _session_creator is None:
        _session_creator = SessionCreator()
    return _session_creator


def set_session_creator(creator: Optional[SessionCreator]) -> None:
    global _session_creator
    _session_creator = creator


def reset_session_creator() -> None:
    """Reset the global session creator instance.

    Useful for testing.
    """
    global _session_creator
    _session_creator = None
