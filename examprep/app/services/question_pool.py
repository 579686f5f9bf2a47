"""Candidate question pool with freemium topic gating.

Candidate lists are cached per exact filter combination. Rows are validated
into QuestionCandidate once, on the way into the cache; a row whose details
do not match its question type is logged and left out of the pool.
"""

import random
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examprep.app.core.cache import CacheBackend, get_cache
from examprep.app.core.cache_keys import (
    decode_payload,
    encode_payload,
    freemium_topics_key,
    question_pool_key,
)
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.db.async_session import get_async_session_maker
from examprep.app.db.crud import fetch_questions, get_first_topic_ids
from examprep.app.db.models import Question
from examprep.app.exceptions import NoQuestionsAvailableError
from examprep.app.services.retry import RetryPolicy, run_with_retry
from examprep.app.services.schemas import QuestionCandidate, candidate_list_adapter

logger = get_logger(__name__)


def to_candidate(question: Question) -> Optional[QuestionCandidate]:
    """Validate a question row into a candidate, or None if its details are invalid."""
    details = dict(question.details or {})
    details["question_type"] = question.question_type
    try:
        return QuestionCandidate(
            question_id=question.question_id,
            topic_id=question.topic_id,
            subtopic_id=question.subtopic_id,
            marks=question.marks if question.marks is not None else 4,
            negative_marks=question.negative_marks if question.negative_marks is not None else 1,
            question_type=question.question_type,
            question_text=question.question_text,
            explanation=question.explanation,
            difficulty_level=question.difficulty_level,
            details=details,
        )
    except ValidationError as e:
        logger.warning(
            f"Skipping question {question.question_id} with invalid "
            f"{question.question_type} details: {e.error_count()} error(s)"
        )
        return None


class QuestionPool:
    """Fetches, gates and samples practice questions.

    Cache key formats:
        questions:pool:subject:{s}:topic:{t}:subtopic:{st}
        questions:freemium-topics:subject:{s}:limit:{n}
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CacheBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session_maker = session_maker
        self._cache = cache
        self._retry_policy = retry_policy
        self._random = rng or random.Random()

    def _get_cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    def _get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_async_session_maker()
        return self._session_maker

    async def _cache_get(self, key: str):
        try:
            return decode_payload(await self._get_cache().get(key))
        except Exception as e:
            logger.warning(f"Question cache read failed for {key}: {type(e).__name__}: {e}")
            return None

    async def _cache_set(self, key: str, data, ttl: int) -> None:
        try:
            await self._get_cache().set(key, encode_payload(data), ttl)
        except Exception as e:
            logger.warning(f"Question cache write failed for {key}: {type(e).__name__}: {e}")

    async def _read(self, session: Optional[AsyncSession], query, name: str):
        """Run ``query(session)`` in the given session or in a fresh retried one."""
        if session is not None:
            return await query(session)

        async def load():
            async with self._get_session_maker()() as own_session:
                return await query(own_session)

        return await run_with_retry(load, self._retry_policy, name=name)

    async def fetch_candidates(
        self,
        subject_id: int,
        topic_id: Optional[int] = None,
        subtopic_id: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> list[QuestionCandidate]:
        """All valid candidates for the filters, from cache when possible."""
        key = question_pool_key(subject_id, topic_id, subtopic_id)
        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return candidate_list_adapter.validate_python(cached)
            except ValidationError:
                logger.warning(f"Discarding malformed question pool entry {key}")

        async def query(db: AsyncSession) -> list[Question]:
            return await fetch_questions(db, subject_id, topic_id, subtopic_id)

        rows = await self._read(session, query, name="fetch_candidates")
        candidates = [c for c in (to_candidate(row) for row in rows) if c is not None]
        logger.debug(f"Loaded {len(candidates)} candidates for {key}")

        if candidates:
            await self._cache_set(
                key,
                [c.model_dump(mode="json") for c in candidates],
                settings.question_pool_ttl_seconds,
            )
        return candidates

    def is_freemium_subject(self, subject_id: int) -> bool:
        return subject_id in settings.freemium_subject_ids

    async def get_freemium_topic_ids(
        self, subject_id: int, session: Optional[AsyncSession] = None
    ) -> list[int]:
        """Topics a free user may practice in a gated subject."""
        limit = settings.freemium_topic_limit
        key = freemium_topics_key(subject_id, limit)
        cached = await self._cache_get(key)
        if isinstance(cached, list):
            return [int(topic_id) for topic_id in cached]

        async def query(db: AsyncSession) -> list[int]:
            return await get_first_topic_ids(db, subject_id, limit)

        topic_ids = await self._read(session, query, name="get_freemium_topic_ids")
        await self._cache_set(key, topic_ids, settings.question_pool_ttl_seconds)
        return topic_ids

    async def apply_freemium_filter(
        self,
        candidates: list[QuestionCandidate],
        subject_id: int,
        user_is_premium: bool,
        topic_id: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> list[QuestionCandidate]:
        """Restrict a free user's unfiltered pool to the freemium topics.

        An explicit topic filter has already been access-checked and is left as is.
        """
        if user_is_premium or topic_id is not None or not self.is_freemium_subject(subject_id):
            return candidates
        allowed = set(await self.get_freemium_topic_ids(subject_id, session))
        return [c for c in candidates if c.topic_id in allowed]

    async def is_topic_allowed(
        self,
        subject_id: int,
        topic_id: int,
        user_is_premium: bool,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        if user_is_premium or not self.is_freemium_subject(subject_id):
            return True
        return topic_id in await self.get_freemium_topic_ids(subject_id, session)

    def select_random(
        self,
        candidates: list[QuestionCandidate],
        n: int,
        subject_id: Optional[int] = None,
        topic_id: Optional[int] = None,
        subtopic_id: Optional[int] = None,
    ) -> list[QuestionCandidate]:
        """Uniformly shuffle the pool and take the first ``n``.

        Returns every candidate, shuffled, when the pool is smaller than ``n``.

        Raises:
            NoQuestionsAvailableError: the pool is empty or ``n`` is below 1
        """
        if not candidates or n < 1:
            raise NoQuestionsAvailableError(subject_id, topic_id, subtopic_id)
        shuffled = list(candidates)
        self._random.shuffle(shuffled)
        return shuffled[:n]

    async def invalidate(
        self,
        subject_id: int,
        topic_id: Optional[int] = None,
        subtopic_id: Optional[int] = None,
    ) -> None:
        await self._get_cache().delete(question_pool_key(subject_id, topic_id, subtopic_id))
