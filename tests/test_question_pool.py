"""Tests for the candidate question pool."""

import random
from unittest.mock import AsyncMock, patch

import pytest

from conftest import seed_questions, seed_topics
from examprep.app.core.cache_keys import (
    decode_payload,
    freemium_topics_key,
    question_pool_key,
)
from examprep.app.exceptions import NoQuestionsAvailableError
from examprep.app.services.question_pool import QuestionPool
from examprep.app.services.schemas import (
    MatchingDetails,
    MultipleChoiceDetails,
    QuestionCandidate,
)


@pytest.fixture
def pool(session_maker, cache, fast_retry):
    return QuestionPool(session_maker, cache, fast_retry, rng=random.Random(7))


def _candidates(count: int, topic_id: int = 10) -> list[QuestionCandidate]:
    return [
        QuestionCandidate(
            question_id=i,
            topic_id=topic_id,
            question_type="MultipleChoice",
            question_text=f"Q{i}",
            details={
                "question_type": "MultipleChoice",
                "options": [{"option_number": "A", "option_text": "x"}],
            },
        )
        for i in range(1, count + 1)
    ]


class TestFetchCandidates:
    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, pool, session_maker, cache):
        await seed_topics(session_maker, 1, [10])
        await seed_questions(session_maker, 1, 10, 3)

        candidates = await pool.fetch_candidates(1)

        assert len(candidates) == 3
        assert all(isinstance(c.details, MultipleChoiceDetails) for c in candidates)
        cached = decode_payload(await cache.get(question_pool_key(1)))
        assert [c["question_id"] for c in cached] == [c.question_id for c in candidates]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, pool, session_maker):
        await seed_topics(session_maker, 1, [10])
        await seed_questions(session_maker, 1, 10, 3)
        first = await pool.fetch_candidates(1)

        with patch(
            "examprep.app.services.question_pool.fetch_questions", new=AsyncMock()
        ) as fetch:
            second = await pool.fetch_candidates(1)

        fetch.assert_not_awaited()
        assert second == first

    @pytest.mark.asyncio
    async def test_filters_by_topic_and_subtopic(self, pool, session_maker):
        await seed_topics(session_maker, 1, [10, 11])
        await seed_questions(session_maker, 1, 10, 2, subtopic_id=100)
        await seed_questions(session_maker, 1, 10, 2, subtopic_id=101)
        await seed_questions(session_maker, 1, 11, 2)

        assert len(await pool.fetch_candidates(1, 10)) == 4
        by_subtopic = await pool.fetch_candidates(1, 10, 101)
        assert {c.subtopic_id for c in by_subtopic} == {101}
        assert len(await pool.fetch_candidates(1, 11)) == 2

    @pytest.mark.asyncio
    async def test_invalid_details_are_skipped(self, pool, session_maker):
        await seed_topics(session_maker, 1, [10])
        await seed_questions(session_maker, 1, 10, 2)
        await seed_questions(session_maker, 1, 10, 1, details={"options": []})
        await seed_questions(
            session_maker, 1, 10, 1,
            question_type="Matching",
            details={
                "left_column_header": "Organ",
                "right_column_header": "Function",
                "items": [
                    {
                        "left_item_label": "P",
                        "left_item_text": "Liver",
                        "right_item_label": "1",
                        "right_item_text": "Bile",
                    }
                ],
                "options": [{"option_number": "A", "option_text": "P-1"}],
            },
        )

        candidates = await pool.fetch_candidates(1)

        assert len(candidates) == 3
        assert any(isinstance(c.details, MatchingDetails) for c in candidates)

    @pytest.mark.asyncio
    async def test_empty_result_not_cached(self, pool, cache):
        assert await pool.fetch_candidates(99) == []
        assert await cache.get(question_pool_key(99)) is None

    @pytest.mark.asyncio
    async def test_invalidate(self, pool, session_maker, cache):
        await seed_topics(session_maker, 1, [10])
        await seed_questions(session_maker, 1, 10, 1)
        await pool.fetch_candidates(1, 10)

        await pool.invalidate(1, 10)

        assert await cache.get(question_pool_key(1, 10)) is None


class TestFreemium:
    @pytest.mark.asyncio
    async def test_freemium_topics_are_first_root_topics(self, pool, session_maker, cache):
        await seed_topics(session_maker, 3, [32, 30, 31])

        assert await pool.get_freemium_topic_ids(3) == [30, 31]
        assert decode_payload(await cache.get(freemium_topics_key(3, 2))) == [30, 31]

    @pytest.mark.asyncio
    async def test_filter_applies_only_to_free_users_on_gated_subjects(
        self, pool, session_maker
    ):
        await seed_topics(session_maker, 3, [30, 31, 32])
        candidates = _candidates(2, topic_id=30) + _candidates(2, topic_id=32)

        free = await pool.apply_freemium_filter(candidates, 3, user_is_premium=False)
        premium = await pool.apply_freemium_filter(candidates, 3, user_is_premium=True)
        ungated = await pool.apply_freemium_filter(candidates, 1, user_is_premium=False)
        explicit = await pool.apply_freemium_filter(
            candidates, 3, user_is_premium=False, topic_id=32
        )

        assert {c.topic_id for c in free} == {30}
        assert premium == candidates
        assert ungated == candidates
        assert explicit == candidates

    @pytest.mark.asyncio
    async def test_is_topic_allowed(self, pool, session_maker):
        await seed_topics(session_maker, 3, [30, 31, 32])

        assert await pool.is_topic_allowed(3, 30, user_is_premium=False) is True
        assert await pool.is_topic_allowed(3, 32, user_is_premium=False) is False
        assert await pool.is_topic_allowed(3, 32, user_is_premium=True) is True
        assert await pool.is_topic_allowed(1, 999, user_is_premium=False) is True


class TestSelectRandom:
    def test_takes_n(self, pool):
        selected = pool.select_random(_candidates(10), 4)
        assert len(selected) == 4
        assert len({c.question_id for c in selected}) == 4

    def test_fewer_than_n_returns_all(self, pool):
        selected = pool.select_random(_candidates(3), 10)
        assert sorted(c.question_id for c in selected) == [1, 2, 3]

    def test_empty_pool_raises(self, pool):
        with pytest.raises(NoQuestionsAvailableError) as exc_info:
            pool.select_random([], 5, subject_id=1, topic_id=2)
        assert exc_info.value.subject_id == 1
        assert exc_info.value.topic_id == 2

    @pytest.mark.parametrize("n", [0, -1])
    def test_non_positive_count_raises(self, pool, n):
        with pytest.raises(NoQuestionsAvailableError):
            pool.select_random(_candidates(5), n, subject_id=1)

    def test_does_not_mutate_input(self, pool):
        candidates = _candidates(10)
        original = list(candidates)
        pool.select_random(candidates, 5)
        assert candidates == original

    def test_selection_is_roughly_uniform(self):
        pool = QuestionPool(rng=random.Random(1))
        counts = {i: 0 for i in range(1, 6)}
        for _ in range(2000):
            for c in pool.select_random(_candidates(5), 1):
                counts[c.question_id] += 1
        assert all(300 < n < 500 for n in counts.values())
