"""Practice session API."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.middleware.request_id import get_request_id
from examprep.app.services.schemas import QuestionCandidate, SessionCreationRequest
from examprep.app.services.session_creator import SessionCreator, get_session_creator

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/practice-sessions", tags=["practice-sessions"])

SESSION_TYPE_PATTERN = "^(Practice|Test|Review|Custom)$"


class CreatePracticeSessionRequest(BaseModel):
    """Create practice session request."""

    subject_id: int = Field(..., gt=0)
    topic_id: Optional[int] = Field(default=None, gt=0)
    subtopic_id: Optional[int] = Field(default=None, gt=0)
    question_count: int = Field(
        default=settings.default_question_count, ge=1, le=settings.max_question_count
    )
    session_type: str = Field(default="Practice", pattern=SESSION_TYPE_PATTERN)


class PracticeSessionResponse(BaseModel):
    """Created practice session with its selected questions."""

    session_id: int
    idempotency_key: Optional[str] = None
    questions: list[QuestionCandidate]


class ActiveSessionResponse(BaseModel):
    session_id: int
    subject_id: int
    topic_id: Optional[int] = None
    subtopic_id: Optional[int] = None
    session_type: str
    total_questions: int
    questions_attempted: int
    start_time: datetime


class QuotaStatusResponse(BaseModel):
    """Quota status response."""

    can_take: bool
    remaining: Optional[int] = None
    is_unlimited: bool
    used_today: int
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None
    reason: Optional[str] = None


def get_user_id(x_user_id: str = Header(..., min_length=1, max_length=255)) -> str:
    """Resolved caller identity, set by the authenticating proxy."""
    return x_user_id


@router.post(
    "",
    response_model=PracticeSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_practice_session(
    body: CreatePracticeSessionRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    idempotency_key: Optional[str] = Header(default=None, max_length=255),
    creator: SessionCreator = Depends(get_session_creator),
) -> PracticeSessionResponse:
    """Start a practice session.

    Retrying with the same Idempotency-Key returns the original session.
    """
    logger.debug(
        f"Creating {body.session_type} session for subject {body.subject_id}",
        extra={"request_id": get_request_id(request), "user_id": user_id},
    )
    result = await creator.create_session(
        SessionCreationRequest(
            user_id=user_id,
            subject_id=body.subject_id,
            topic_id=body.topic_id,
            subtopic_id=body.subtopic_id,
            question_count=body.question_count,
            session_type=body.session_type,
        ),
        idempotency_token=idempotency_key,
    )
    return PracticeSessionResponse(
        session_id=result.session_id,
        idempotency_key=result.idempotency_key,
        questions=result.questions,
    )


@router.get("/active", response_model=ActiveSessionResponse)
async def get_active_practice_session(
    user_id: str = Depends(get_user_id),
    creator: SessionCreator = Depends(get_session_creator),
) -> ActiveSessionResponse:
    """Return the caller's open session."""
    practice_session = await creator.get_active_session(user_id)
    if practice_session is None:
        raise HTTPException(status_code=404, detail="No active practice session")
    return ActiveSessionResponse(
        session_id=practice_session.session_id,
        subject_id=practice_session.subject_id,
        topic_id=practice_session.topic_id,
        subtopic_id=practice_session.subtopic_id,
        session_type=practice_session.session_type,
        total_questions=practice_session.total_questions,
        questions_attempted=practice_session.questions_attempted,
        start_time=practice_session.start_time,
    )


@router.get("/quota", response_model=QuotaStatusResponse)
async def get_quota_status(
    user_id: str = Depends(get_user_id),
    creator: SessionCreator = Depends(get_session_creator),
) -> QuotaStatusResponse:
    """Today's practice session quota for the caller."""
    evaluation = await creator.ledger.get_status(user_id)
    return QuotaStatusResponse(
        can_take=evaluation.can_take,
        remaining=evaluation.remaining,
        is_unlimited=evaluation.is_unlimited,
        used_today=evaluation.used_today,
        limit=evaluation.limit,
        reset_at=evaluation.reset_at,
        reason=evaluation.reason,
    )
