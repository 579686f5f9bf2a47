"""Custom exceptions for examprep."""

from datetime import datetime
from typing import Any, Optional


class ExamPrepException(Exception):
    """Base class for examprep exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error_code for consistent HTTP
    response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Internal error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Convert to API response format."""
        return {"error": self.error_code, "message": self.message}


class QuotaExceededError(ExamPrepException):
    """Raised when a user has used up their daily practice session quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "quota_exceeded"

    def __init__(
        self,
        limit: Optional[int] = None,
        used_today: int = 0,
        reset_at: Optional[datetime] = None,
        detail: Optional[str] = None,
    ):
        self.limit = limit
        self.used_today = used_today
        self.reset_at = reset_at
        message = detail or f"Daily practice session limit of {limit} reached."
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["limit"] = self.limit
        response["used_today"] = self.used_today
        response["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
        return response


class LockContentionError(ExamPrepException):
    """Raised when another creation for the same user is in flight.

    Not a user-facing failure: the caller should retry after ``retry_after``
    seconds. Maps to HTTP 409 Conflict.
    """
    status_code = 409
    error_code = "creation_in_progress"

    def __init__(self, user_id: str, retry_after: int = 1):
        self.user_id = user_id
        self.retry_after = retry_after
        super().__init__(
            "Session creation already in progress. Please wait and try again."
        )

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["retry_after"] = self.retry_after
        return response


class TopicAccessDeniedError(ExamPrepException):
    """Raised when a free user requests a premium-gated topic.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error_code = "topic_access_denied"

    def __init__(self, topic_id: int, subject_id: Optional[int] = None):
        self.topic_id = topic_id
        self.subject_id = subject_id
        super().__init__("This topic is available only to premium users")

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["topic_id"] = self.topic_id
        return response


class NoQuestionsAvailableError(ExamPrepException):
    """Raised when no question matches the requested filters.

    Not retryable without changing the filters. Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error_code = "no_questions_available"

    def __init__(
        self,
        subject_id: Optional[int] = None,
        topic_id: Optional[int] = None,
        subtopic_id: Optional[int] = None,
    ):
        self.subject_id = subject_id
        self.topic_id = topic_id
        self.subtopic_id = subtopic_id
        super().__init__("No questions available for the selected criteria")


class DatabaseError(ExamPrepException):
    """Base class for classified relational store failures."""


class TransientDatabaseError(DatabaseError):
    """Raised when a transient storage failure persists after all retries.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "database_unavailable"

    def __init__(self, attempts: int, detail: Optional[str] = None):
        self.attempts = attempts
        super().__init__(
            detail or f"Database temporarily unavailable after {attempts} attempts"
        )


class FatalDatabaseError(DatabaseError):
    """Raised for storage failures that retrying will not fix.

    Maps to HTTP 500 Internal Server Error.
    """
    status_code = 500
    error_code = "database_error"

    def __init__(self, detail: str = "Database operation failed"):
        super().__init__(detail)
