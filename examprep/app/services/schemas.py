"""Value types shared by the session creation services.

Question details differ per question type; they are a tagged union on
``question_type`` and are validated once, where questions enter the pool.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class QuestionOption(_Model):
    option_number: str
    option_text: str
    is_correct: Optional[bool] = None


class Statement(_Model):
    statement_label: str
    statement_text: str


class MatchingItem(_Model):
    left_item_label: str
    left_item_text: str
    right_item_label: str
    right_item_text: str


class SequenceItem(_Model):
    item_number: str
    item_text: str


class DiagramLabel(_Model):
    label_id: str
    label_text: str
    x_position: Optional[float] = None
    y_position: Optional[float] = None


class MultipleChoiceDetails(_Model):
    question_type: Literal["MultipleChoice"] = "MultipleChoice"
    options: list[QuestionOption] = Field(..., min_length=1)


class MatchingDetails(_Model):
    question_type: Literal["Matching"] = "Matching"
    left_column_header: Optional[str] = None
    right_column_header: Optional[str] = None
    items: list[MatchingItem] = Field(..., min_length=1)
    options: list[QuestionOption] = Field(..., min_length=1)


class MultipleCorrectStatementsDetails(_Model):
    question_type: Literal["MultipleCorrectStatements"] = "MultipleCorrectStatements"
    statements: list[Statement] = Field(..., min_length=1)
    options: list[QuestionOption] = Field(..., min_length=1)


class AssertionReasonDetails(_Model):
    question_type: Literal["AssertionReason"] = "AssertionReason"
    statements: list[Statement] = Field(..., min_length=1)
    options: list[QuestionOption] = Field(..., min_length=1)


class DiagramBasedDetails(_Model):
    question_type: Literal["DiagramBased"] = "DiagramBased"
    diagram_url: str
    labels: list[DiagramLabel] = Field(default_factory=list)
    options: list[QuestionOption] = Field(..., min_length=1)


class SequenceOrderingDetails(_Model):
    question_type: Literal["SequenceOrdering"] = "SequenceOrdering"
    sequence_items: list[SequenceItem] = Field(..., min_length=1)
    options: list[QuestionOption] = Field(..., min_length=1)


QuestionDetails = Annotated[
    Union[
        MultipleChoiceDetails,
        MatchingDetails,
        MultipleCorrectStatementsDetails,
        AssertionReasonDetails,
        DiagramBasedDetails,
        SequenceOrderingDetails,
    ],
    Field(discriminator="question_type"),
]


class QuestionCandidate(BaseModel):
    """Cached projection of a question eligible for a practice session."""

    question_id: int
    topic_id: int
    subtopic_id: Optional[int] = None
    marks: int = 4
    negative_marks: int = 1
    question_type: str
    question_text: str
    explanation: Optional[str] = None
    difficulty_level: Optional[str] = None
    details: QuestionDetails


candidate_list_adapter = TypeAdapter(list[QuestionCandidate])


@dataclass
class SessionCreationRequest:
    """A request to start a practice session.

    Attributes:
        user_id: Resolved identity of the caller
        subject_id: Subject to practice
        topic_id: Optional topic filter
        subtopic_id: Optional subtopic filter
        question_count: Desired number of questions (best effort)
        session_type: Practice | Test | Review | Custom
    """

    user_id: str
    subject_id: int
    topic_id: Optional[int] = None
    subtopic_id: Optional[int] = None
    question_count: int = 10
    session_type: str = "Practice"


@dataclass
class SessionCreationResult:
    """Outcome of a committed session creation, as cached for idempotency."""

    session_id: int
    questions: list[QuestionCandidate] = field(default_factory=list)
    idempotency_key: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "questions": [q.model_dump(mode="json") for q in self.questions],
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionCreationResult":
        """Create from dictionary."""
        return cls(
            session_id=int(data["session_id"]),
            questions=candidate_list_adapter.validate_python(data.get("questions", [])),
            idempotency_key=data.get("idempotency_key"),
        )
