from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    PositiveInt,
    computed_field,
    field_validator,
    model_validator,
)

from .config import settings


def normalize_subject(subject: Optional[str]) -> Optional[str]:
    """Blank subjects mean "any subject"."""
    if subject is None or not subject.strip():
        return None
    return subject.strip()


# --- Enumerations ---
class ExamType(str, Enum):
    JAMB = "JAMB"
    WAEC = "WAEC"


class QuizMode(str, Enum):
    PRACTICE = "practice"
    TIMED = "timed"


class SelectionMethod(str, Enum):
    BY_SUBJECT = "by-subject"
    BY_YEAR = "by-year"


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    AWAITING_SUBMISSION = "awaiting_submission"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABANDONED = "abandoned"


class CompletionReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    RETRYING = "retrying"
    PENDING = "pending"


class ConflictResolution(str, Enum):
    RESUME = "resume"
    DISCARD = "discard"


# --- Configuration ---
class QuizSelection(BaseModel):
    """What the mode-selection screen hands to the engine."""

    model_config = ConfigDict(frozen=True)

    exam_type: ExamType
    mode: QuizMode
    selection_method: SelectionMethod
    subject: Optional[str] = None
    year: Optional[int] = None

    @model_validator(mode="after")
    def _check_selection(self):
        if self.selection_method == SelectionMethod.BY_SUBJECT and not self.subject:
            raise ValueError("subject is required for by-subject selection")
        if self.selection_method == SelectionMethod.BY_YEAR and self.year is None:
            raise ValueError("year is required for by-year selection")
        if self.year is not None:
            current_year = datetime.now().year
            if not settings.MIN_EXAM_YEAR <= self.year <= current_year:
                raise ValueError(
                    f"year must be between {settings.MIN_EXAM_YEAR} and {current_year}"
                )
        return self

    @property
    def quiz_mode_identifier(self) -> str:
        return f"{self.mode.value}-{self.selection_method.value}"


class SessionConfig(QuizSelection):
    """Selection with its duration resolved. Immutable once a session starts."""

    duration_seconds: Optional[PositiveInt] = None

    @model_validator(mode="after")
    def _check_duration(self):
        if self.mode == QuizMode.PRACTICE and self.duration_seconds is not None:
            raise ValueError("practice sessions are untimed")
        if self.mode == QuizMode.TIMED and self.duration_seconds is None:
            raise ValueError("timed sessions need a resolved duration")
        return self

    @classmethod
    def from_selection(
        cls, selection: QuizSelection, duration_seconds: Optional[int] = None
    ) -> "SessionConfig":
        return cls(**selection.model_dump(), duration_seconds=duration_seconds)

    @property
    def is_timed(self) -> bool:
        return self.mode == QuizMode.TIMED


class DurationRule(BaseModel):
    exam_type: ExamType
    subject: Optional[str] = None
    year: Optional[int] = None
    duration_seconds: PositiveInt
    updated_at: Optional[datetime] = None

    @field_validator("subject", mode="before")
    @classmethod
    def _blank_subject(cls, value):
        return normalize_subject(value) if isinstance(value, str) else value

    @property
    def key(self) -> Tuple[str, Optional[str], Optional[int]]:
        return (self.exam_type.value, self.subject, self.year)

    @property
    def is_default(self) -> bool:
        return self.subject is None and self.year is None


# --- Questions ---
class QuestionRef(BaseModel):
    id: str
    text: str
    options: Dict[str, str]
    correct: str
    explanation: Optional[str] = None
    exam_type: Optional[ExamType] = None
    subject: Optional[str] = None
    year: Optional[int] = None


# --- Durable client state ---
class TimerSnapshot(BaseModel):
    session_id: str
    expires_at: datetime
    context_id: str
    paused_remaining: Optional[int] = None


class SessionDraft(BaseModel):
    session_id: str
    user_id: str
    context_id: str
    config: SessionConfig
    question_ids: List[str]
    current_index: int = 0
    answers: Dict[str, str] = {}
    time_spent: Dict[str, int] = {}
    first_shown: Dict[str, datetime] = {}
    started_at: datetime


# --- Results ---
class AnswerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    answer: Optional[str]
    correct_answer: str
    is_correct: bool
    time_spent_seconds: int = 0


class CompletedAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    config: SessionConfig
    answers: List[AnswerRecord]
    score: int
    total_questions: int
    elapsed_seconds: int
    completed_at: datetime
    completion_reason: CompletionReason

    @computed_field
    @property
    def score_percentage(self) -> float:
        if not self.total_questions:
            return 0.0
        return round(self.score / self.total_questions * 100, 2)

    @computed_field
    @property
    def quiz_mode_identifier(self) -> str:
        return self.config.quiz_mode_identifier


class AnswerFeedback(BaseModel):
    question_id: str
    answer: str
    feedback_visible: bool
    is_correct: Optional[bool] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None


class QuestionView(BaseModel):
    id: str
    text: str
    options: Dict[str, str]
    answer: Optional[str] = None
    feedback_visible: bool = False
    is_correct: Optional[bool] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None


class SessionView(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    status: SessionStatus
    config: SessionConfig
    current_index: int
    total_questions: int
    answered_count: int
    questions: List[QuestionView]
    feedback_visible: bool
    completed: bool
    timer_active: bool
    remaining_seconds: Optional[int] = None
    attempt: Optional[CompletedAttempt] = None
    sync_status: Optional[SyncStatus] = None
