"""Plain records exchanged between the session core and its record store.

These mirror the ORM tables but carry no database state, so the core can be
driven by any store (SQL in production, an in-memory fake in tests).
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, field_validator

from cbt_portal.db.models import (
    AttemptStatusEnum as AttemptStatus,
    ExamStatusEnum as ExamStatus,
    TerminationReasonEnum as TerminationReason,
)

__all__ = [
    "AnalyticsRecord",
    "AnswerRecord",
    "AttemptRecord",
    "AttemptStatus",
    "ExamRecord",
    "ExamStatus",
    "OptionRecord",
    "QuestionRecord",
    "ResultRecord",
    "TerminationReason",
    "as_utc",
]


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class _Record(BaseModel):
    model_config = {"from_attributes": True, "frozen": True}


class OptionRecord(_Record):
    id: uuid.UUID
    label: str
    text: str
    is_correct: bool = False


class QuestionRecord(_Record):
    id: uuid.UUID
    text: str
    position: int = 0
    options: list[OptionRecord] = []

    def option_by_label(self, label: str) -> OptionRecord | None:
        label = label.strip().lower()
        return next((o for o in self.options if o.label == label), None)

    def option_by_id(self, option_id: uuid.UUID | None) -> OptionRecord | None:
        return next((o for o in self.options if o.id == option_id), None)

    @property
    def correct_option(self) -> OptionRecord | None:
        return next((o for o in self.options if o.is_correct), None)


class ExamRecord(_Record):
    id: uuid.UUID
    title: str
    code: str
    duration_minutes: int
    passing_score: int
    status: ExamStatus
    questions: list[QuestionRecord] = []

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60

    def question(self, question_id: uuid.UUID) -> QuestionRecord | None:
        return next((q for q in self.questions if q.id == question_id), None)


class AttemptRecord(_Record):
    id: uuid.UUID
    exam_id: uuid.UUID
    user_id: uuid.UUID
    start_time: datetime
    end_time: datetime | None = None
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    termination_reason: TerminationReason | None = None
    violation_count: int = 0

    @field_validator("start_time", "end_time")
    @classmethod
    def normalise_timezone(cls, value):
        return as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status is not AttemptStatus.IN_PROGRESS


class AnswerRecord(_Record):
    attempt_id: uuid.UUID
    question_id: uuid.UUID
    selected_option_id: uuid.UUID | None = None


class ResultRecord(_Record):
    id: uuid.UUID
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    user_id: uuid.UUID
    score: int
    total_questions: int
    correct_answers: int
    passed: bool
    created_at: datetime | None = None

    @field_validator("created_at")
    @classmethod
    def normalise_timezone(cls, value):
        return as_utc(value)


class AnalyticsRecord(_Record):
    exam_id: uuid.UUID
    total_attempts: int = 0
    avg_score: float = 0.0
    pass_count: int = 0
    pass_rate: float = 0.0
    avg_completion_time: float = 0.0
