"""Exam, question and analytics schemas."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ExamStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"


class ExamCreate(BaseModel):
    """POST /api/exams"""

    title: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=50)
    description: str | None = None
    duration_minutes: int = Field(gt=0, le=24 * 60)
    passing_score: int = Field(ge=0, le=100)
    status: ExamStatus = ExamStatus.DRAFT


class ExamUpdate(BaseModel):
    """PATCH /api/exams/{id} — every field optional."""

    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    duration_minutes: int | None = Field(None, gt=0, le=24 * 60)
    passing_score: int | None = Field(None, ge=0, le=100)
    status: ExamStatus | None = None


class QuestionWrite(BaseModel):
    """Body for creating or replacing a question.

    ``options`` are the texts of choices a, b, c and d, in that order.
    """

    text: str = Field(min_length=1)
    options: list[str] = Field(min_length=4, max_length=4)
    correct_option: str = Field(pattern=r"^[a-dA-D]$")
    position: int | None = Field(None, ge=0)

    @field_validator("correct_option")
    @classmethod
    def lower_label(cls, value: str) -> str:
        return value.lower()

    @field_validator("options")
    @classmethod
    def non_blank_options(cls, value: list[str]) -> list[str]:
        if any(not text.strip() for text in value):
            raise ValueError("option text must not be blank")
        return value


class OptionRead(BaseModel):
    id: uuid.UUID
    label: str
    text: str

    model_config = {"from_attributes": True}


class OptionAdminRead(OptionRead):
    is_correct: bool


class QuestionRead(BaseModel):
    """Question as a student sees it — no answer key."""

    id: uuid.UUID
    text: str
    position: int
    options: list[OptionRead]

    model_config = {"from_attributes": True}


class QuestionAdminRead(QuestionRead):
    options: list[OptionAdminRead]


class ExamRead(BaseModel):
    id: uuid.UUID
    title: str
    code: str
    description: str | None = None
    duration_minutes: int
    passing_score: int
    status: ExamStatus
    question_count: int = 0
    created_at: datetime

    model_config = {"from_attributes": True}


class ExamDetailRead(ExamRead):
    questions: list[QuestionRead] = []


class ExamAdminDetailRead(ExamRead):
    questions: list[QuestionAdminRead] = []


class AnalyticsRead(BaseModel):
    exam_id: uuid.UUID
    total_attempts: int = 0
    avg_score: float = 0.0
    pass_count: int = 0
    pass_rate: float = 0.0
    avg_completion_time: float = 0.0

    model_config = {"from_attributes": True}


class ExamResultRow(BaseModel):
    """One line of the admin results table."""

    attempt_id: uuid.UUID
    user_id: uuid.UUID
    student_name: str
    student_email: str
    status: str
    termination_reason: str | None = None
    score: int
    correct_answers: int
    total_questions: int
    passed: bool
    violation_count: int
    created_at: datetime


class LiveAttemptRead(BaseModel):
    """An in-progress attempt as shown on the admin monitoring view."""

    attempt_id: uuid.UUID
    user_id: uuid.UUID
    student_name: str
    start_time: datetime
    remaining_seconds: int
    answered_count: int
    question_count: int
    violation_count: int
