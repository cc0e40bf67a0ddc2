"""Attempt, answer, security-event and result schemas."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from cbt_portal.schemas.exam import ExamDetailRead


class NoticeRead(BaseModel):
    kind: str
    message: str


class AttemptState(BaseModel):
    """Snapshot of a sitting, recomputed from the wall clock on every read."""

    id: uuid.UUID
    exam_id: uuid.UUID
    status: str
    termination_reason: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    remaining_seconds: int
    remaining_display: str
    time_warning: bool = False
    violation_count: int = 0
    max_violations: int
    answers: dict[str, str] = {}  # question_id → option label
    answered_count: int = 0
    question_count: int = 0
    progress: float = 0.0
    resumed: bool = False
    notices: list[NoticeRead] = []


class AttemptSession(AttemptState):
    """Returned when a sitting starts or resumes: state plus the paper."""

    exam: ExamDetailRead


class AnswerSelect(BaseModel):
    """PUT /api/attempts/{id}/answers"""

    question_id: uuid.UUID
    option_label: str = Field(pattern=r"^[a-dA-D]$")


class AnswerSaved(BaseModel):
    question_id: uuid.UUID
    option_label: str
    saved: bool
    answered_count: int
    remaining_seconds: int
    notices: list[NoticeRead] = []


class SecurityEventKind(str, Enum):
    VISIBILITY_LOST = "visibility_lost"
    FOCUS_LOST = "focus_lost"
    SHORTCUT_BLOCKED = "shortcut_blocked"


class SecurityEventReport(BaseModel):
    """POST /api/attempts/{id}/events"""

    kind: SecurityEventKind
    combo: str | None = Field(None, max_length=50)


class ResultRead(BaseModel):
    id: uuid.UUID
    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    user_id: uuid.UUID
    score: int
    total_questions: int
    correct_answers: int
    passed: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class OutcomeRead(BaseModel):
    """How a sitting ended."""

    attempt_id: uuid.UUID
    status: str
    termination_reason: str | None = None
    score: int | None = None
    correct_answers: int | None = None
    total_questions: int | None = None
    passed: bool | None = None
    result: ResultRead | None = None
    persisted: bool = True


class SecurityEventResult(BaseModel):
    violation_count: int
    max_violations: int
    status: str
    terminated: bool
    notices: list[NoticeRead] = []
    outcome: OutcomeRead | None = None


class ReviewedQuestion(BaseModel):
    question_id: uuid.UUID
    text: str
    options: dict[str, str]  # label → text
    selected_label: str | None = None
    correct_label: str | None = None
    correct: bool


class ResultReview(ResultRead):
    """Result with per-question review for the results page."""

    exam_title: str
    exam_code: str
    passing_score: int
    status: str
    termination_reason: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    questions: list[ReviewedQuestion] = []
