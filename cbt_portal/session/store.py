"""Record-store interface the session core persists through.

Every method may fail; implementations raise
:class:`~cbt_portal.session.errors.PersistenceError` for store failures so the
controller can tell them apart from domain errors.
"""

import uuid
from datetime import datetime
from typing import Callable, Protocol

from cbt_portal.session.records import (
    AnalyticsRecord,
    AnswerRecord,
    AttemptRecord,
    AttemptStatus,
    ExamRecord,
    ResultRecord,
    TerminationReason,
)

AnalyticsFold = Callable[[AnalyticsRecord | None], AnalyticsRecord]


class RecordStore(Protocol):
    async def get_exam(self, exam_id: uuid.UUID) -> ExamRecord:
        """Exam with ordered questions and options. Raises NotFoundError."""

    async def find_active_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID
    ) -> AttemptRecord | None:
        """The in-progress attempt for (exam, user), if any."""

    async def get_attempt(self, attempt_id: uuid.UUID) -> AttemptRecord:
        """Raises NotFoundError."""

    async def create_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID, start_time: datetime
    ) -> AttemptRecord:
        """Raises ConflictError if an in-progress attempt already exists."""

    async def update_attempt_status(
        self,
        attempt_id: uuid.UUID,
        status: AttemptStatus,
        end_time: datetime,
        reason: TerminationReason | None = None,
    ) -> bool:
        """Compare-and-set out of in_progress. False if already terminal."""

    async def record_violation(self, attempt_id: uuid.UUID) -> int:
        """Atomically increment the violation counter, returning the new value."""

    async def upsert_answer(
        self,
        attempt_id: uuid.UUID,
        question_id: uuid.UUID,
        option_id: uuid.UUID | None,
    ) -> AnswerRecord:
        """Insert or update the single answer row for (attempt, question)."""

    async def list_answers(self, attempt_id: uuid.UUID) -> list[AnswerRecord]:
        ...

    async def create_result(
        self,
        attempt_id: uuid.UUID,
        exam_id: uuid.UUID,
        user_id: uuid.UUID,
        score: int,
        correct_answers: int,
        total_questions: int,
        passed: bool,
    ) -> ResultRecord:
        """Write-once. Raises ConflictError if the attempt already has one."""

    async def get_result(self, attempt_id: uuid.UUID) -> ResultRecord | None:
        ...

    async def get_analytics(self, exam_id: uuid.UUID) -> AnalyticsRecord | None:
        ...

    async def upsert_analytics(
        self, exam_id: uuid.UUID, fold: AnalyticsFold
    ) -> AnalyticsRecord:
        """Apply *fold* to the current row (None if absent) as one serialized step."""
