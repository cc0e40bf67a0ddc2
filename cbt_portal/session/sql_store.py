"""SQLAlchemy implementation of the session record store."""

import asyncio
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cbt_portal.db.models import (
    Answer,
    Attempt,
    AttemptStatusEnum,
    Exam,
    ExamAnalytics,
    Result,
)
from cbt_portal.session.errors import ConflictError, NotFoundError, PersistenceError
from cbt_portal.session.records import (
    AnalyticsRecord,
    AnswerRecord,
    AttemptRecord,
    AttemptStatus,
    ExamRecord,
    ResultRecord,
    TerminationReason,
)
from cbt_portal.session.store import AnalyticsFold

logger = logging.getLogger(__name__)

_ANALYTICS_FIELDS = (
    "total_attempts",
    "avg_score",
    "pass_count",
    "pass_rate",
    "avg_completion_time",
)


class SqlRecordStore:
    """Record store over one SQLAlchemy session.

    Each mutating call commits its own transaction. Database failures are
    rolled back and re-raised as :class:`PersistenceError`; unique-constraint
    violations that mean "someone else got there first" become
    :class:`ConflictError`.

    Calls run the synchronous session in a worker thread, one at a time.
    """

    def __init__(self, db: Session):
        self.db = db
        self._lock = asyncio.Lock()

    @contextmanager
    def _guard(self, what: str):
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Store failure while %s: %s", what, exc)
            raise PersistenceError(f"Database error while {what}") from exc

    def _guarded(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        with self._guard(what):
            return fn(*args)

    async def _run(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            return await run_in_threadpool(self._guarded, what, fn, *args)

    # ── exams ────────────────────────────────────────────────────────────

    async def get_exam(self, exam_id: uuid.UUID) -> ExamRecord:
        return await self._run("loading exam", self._get_exam, exam_id)

    def _get_exam(self, exam_id: uuid.UUID) -> ExamRecord:
        exam = self.db.get(Exam, exam_id)
        if exam is None:
            raise NotFoundError("Exam not found", exam_id=str(exam_id))
        return ExamRecord.model_validate(exam)

    # ── attempts ─────────────────────────────────────────────────────────

    async def find_active_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID
    ) -> AttemptRecord | None:
        return await self._run(
            "looking up active attempt", self._find_active_attempt, exam_id, user_id
        )

    def _find_active_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID
    ) -> AttemptRecord | None:
        attempt = self.db.scalars(
            select(Attempt).where(
                Attempt.exam_id == exam_id,
                Attempt.user_id == user_id,
                Attempt.status == AttemptStatusEnum.IN_PROGRESS,
            )
            .execution_options(populate_existing=True)
        ).first()
        return AttemptRecord.model_validate(attempt) if attempt else None

    async def get_attempt(self, attempt_id: uuid.UUID) -> AttemptRecord:
        return await self._run("loading attempt", self._get_attempt, attempt_id)

    def _get_attempt(self, attempt_id: uuid.UUID) -> AttemptRecord:
        attempt = self.db.get(Attempt, attempt_id, populate_existing=True)
        if attempt is None:
            raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
        return AttemptRecord.model_validate(attempt)

    async def create_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID, start_time: datetime
    ) -> AttemptRecord:
        return await self._run(
            "creating attempt", self._create_attempt, exam_id, user_id, start_time
        )

    def _create_attempt(
        self, exam_id: uuid.UUID, user_id: uuid.UUID, start_time: datetime
    ) -> AttemptRecord:
        attempt = Attempt(
            exam_id=exam_id,
            user_id=user_id,
            start_time=start_time,
            status=AttemptStatusEnum.IN_PROGRESS,
            violation_count=0,
        )
        self.db.add(attempt)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(
                "An attempt for this exam is already in progress",
                exam_id=str(exam_id),
            ) from exc
        self.db.refresh(attempt)
        return AttemptRecord.model_validate(attempt)

    async def update_attempt_status(
        self,
        attempt_id: uuid.UUID,
        status: AttemptStatus,
        end_time: datetime,
        reason: TerminationReason | None = None,
    ) -> bool:
        return await self._run(
            "closing attempt", self._close_attempt, attempt_id, status, end_time, reason
        )

    def _close_attempt(
        self,
        attempt_id: uuid.UUID,
        status: AttemptStatus,
        end_time: datetime,
        reason: TerminationReason | None,
    ) -> bool:
        outcome = self.db.execute(
            update(Attempt)
            .where(
                Attempt.id == attempt_id,
                Attempt.status == AttemptStatusEnum.IN_PROGRESS,
            )
            .values(status=status, end_time=end_time, termination_reason=reason)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if outcome.rowcount == 1:
            return True
        if self.db.get(Attempt, attempt_id) is None:
            raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
        return False

    async def record_violation(self, attempt_id: uuid.UUID) -> int:
        return await self._run("recording violation", self._record_violation, attempt_id)

    def _record_violation(self, attempt_id: uuid.UUID) -> int:
        self.db.execute(
            update(Attempt)
            .where(Attempt.id == attempt_id)
            .values(violation_count=Attempt.violation_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        count = self.db.scalar(
            select(Attempt.violation_count).where(Attempt.id == attempt_id)
        )
        if count is None:
            raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
        return count

    # ── answers ──────────────────────────────────────────────────────────

    def _find_answer(self, attempt_id: uuid.UUID, question_id: uuid.UUID) -> Answer | None:
        return self.db.scalars(
            select(Answer).where(
                Answer.attempt_id == attempt_id, Answer.question_id == question_id
            )
        ).first()

    async def upsert_answer(
        self,
        attempt_id: uuid.UUID,
        question_id: uuid.UUID,
        option_id: uuid.UUID | None,
    ) -> AnswerRecord:
        return await self._run(
            "saving answer", self._upsert_answer, attempt_id, question_id, option_id
        )

    def _upsert_answer(
        self,
        attempt_id: uuid.UUID,
        question_id: uuid.UUID,
        option_id: uuid.UUID | None,
    ) -> AnswerRecord:
        status = self.db.scalar(select(Attempt.status).where(Attempt.id == attempt_id))
        if status is None:
            raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
        if status is not AttemptStatusEnum.IN_PROGRESS:
            raise ConflictError(
                f"Attempt already {status.value}", attempt_id=str(attempt_id)
            )

        answer = self._find_answer(attempt_id, question_id)
        if answer is None:
            answer = Answer(
                attempt_id=attempt_id,
                question_id=question_id,
                selected_option_id=option_id,
            )
            self.db.add(answer)
            try:
                self.db.commit()
            except IntegrityError:
                # lost an insert race on (attempt, question); update instead
                self.db.rollback()
                answer = self._find_answer(attempt_id, question_id)
                answer.selected_option_id = option_id
                self.db.commit()
        else:
            answer.selected_option_id = option_id
            self.db.commit()
        return AnswerRecord(
            attempt_id=attempt_id,
            question_id=question_id,
            selected_option_id=option_id,
        )

    async def list_answers(self, attempt_id: uuid.UUID) -> list[AnswerRecord]:
        return await self._run("listing answers", self._list_answers, attempt_id)

    def _list_answers(self, attempt_id: uuid.UUID) -> list[AnswerRecord]:
        rows = self.db.scalars(select(Answer).where(Answer.attempt_id == attempt_id)).all()
        return [AnswerRecord.model_validate(row) for row in rows]

    # ── results & analytics ──────────────────────────────────────────────

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
        result = Result(
            attempt_id=attempt_id,
            exam_id=exam_id,
            user_id=user_id,
            score=score,
            correct_answers=correct_answers,
            total_questions=total_questions,
            passed=passed,
        )
        return await self._run("writing result", self._insert_result, result)

    def _insert_result(self, result: Result) -> ResultRecord:
        self.db.add(result)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(
                "Result already recorded", attempt_id=str(result.attempt_id)
            ) from exc
        self.db.refresh(result)
        return ResultRecord.model_validate(result)

    async def get_result(self, attempt_id: uuid.UUID) -> ResultRecord | None:
        return await self._run("loading result", self._get_result, attempt_id)

    def _get_result(self, attempt_id: uuid.UUID) -> ResultRecord | None:
        result = self.db.scalars(
            select(Result).where(Result.attempt_id == attempt_id)
        ).first()
        return ResultRecord.model_validate(result) if result else None

    async def get_analytics(self, exam_id: uuid.UUID) -> AnalyticsRecord | None:
        return await self._run("loading analytics", self._get_analytics, exam_id)

    def _get_analytics(self, exam_id: uuid.UUID) -> AnalyticsRecord | None:
        row = self.db.scalars(
            select(ExamAnalytics).where(ExamAnalytics.exam_id == exam_id)
        ).first()
        return AnalyticsRecord.model_validate(row) if row else None

    async def upsert_analytics(
        self, exam_id: uuid.UUID, fold: AnalyticsFold
    ) -> AnalyticsRecord:
        """Apply *fold* under a row lock so concurrent results serialize.

        The first result for an exam races on the unique ``exam_id``; the
        loser re-reads the freshly inserted row and folds into it.
        """
        return await self._run("updating analytics", self._fold_analytics, exam_id, fold)

    def _fold_analytics(self, exam_id: uuid.UUID, fold: AnalyticsFold) -> AnalyticsRecord:
        for _ in range(2):
            row = self.db.scalars(
                select(ExamAnalytics)
                .where(ExamAnalytics.exam_id == exam_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()
            current = AnalyticsRecord.model_validate(row) if row else None
            folded = fold(current)
            values = {name: getattr(folded, name) for name in _ANALYTICS_FIELDS}

            if row is None:
                self.db.add(ExamAnalytics(exam_id=exam_id, **values))
                try:
                    self.db.commit()
                except IntegrityError:
                    self.db.rollback()
                    continue
            else:
                for name, value in values.items():
                    setattr(row, name, value)
                self.db.commit()
            return folded
        raise PersistenceError("Analytics row kept changing, retry")
