"""Background tasks executed by Celery workers."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from cbt_portal.celery_app import celery_app
from cbt_portal.db.models import (
    Attempt,
    AttemptStatusEnum,
    ExamAnalytics,
    Result,
    TerminationReasonEnum,
)
from cbt_portal.db.session import get_session_factory
from cbt_portal.session.records import AnalyticsRecord
from cbt_portal.session.scoring import AnalyticsSample, fold_analytics

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="persist_lost_result", max_retries=5)
def persist_lost_result(self, payload: dict) -> dict:
    """Finish writing an attempt whose finalization could not reach the DB.

    Idempotent: the attempt is only closed if still in progress, the result
    is only inserted if absent, and analytics are folded only when this task
    inserted the result.
    """
    attempt_id = uuid.UUID(payload["attempt_id"])
    factory = get_session_factory()
    db = factory()
    try:
        attempt = db.get(Attempt, attempt_id)
        if attempt is None:
            logger.error("Lost result for unknown attempt %s, dropping", attempt_id)
            return {"success": False, "error": "attempt_not_found"}

        if attempt.status is AttemptStatusEnum.IN_PROGRESS:
            attempt.status = AttemptStatusEnum(payload["status"])
            attempt.end_time = datetime.fromisoformat(payload["end_time"])
            attempt.termination_reason = (
                TerminationReasonEnum(payload["reason"]) if payload["reason"] else None
            )

        existing = db.scalars(
            select(Result).where(Result.attempt_id == attempt_id)
        ).first()
        if existing is not None:
            db.commit()
            logger.info("Result for attempt %s already present", attempt_id)
            return {"success": True, "created": False, "attempt_id": str(attempt_id)}

        db.add(
            Result(
                attempt_id=attempt_id,
                exam_id=attempt.exam_id,
                user_id=attempt.user_id,
                score=payload["score"],
                correct_answers=payload["correct_answers"],
                total_questions=payload["total_questions"],
                passed=payload["passed"],
            )
        )

        row = db.scalars(
            select(ExamAnalytics)
            .where(ExamAnalytics.exam_id == attempt.exam_id)
            .with_for_update()
        ).first()
        folded = fold_analytics(
            attempt.exam_id,
            AnalyticsRecord.model_validate(row) if row else None,
            AnalyticsSample(
                score=payload["score"],
                passed=payload["passed"],
                completion_seconds=payload["completion_seconds"],
            ),
        )
        if row is None:
            row = ExamAnalytics(exam_id=attempt.exam_id)
            db.add(row)
        row.total_attempts = folded.total_attempts
        row.avg_score = folded.avg_score
        row.pass_count = folded.pass_count
        row.pass_rate = folded.pass_rate
        row.avg_completion_time = folded.avg_completion_time

        db.commit()
        logger.info("Recovered result for attempt %s (score %s)", attempt_id, payload["score"])
        return {"success": True, "created": True, "attempt_id": str(attempt_id)}

    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Retrying lost result for attempt %s", attempt_id)
        # Exponential back-off (10s, 30s, 90s, ...)
        raise self.retry(exc=exc, countdown=10 * (3**self.request.retries))

    finally:
        db.close()
