"""Tests for the lost-result Celery task, run in-process."""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cbt_portal.db.models import (
    Attempt,
    AttemptStatusEnum,
    Exam,
    ExamAnalytics,
    ExamStatusEnum,
    Result,
    TerminationReasonEnum,
    User,
)
from cbt_portal.db.session import build_session_factory
from cbt_portal.tasks import persist_lost_result


@pytest.fixture
def task_db(db: Session, monkeypatch):
    monkeypatch.setattr(
        "cbt_portal.tasks.get_session_factory",
        lambda: build_session_factory(db.get_bind()),
    )
    return db


def _open_attempt(db: Session) -> Attempt:
    user = User(email="s@ex.com", hashed_password="x", full_name="S")
    db.add(user)
    db.flush()
    exam = Exam(
        title="Biology",
        code="BIO-1",
        duration_minutes=20,
        passing_score=50,
        status=ExamStatusEnum.ACTIVE,
        created_by=user.id,
    )
    db.add(exam)
    db.flush()
    attempt = Attempt(exam_id=exam.id, user_id=user.id)
    db.add(attempt)
    db.commit()
    return attempt


def _payload(attempt: Attempt, **overrides) -> dict:
    payload = {
        "attempt_id": str(attempt.id),
        "exam_id": str(attempt.exam_id),
        "user_id": str(attempt.user_id),
        "status": "terminated",
        "reason": "security_violation",
        "end_time": datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc).isoformat(),
        "score": 60,
        "correct_answers": 3,
        "total_questions": 5,
        "passed": True,
        "completion_seconds": 600.0,
    }
    payload.update(overrides)
    return payload


def test_recovers_result_once(task_db: Session):
    attempt = _open_attempt(task_db)
    payload = _payload(attempt)

    first = persist_lost_result(payload)
    second = persist_lost_result(payload)

    assert first["created"] is True
    assert second["created"] is False
    task_db.expire_all()
    row = task_db.get(Attempt, attempt.id)
    assert row.status is AttemptStatusEnum.TERMINATED
    assert row.termination_reason is TerminationReasonEnum.SECURITY_VIOLATION
    assert task_db.scalar(select(func.count(Result.id))) == 1
    analytics = task_db.scalars(select(ExamAnalytics)).one()
    assert analytics.total_attempts == 1
    assert analytics.avg_score == 60.0


def test_does_not_overwrite_a_closed_attempt(task_db: Session):
    attempt = _open_attempt(task_db)
    attempt.status = AttemptStatusEnum.COMPLETED
    task_db.commit()

    persist_lost_result(_payload(attempt))

    task_db.expire_all()
    assert task_db.get(Attempt, attempt.id).status is AttemptStatusEnum.COMPLETED


def test_unknown_attempt(task_db: Session):
    attempt = _open_attempt(task_db)
    result = persist_lost_result(_payload(attempt, attempt_id=str(uuid.uuid4())))
    assert result == {"success": False, "error": "attempt_not_found"}
