"""Exam authoring and admin reporting routes."""

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cbt_portal.api.deps import get_current_user, require_admin
from cbt_portal.db.models import (
    OPTION_LABELS,
    Answer,
    Attempt,
    AttemptStatusEnum,
    Exam,
    ExamAnalytics,
    ExamStatusEnum,
    Option,
    Question,
    Result,
    RoleEnum,
    User,
)
from cbt_portal.db.session import get_db
from cbt_portal.schemas.exam import (
    AnalyticsRead,
    ExamAdminDetailRead,
    ExamCreate,
    ExamDetailRead,
    ExamRead,
    ExamResultRow,
    ExamUpdate,
    LiveAttemptRead,
    QuestionAdminRead,
    QuestionWrite,
)
from cbt_portal.session.records import as_utc

logger = logging.getLogger(__name__)
router = APIRouter()


# ── helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get_exam_or_404(db: Session, exam_id: uuid.UUID) -> Exam:
    exam = db.get(Exam, exam_id)
    if exam is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    return exam


def _get_question_or_404(db: Session, exam_id: uuid.UUID, question_id: uuid.UUID) -> Question:
    question = db.get(Question, question_id)
    if question is None or question.exam_id != exam_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Question not found"
        )
    return question


def _ensure_not_being_sat(db: Session, exam_id: uuid.UUID) -> None:
    """Exam content is frozen while any attempt on it is in progress."""
    sitting = db.scalar(
        select(func.count(Attempt.id)).where(
            Attempt.exam_id == exam_id,
            Attempt.status == AttemptStatusEnum.IN_PROGRESS,
        )
    )
    if sitting:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Exam is being sat by {sitting} student(s) and cannot be changed",
        )


def _write_options(question: Question, body: QuestionWrite) -> None:
    """Replace the four choices of *question* from *body*."""
    question.options.clear()
    for label, text in zip(OPTION_LABELS, body.options):
        question.options.append(
            Option(label=label, text=text.strip(), is_correct=label == body.correct_option)
        )


# ── Exams ─────────────────────────────────────────────────────────────────────


@router.post("", response_model=ExamRead, status_code=status.HTTP_201_CREATED)
def create_exam(
    body: ExamCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    exam = Exam(
        title=body.title,
        code=body.code,
        description=body.description,
        duration_minutes=body.duration_minutes,
        passing_score=body.passing_score,
        status=ExamStatusEnum(body.status.value),
        created_by=admin.id,
    )
    db.add(exam)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Exam code {body.code!r} already in use",
        )
    db.refresh(exam)
    logger.info("Exam %s (%s) created by %s", exam.code, exam.id, admin.email)
    return exam


@router.get("", response_model=list[ExamRead])
def list_exams(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Admins see every exam; students only the ones open for sitting."""
    stmt = select(Exam).order_by(Exam.created_at.desc())
    if current_user.role is not RoleEnum.ADMIN:
        stmt = stmt.where(Exam.status == ExamStatusEnum.ACTIVE)
    return db.scalars(stmt).all()


@router.get("/{exam_id}", response_model=None)
def get_exam(
    exam_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Exam with its questions. Only admins get the answer key."""
    exam = _get_exam_or_404(db, exam_id)
    if current_user.role is RoleEnum.ADMIN:
        return ExamAdminDetailRead.model_validate(exam)
    if exam.status is not ExamStatusEnum.ACTIVE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    return ExamDetailRead.model_validate(exam)


@router.patch("/{exam_id}", response_model=ExamRead)
def update_exam(
    exam_id: uuid.UUID,
    body: ExamUpdate,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Edit an exam. Only its status may change while it is being sat."""
    exam = _get_exam_or_404(db, exam_id)
    changes = body.model_dump(exclude_unset=True)
    if set(changes) - {"status"}:
        _ensure_not_being_sat(db, exam_id)
    if "status" in changes and changes["status"] is not None:
        changes["status"] = ExamStatusEnum(changes["status"].value)
    for field, value in changes.items():
        if value is not None:
            setattr(exam, field, value)
    db.commit()
    db.refresh(exam)
    return exam


@router.delete("/{exam_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_exam(
    exam_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Delete an exam that nobody has sat yet."""
    exam = _get_exam_or_404(db, exam_id)
    taken = db.scalar(select(func.count(Attempt.id)).where(Attempt.exam_id == exam_id))
    if taken:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Exam has attempts and cannot be deleted",
        )
    db.delete(exam)
    db.commit()
    logger.info("Exam %s deleted", exam_id)


# ── Questions ─────────────────────────────────────────────────────────────────


@router.post(
    "/{exam_id}/questions",
    response_model=QuestionAdminRead,
    status_code=status.HTTP_201_CREATED,
)
def add_question(
    exam_id: uuid.UUID,
    body: QuestionWrite,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    exam = _get_exam_or_404(db, exam_id)
    _ensure_not_being_sat(db, exam.id)
    position = body.position
    if position is None:
        last = db.scalar(
            select(func.max(Question.position)).where(Question.exam_id == exam.id)
        )
        position = 0 if last is None else last + 1

    question = Question(exam_id=exam.id, text=body.text, position=position)
    _write_options(question, body)
    db.add(question)
    db.commit()
    db.refresh(question)
    return question


@router.put("/{exam_id}/questions/{question_id}", response_model=QuestionAdminRead)
def replace_question(
    exam_id: uuid.UUID,
    question_id: uuid.UUID,
    body: QuestionWrite,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    question = _get_question_or_404(db, exam_id, question_id)
    _ensure_not_being_sat(db, exam_id)
    question.text = body.text
    if body.position is not None:
        question.position = body.position
    # Saved answers point at option rows; the key changes in place.
    for option, text in zip(question.options, body.options):
        option.text = text.strip()
        option.is_correct = option.label == body.correct_option
    if len(question.options) != len(OPTION_LABELS):
        _write_options(question, body)
    db.commit()
    db.refresh(question)
    return question


@router.delete(
    "/{exam_id}/questions/{question_id}", status_code=status.HTTP_204_NO_CONTENT
)
def delete_question(
    exam_id: uuid.UUID,
    question_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    question = _get_question_or_404(db, exam_id, question_id)
    _ensure_not_being_sat(db, exam_id)
    answered = db.scalar(
        select(func.count(Answer.id)).where(Answer.question_id == question_id)
    )
    if answered:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Question has been answered and cannot be deleted",
        )
    db.delete(question)
    db.commit()


# ── Reporting ─────────────────────────────────────────────────────────────────


@router.get("/{exam_id}/results", response_model=list[ExamResultRow])
def list_results(
    exam_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Every scored attempt of an exam, best score first."""
    _get_exam_or_404(db, exam_id)
    rows = db.execute(
        select(Result, Attempt, User)
        .join(Attempt, Attempt.id == Result.attempt_id)
        .join(User, User.id == Result.user_id)
        .where(Result.exam_id == exam_id)
        .order_by(Result.score.desc(), Result.created_at)
    ).all()
    return [
        ExamResultRow(
            attempt_id=attempt.id,
            user_id=user.id,
            student_name=user.full_name,
            student_email=user.email,
            status=attempt.status.value,
            termination_reason=(
                attempt.termination_reason.value if attempt.termination_reason else None
            ),
            score=result.score,
            correct_answers=result.correct_answers,
            total_questions=result.total_questions,
            passed=result.passed,
            violation_count=attempt.violation_count,
            created_at=result.created_at,
        )
        for result, attempt, user in rows
    ]


@router.get("/{exam_id}/analytics", response_model=AnalyticsRead)
def get_analytics(
    exam_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Running aggregates; all zeros until the first result is in."""
    _get_exam_or_404(db, exam_id)
    row = db.scalars(
        select(ExamAnalytics).where(ExamAnalytics.exam_id == exam_id)
    ).first()
    if row is None:
        return AnalyticsRead(exam_id=exam_id)
    return row


@router.get("/{exam_id}/monitor", response_model=list[LiveAttemptRead])
def monitor_exam(
    exam_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Attempts currently in progress, with wall-clock time left."""
    exam = _get_exam_or_404(db, exam_id)
    answered = (
        select(Answer.attempt_id, func.count(Answer.id).label("answered"))
        .group_by(Answer.attempt_id)
        .subquery()
    )
    rows = db.execute(
        select(Attempt, User, func.coalesce(answered.c.answered, 0))
        .join(User, User.id == Attempt.user_id)
        .outerjoin(answered, answered.c.attempt_id == Attempt.id)
        .where(
            Attempt.exam_id == exam_id,
            Attempt.status == AttemptStatusEnum.IN_PROGRESS,
        )
        .order_by(Attempt.start_time)
    ).all()

    now = _utcnow()
    duration = exam.duration_minutes * 60
    live = []
    for attempt, user, answered_count in rows:
        elapsed = int((now - as_utc(attempt.start_time)).total_seconds())
        live.append(
            LiveAttemptRead(
                attempt_id=attempt.id,
                user_id=user.id,
                student_name=user.full_name,
                start_time=attempt.start_time,
                remaining_seconds=max(0, duration - elapsed),
                answered_count=answered_count,
                question_count=exam.question_count,
                violation_count=attempt.violation_count,
            )
        )
    return live
