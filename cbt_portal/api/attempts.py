"""Exam sitting routes: start/resume, answers, security events, submit, review.

Every request re-opens the attempt through :class:`ExamSession`, so the
remaining time is always computed from the server clock and an attempt
whose time ran out is closed on the first request that notices it.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cbt_portal.api.deps import get_current_user, get_store, require_student
from cbt_portal.config import settings
from cbt_portal.db.models import Attempt, Exam, RoleEnum, User
from cbt_portal.db.session import get_db
from cbt_portal.schemas.attempt import (
    AnswerSaved,
    AnswerSelect,
    AttemptSession,
    AttemptState,
    NoticeRead,
    OutcomeRead,
    ResultRead,
    ResultReview,
    ReviewedQuestion,
    SecurityEventKind,
    SecurityEventReport,
    SecurityEventResult,
)
from cbt_portal.schemas.exam import ExamDetailRead
from cbt_portal.services.rate_limiter import require_session_rate_limit
from cbt_portal.session import (
    ConflictError,
    ExamSession,
    LostResult,
    NotFoundError,
    SessionOutcome,
    SignalKind,
    format_time,
)
from cbt_portal.session.records import AttemptRecord, ExamRecord
from cbt_portal.session.sql_store import SqlRecordStore
from cbt_portal.tasks import persist_lost_result

logger = logging.getLogger(__name__)
router = APIRouter()

_EVENT_SOURCES = {
    SecurityEventKind.VISIBILITY_LOST: SignalKind.VISIBILITY,
    SecurityEventKind.FOCUS_LOST: SignalKind.FOCUS,
}


# ── helpers ───────────────────────────────────────────────────────────────────


def _hand_off_lost_result(lost: LostResult) -> None:
    """Queue a result the request could not write for the background worker."""
    try:
        persist_lost_result.delay(lost.to_payload())
    except Exception:
        logger.exception(
            "Could not queue lost result of attempt %s; payload=%s",
            lost.attempt_id,
            lost.to_payload(),
        )


async def _open(store: SqlRecordStore, attempt_id: uuid.UUID, user: User) -> ExamSession:
    return await ExamSession.open_attempt(
        store, attempt_id, user.id, on_result_lost=_hand_off_lost_result
    )


async def _owned_attempt(
    store: SqlRecordStore, attempt_id: uuid.UUID, user: User
) -> AttemptRecord:
    attempt = await store.get_attempt(attempt_id)
    if attempt.user_id != user.id:
        raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
    return attempt


def _exam_detail(db: Session, exam_id: uuid.UUID) -> ExamDetailRead:
    return ExamDetailRead.model_validate(db.get(Exam, exam_id))


def _notices(session: ExamSession) -> list[NoticeRead]:
    return [NoticeRead(kind=n.kind.value, message=n.message) for n in session.notices]


def _session_state(session: ExamSession) -> AttemptState:
    attempt = session.attempt
    live = not session.state.is_terminal
    remaining = session.remaining_seconds if live else 0
    return AttemptState(
        id=attempt.id,
        exam_id=attempt.exam_id,
        status=session.state.value,
        termination_reason=(
            attempt.termination_reason.value if attempt.termination_reason else None
        ),
        start_time=attempt.start_time,
        end_time=attempt.end_time,
        remaining_seconds=remaining,
        remaining_display=format_time(remaining),
        time_warning=live and 0 < remaining <= session.warning_seconds,
        violation_count=session.violations,
        max_violations=session.max_violations,
        answers={str(qid): label for qid, label in session.answers.items()},
        answered_count=session.answered_count,
        question_count=session.question_count,
        progress=round(session.progress, 2),
        resumed=session.resumed,
        notices=_notices(session),
    )


async def _stored_state(store: SqlRecordStore, attempt: AttemptRecord) -> AttemptState:
    """State of an attempt that is already over, straight from the store."""
    exam: ExamRecord = await store.get_exam(attempt.exam_id)
    answers = {}
    for row in await store.list_answers(attempt.id):
        question = exam.question(row.question_id)
        option = question.option_by_id(row.selected_option_id) if question else None
        if option is not None:
            answers[str(row.question_id)] = option.label
    total = len(exam.questions)
    return AttemptState(
        id=attempt.id,
        exam_id=attempt.exam_id,
        status=attempt.status.value,
        termination_reason=(
            attempt.termination_reason.value if attempt.termination_reason else None
        ),
        start_time=attempt.start_time,
        end_time=attempt.end_time,
        remaining_seconds=0,
        remaining_display=format_time(0),
        violation_count=attempt.violation_count,
        max_violations=settings.EXAM_MAX_VIOLATIONS,
        answers=answers,
        answered_count=len(answers),
        question_count=total,
        progress=round(len(answers) / total * 100, 2) if total else 0.0,
    )


def _outcome_read(outcome: SessionOutcome) -> OutcomeRead:
    card, result = outcome.score, outcome.result
    source = card or result
    return OutcomeRead(
        attempt_id=outcome.attempt_id,
        status=outcome.status.value,
        termination_reason=outcome.reason.value if outcome.reason else None,
        score=source.score if source else None,
        correct_answers=source.correct_answers if source else None,
        total_questions=source.total_questions if source else None,
        passed=source.passed if source else None,
        result=ResultRead.model_validate(result) if result else None,
        persisted=outcome.persisted,
    )


async def _stored_outcome(store: SqlRecordStore, attempt_id: uuid.UUID) -> OutcomeRead:
    attempt = await store.get_attempt(attempt_id)
    result = await store.get_result(attempt_id)
    return OutcomeRead(
        attempt_id=attempt.id,
        status=attempt.status.value,
        termination_reason=(
            attempt.termination_reason.value if attempt.termination_reason else None
        ),
        score=result.score if result else None,
        correct_answers=result.correct_answers if result else None,
        total_questions=result.total_questions if result else None,
        passed=result.passed if result else None,
        result=ResultRead.model_validate(result) if result else None,
        persisted=result is not None,
    )


# ── Sitting ───────────────────────────────────────────────────────────────────


@router.post(
    "/exams/{exam_id}/attempts",
    response_model=AttemptSession,
    status_code=status.HTTP_201_CREATED,
)
async def start_attempt(
    exam_id: uuid.UUID,
    current_user: User = Depends(require_student),
    store: SqlRecordStore = Depends(get_store),
    db: Session = Depends(get_db),
):
    """Start the exam, or resume the attempt already in progress."""
    session = ExamSession(
        store, exam_id, current_user.id, on_result_lost=_hand_off_lost_result
    )
    await session.start()
    await session.drain()
    exam = await run_in_threadpool(_exam_detail, db, exam_id)
    return AttemptSession(**_session_state(session).model_dump(), exam=exam)


@router.get("/attempts/{attempt_id}", response_model=AttemptState)
async def get_attempt(
    attempt_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: SqlRecordStore = Depends(get_store),
):
    """Current state of an attempt; closes it if its time has run out."""
    attempt = await _owned_attempt(store, attempt_id, current_user)
    if attempt.is_terminal:
        return await _stored_state(store, attempt)
    session = await _open(store, attempt_id, current_user)
    return _session_state(session)


@router.put("/attempts/{attempt_id}/answers", response_model=AnswerSaved)
async def save_answer(
    attempt_id: uuid.UUID,
    body: AnswerSelect,
    current_user: User = Depends(require_student),
    _rl: None = Depends(require_session_rate_limit),
    store: SqlRecordStore = Depends(get_store),
):
    """Select (or change) the answer to one question."""
    session = await _open(store, attempt_id, current_user)
    session.select_answer(body.question_id, body.option_label)
    unsaved = await session.flush()
    await session.drain()
    return AnswerSaved(
        question_id=body.question_id,
        option_label=body.option_label.lower(),
        saved=body.question_id not in unsaved,
        answered_count=session.answered_count,
        remaining_seconds=session.remaining_seconds,
        notices=_notices(session),
    )


@router.post("/attempts/{attempt_id}/events", response_model=SecurityEventResult)
async def report_event(
    attempt_id: uuid.UUID,
    body: SecurityEventReport,
    current_user: User = Depends(require_student),
    _rl: None = Depends(require_session_rate_limit),
    store: SqlRecordStore = Depends(get_store),
):
    """Record a focus loss or blocked shortcut seen by the exam page."""
    session = await _open(store, attempt_id, current_user)
    if not session.state.is_terminal:
        if body.kind is SecurityEventKind.SHORTCUT_BLOCKED:
            await session.report_violation(combo=body.combo or "blocked shortcut")
        else:
            await session.report_violation(_EVENT_SOURCES[body.kind])
    outcome = session.outcome
    return SecurityEventResult(
        violation_count=session.violations,
        max_violations=session.max_violations,
        status=session.state.value,
        terminated=session.state.is_terminal,
        notices=_notices(session),
        outcome=_outcome_read(outcome) if outcome else None,
    )


@router.post("/attempts/{attempt_id}/submit", response_model=OutcomeRead)
async def submit_attempt(
    attempt_id: uuid.UUID,
    current_user: User = Depends(require_student),
    store: SqlRecordStore = Depends(get_store),
):
    """Finish the attempt. Submitting a finished attempt returns its outcome."""
    attempt = await _owned_attempt(store, attempt_id, current_user)
    if attempt.is_terminal:
        return await _stored_outcome(store, attempt_id)
    try:
        session = await _open(store, attempt_id, current_user)
        outcome = session.outcome or await session.submit()
    except ConflictError:
        # closed by a concurrent request between the read and the submit
        return await _stored_outcome(store, attempt_id)
    return _outcome_read(outcome)


# ── Review ────────────────────────────────────────────────────────────────────


@router.get("/attempts/{attempt_id}/result", response_model=ResultReview)
def review_result(
    attempt_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Score and per-question review. Students see their own; admins any."""
    attempt = db.get(Attempt, attempt_id)
    if attempt is None or (
        attempt.user_id != current_user.id and current_user.role is not RoleEnum.ADMIN
    ):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attempt not found")
    if attempt.result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Result not available yet"
        )

    selected = {a.question_id: a.selected_option_id for a in attempt.answers}
    reviewed = []
    for question in attempt.exam.questions:
        chosen = next(
            (o for o in question.options if o.id == selected.get(question.id)), None
        )
        key = next((o for o in question.options if o.is_correct), None)
        reviewed.append(
            ReviewedQuestion(
                question_id=question.id,
                text=question.text,
                options={o.label: o.text for o in question.options},
                selected_label=chosen.label if chosen else None,
                correct_label=key.label if key else None,
                correct=chosen is not None and chosen.is_correct,
            )
        )

    return ResultReview(
        **ResultRead.model_validate(attempt.result).model_dump(),
        exam_title=attempt.exam.title,
        exam_code=attempt.exam.code,
        passing_score=attempt.exam.passing_score,
        status=attempt.status.value,
        termination_reason=(
            attempt.termination_reason.value if attempt.termination_reason else None
        ),
        start_time=attempt.start_time,
        end_time=attempt.end_time,
        questions=reviewed,
    )
