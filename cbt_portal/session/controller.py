"""Session controller — drives one exam attempt to exactly one terminal state.

States::

    NOT_STARTED ──start()──▶ IN_PROGRESS ──submit()──────────▶ COMPLETED
                                         ──TimeExpired───────▶ TIMED_OUT
                                         ──2nd violation─────▶ TERMINATED

Environment events from the :class:`SecurityMonitor` are queued and applied
one at a time, so a violation, the clock running out and a manual submit can
never interleave inside a transition. The terminal transition is a
compare-and-set twice over: locally through one shared finalization future,
remotely through ``update_attempt_status`` which only succeeds while the
attempt is still ``in_progress``. Only the winner scores the attempt and
folds analytics.

The controller works in two modes:

* **live** — ``await session.run()`` activates the monitor against a signal
  source, ticks the clock and consumes events until the attempt ends;
* **request-scoped** — the API re-opens the attempt on every request
  (``start()`` resumes it with wall-clock remaining time), applies one
  operation and drains the event queue before answering.
"""

import asyncio
import contextlib
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from cbt_portal.config import settings
from cbt_portal.session.answers import AnswerWriter
from cbt_portal.session.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from cbt_portal.session.events import (
    EnvironmentSignalSource,
    FullscreenChanged,
    NoticeKind,
    SessionEvent,
    SessionNotice,
    ShortcutBlocked,
    SignalKind,
    TimeExpired,
    VisibilityLost,
    WarningThreshold,
)
from cbt_portal.session.monitor import SecurityMonitor, format_time
from cbt_portal.session.records import (
    AnswerRecord,
    AttemptRecord,
    AttemptStatus,
    ExamRecord,
    ExamStatus,
    QuestionRecord,
    ResultRecord,
    TerminationReason,
)
from cbt_portal.session.scoring import (
    AnalyticsSample,
    ScoreCard,
    completion_seconds,
    fold_analytics,
    score_attempt,
)
from cbt_portal.session.store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self not in (SessionState.NOT_STARTED, SessionState.IN_PROGRESS)


_TERMINAL_STATUS = {
    None: AttemptStatus.COMPLETED,
    TerminationReason.TIME_UP: AttemptStatus.TIMED_OUT,
    TerminationReason.SECURITY_VIOLATION: AttemptStatus.TERMINATED,
}


@dataclass(frozen=True)
class SessionOutcome:
    """What a terminal transition produced.

    ``scored`` is False for the loser of a submit/terminate race: it reports
    the winner's status and whatever result the store already holds.
    ``persisted`` is False when the result could not be written and was
    handed to the lost-result hook instead.
    """

    attempt_id: uuid.UUID
    status: AttemptStatus
    reason: TerminationReason | None
    score: ScoreCard | None
    result: ResultRecord | None
    scored: bool
    persisted: bool


@dataclass(frozen=True)
class LostResult:
    """A finalization whose remote writes did not go through."""

    attempt_id: uuid.UUID
    exam_id: uuid.UUID
    user_id: uuid.UUID
    status: AttemptStatus
    reason: TerminationReason | None
    end_time: datetime
    score: ScoreCard
    completion_seconds: float

    def to_payload(self) -> dict:
        return {
            "attempt_id": str(self.attempt_id),
            "exam_id": str(self.exam_id),
            "user_id": str(self.user_id),
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "end_time": self.end_time.isoformat(),
            "score": self.score.score,
            "correct_answers": self.score.correct_answers,
            "total_questions": self.score.total_questions,
            "passed": self.score.passed,
            "completion_seconds": self.completion_seconds,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remaining_seconds(exam: ExamRecord, attempt: AttemptRecord, now: datetime) -> int:
    """Wall-clock time left: ``duration − (now − start)``, never below zero."""
    elapsed = int((now - attempt.start_time).total_seconds())
    return max(0, exam.duration_seconds - elapsed)


class ExamSession:
    """One student's sitting of one exam."""

    def __init__(
        self,
        store: RecordStore,
        exam_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        source: EnvironmentSignalSource | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        warning_seconds: int | None = None,
        max_violations: int | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        on_notice: Callable[[SessionNotice], None] | None = None,
        on_result_lost: Callable[[LostResult], None] | None = None,
    ):
        self.store = store
        self.exam_id = exam_id
        self.user_id = user_id

        self._source = source
        self._clock = clock
        self._sleep = sleep
        self.warning_seconds = (
            settings.EXAM_TIME_WARNING_SECONDS if warning_seconds is None else warning_seconds
        )
        self.max_violations = (
            settings.EXAM_MAX_VIOLATIONS if max_violations is None else max_violations
        )
        self._retry_attempts = max(
            1, settings.FINALIZE_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        )
        self._retry_delay = (
            settings.FINALIZE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        )
        self._on_notice = on_notice
        self._on_result_lost = on_result_lost

        self.state = SessionState.NOT_STARTED
        self.exam: ExamRecord | None = None
        self.attempt: AttemptRecord | None = None
        self.monitor: SecurityMonitor | None = None
        self.resumed = False
        self.answers: dict[uuid.UUID, str] = {}  # question_id → option label
        self.current_index = 0
        self.notices: list[SessionNotice] = []
        self.outcome: SessionOutcome | None = None

        self._writer: AnswerWriter | None = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._event_lock = asyncio.Lock()
        self._finalization: asyncio.Future | None = None

    # ── opening ──────────────────────────────────────────────────────────

    @classmethod
    async def open_attempt(
        cls, store: RecordStore, attempt_id: uuid.UUID, user_id: uuid.UUID, **kwargs
    ) -> "ExamSession":
        """Re-open an in-progress attempt owned by *user_id*.

        The returned session may already be terminal if the attempt's time
        ran out while nobody was looking.
        """
        attempt = await store.get_attempt(attempt_id)
        if attempt.user_id != user_id:
            raise NotFoundError("Attempt not found", attempt_id=str(attempt_id))
        if attempt.is_terminal:
            raise ConflictError(
                f"Attempt already {attempt.status.value}", attempt_id=str(attempt_id)
            )
        session = cls(store, attempt.exam_id, user_id, **kwargs)
        await session.start()
        if session.attempt is None or session.attempt.id != attempt_id:
            raise ConflictError(
                "Another attempt is in progress for this exam",
                attempt_id=str(attempt_id),
            )
        return session

    async def load(self) -> ExamRecord:
        """Fetch the exam; it must be active to be taken or resumed."""
        exam = await self.store.get_exam(self.exam_id)
        if exam.status is not ExamStatus.ACTIVE:
            raise NotFoundError("Exam not found or not active", exam_id=str(self.exam_id))
        self.exam = exam
        return exam

    async def start(self) -> AttemptRecord:
        """Resume the student's in-progress attempt, or create one."""
        if self.state is SessionState.IN_PROGRESS:
            return self.attempt
        if self.state is not SessionState.NOT_STARTED:
            raise ConflictError(f"Session already {self.state.value}")

        exam = await self.load()
        attempt = await self.store.find_active_attempt(exam.id, self.user_id)
        resumed = attempt is not None
        if attempt is None:
            try:
                attempt = await self.store.create_attempt(exam.id, self.user_id, self._clock())
            except ConflictError:
                # Someone else created it first; theirs is the one to resume.
                attempt = await self.store.find_active_attempt(exam.id, self.user_id)
                if attempt is None:
                    raise ConflictError(
                        "Attempt changed state while starting, please retry",
                        exam_id=str(exam.id),
                    )
                resumed = True

        await self._enter(attempt, resumed)
        return attempt

    async def _enter(self, attempt: AttemptRecord, resumed: bool) -> None:
        exam = self.exam
        remaining = remaining_seconds(exam, attempt, self._clock())

        answers: dict[uuid.UUID, str] = {}
        if resumed:
            for row in await self.store.list_answers(attempt.id):
                question = exam.question(row.question_id)
                option = question.option_by_id(row.selected_option_id) if question else None
                if option is not None:
                    answers[row.question_id] = option.label

        self.attempt = attempt
        self.resumed = resumed
        self.answers = answers
        self.state = SessionState.IN_PROGRESS
        self._writer = AnswerWriter(self.store, attempt.id, self._on_save_failed)
        self.monitor = SecurityMonitor(
            self._post,
            remaining,
            warning_seconds=self.warning_seconds,
            violations=attempt.violation_count,
            source=self._source,
            sleep=self._sleep,
        )
        logger.info(
            "%s attempt %s (exam %s, user %s) — %s left",
            "Resumed" if resumed else "Started",
            attempt.id,
            exam.id,
            self.user_id,
            format_time(remaining),
        )

        if remaining == 0:
            await self.force_terminate(TerminationReason.TIME_UP)

    # ── read-only views ──────────────────────────────────────────────────

    @property
    def remaining_seconds(self) -> int:
        return self.monitor.remaining_seconds if self.monitor else 0

    @property
    def violations(self) -> int:
        return self.monitor.violations if self.monitor else 0

    @property
    def question_count(self) -> int:
        return len(self.exam.questions) if self.exam else 0

    @property
    def current_question(self) -> QuestionRecord | None:
        if not self.exam or not self.exam.questions:
            return None
        return self.exam.questions[self.current_index]

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    @property
    def progress(self) -> float:
        """Share of questions answered, as a percentage."""
        if not self.question_count:
            return 0.0
        return self.answered_count / self.question_count * 100

    @property
    def unsaved_answers(self) -> dict[uuid.UUID, uuid.UUID]:
        return self._writer.unsaved if self._writer else {}

    # ── student actions ──────────────────────────────────────────────────

    def navigate(self, index: int) -> bool:
        """Move to question *index*. Out-of-range requests are ignored."""
        if not 0 <= index < self.question_count:
            return False
        self.current_index = index
        return True

    def next_question(self) -> bool:
        return self.navigate(self.current_index + 1)

    def previous_question(self) -> bool:
        return self.navigate(self.current_index - 1)

    def select_answer(self, question_id: uuid.UUID, option_label: str) -> None:
        """Record a selection locally and schedule its save.

        Must be called from a running event loop. Save failures never raise
        here; they surface as a ``SAVE_FAILED`` notice and are retried on the
        next interaction.
        """
        self._require_in_progress()
        question = self.exam.question(question_id)
        if question is None:
            raise ValidationError("Question is not part of this exam", question_id=str(question_id))
        option = question.option_by_label(option_label)
        if option is None:
            raise ValidationError(
                f"Unknown option {option_label!r}", question_id=str(question_id)
            )

        self.answers[question_id] = option.label
        self._writer.replay()
        self._writer.enqueue(question_id, option.id)

    async def flush(self) -> dict[uuid.UUID, uuid.UUID]:
        """Replay failed saves and wait for all writes. Returns what is still unsaved."""
        if self._writer is None:
            return {}
        self._writer.replay()
        return await self._writer.flush()

    async def report_violation(
        self, source: SignalKind = SignalKind.VISIBILITY, combo: str | None = None
    ) -> None:
        """Record a violation observed outside the live signal source (e.g. over HTTP)."""
        self._require_in_progress()
        if combo:
            self.monitor.report_blocked_shortcut(combo)
        else:
            self.monitor.report_visibility_lost(source)
        await self.drain()

    async def submit(self) -> SessionOutcome:
        """Finish the attempt. Repeated calls return the first call's outcome."""
        if self._finalization is None:
            self._require_in_progress()
            self._begin_finalization(AttemptStatus.COMPLETED, None)
        return await asyncio.shield(self._finalization)

    async def force_terminate(self, reason: TerminationReason) -> SessionOutcome:
        """End the attempt for *reason* unless it is already ending."""
        if self._finalization is None:
            self._require_in_progress()
            self._begin_finalization(_TERMINAL_STATUS[reason], reason)
        return await asyncio.shield(self._finalization)

    def _require_in_progress(self) -> None:
        if self.state is not SessionState.IN_PROGRESS:
            raise ConflictError(f"Attempt is not in progress ({self.state.value})")

    # ── events ───────────────────────────────────────────────────────────

    def _post(self, event: SessionEvent) -> None:
        self._events.put_nowait(event)

    async def drain(self) -> None:
        """Apply every queued event in order."""
        async with self._event_lock:
            while not self._events.empty():
                event = self._events.get_nowait()
                if event is not None:
                    await self._apply(event)

    async def _apply(self, event: SessionEvent) -> None:
        if self.state is not SessionState.IN_PROGRESS:
            return

        if isinstance(event, (VisibilityLost, ShortcutBlocked)):
            count = await self._record_violation(event.count)
            if count >= self.max_violations:
                logger.warning(
                    "Attempt %s terminated after %d violations", self.attempt.id, count
                )
                await self.force_terminate(TerminationReason.SECURITY_VIOLATION)
            else:
                self._notify(
                    NoticeKind.VIOLATION_WARNING,
                    "Leaving the exam window is not allowed. "
                    "One more violation will end your exam.",
                )
        elif isinstance(event, WarningThreshold):
            self._notify(
                NoticeKind.TIME_WARNING,
                f"{format_time(event.remaining_seconds)} remaining.",
            )
        elif isinstance(event, TimeExpired):
            await self.force_terminate(TerminationReason.TIME_UP)
        elif isinstance(event, FullscreenChanged) and not event.active:
            self._notify(
                NoticeKind.FULLSCREEN_EXITED, "Please return to fullscreen to continue."
            )

    async def _record_violation(self, local_count: int) -> int:
        try:
            stored = await self.store.record_violation(self.attempt.id)
        except PersistenceError as exc:
            logger.warning("Violation for attempt %s not persisted: %s", self.attempt.id, exc)
            stored = local_count
        count = max(local_count, stored)
        self.monitor.violations = count
        return count

    def _notify(self, kind: NoticeKind, message: str) -> None:
        notice = SessionNotice(kind=kind, message=message)
        self.notices.append(notice)
        if self._on_notice is not None:
            self._on_notice(notice)

    def _on_save_failed(self, question_id: uuid.UUID, exc: Exception) -> None:
        self._notify(
            NoticeKind.SAVE_FAILED,
            "Your last answer could not be saved yet; it will be retried.",
        )

    # ── live mode ────────────────────────────────────────────────────────

    async def run(self) -> SessionOutcome:
        """Supervise the attempt until it reaches a terminal state."""
        if self.state is SessionState.NOT_STARTED:
            await self.start()
        if self.state.is_terminal:
            return await asyncio.shield(self._finalization)

        self.monitor.activate()
        clock = asyncio.get_running_loop().create_task(self.monitor.run_clock())
        try:
            while self.state is SessionState.IN_PROGRESS:
                event = await self._events.get()
                if event is None:
                    continue
                async with self._event_lock:
                    await self._apply(event)
        finally:
            clock.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await clock
            self.monitor.deactivate()
        return await asyncio.shield(self._finalization)

    # ── finalization ─────────────────────────────────────────────────────

    def _begin_finalization(
        self, status: AttemptStatus, reason: TerminationReason | None
    ) -> None:
        # Local state turns terminal before any remote write can fail.
        self.state = SessionState(status.value)
        self._finalization = asyncio.ensure_future(self._finalize(status, reason))

    async def _with_retries(self, what: str, call: Callable[[], Awaitable[T]]) -> T:
        for attempt_no in range(1, self._retry_attempts + 1):
            try:
                return await call()
            except PersistenceError as exc:
                if attempt_no == self._retry_attempts:
                    raise
                logger.warning(
                    "%s failed (try %d/%d): %s", what, attempt_no, self._retry_attempts, exc
                )
                await self._sleep(self._retry_delay * 2 ** (attempt_no - 1))
        raise AssertionError("unreachable")

    async def _finalize(
        self, status: AttemptStatus, reason: TerminationReason | None
    ) -> SessionOutcome:
        attempt = self.attempt
        end_time = self._clock()
        try:
            unsaved = await self.flush()

            try:
                won: bool | None = await self._with_retries(
                    f"Closing attempt {attempt.id}",
                    lambda: self.store.update_attempt_status(attempt.id, status, end_time, reason),
                )
            except PersistenceError:
                logger.error("Could not record terminal status of attempt %s", attempt.id)
                won = None

            if won is False:
                outcome = await self._observe_winner(status, reason)
            else:
                self.attempt = attempt.model_copy(
                    update={
                        "status": status,
                        "end_time": end_time,
                        "termination_reason": reason,
                        "violation_count": self.violations,
                    }
                )
                outcome = await self._score(
                    status, reason, end_time, status_saved=bool(won), unsaved=bool(unsaved)
                )
        finally:
            if self.monitor is not None:
                self.monitor.deactivate()
            self._events.put_nowait(None)  # wake the live loop

        self.outcome = outcome
        self._notify(NoticeKind.SESSION_ENDED, _ending_message(outcome))
        return outcome

    async def _observe_winner(
        self, status: AttemptStatus, reason: TerminationReason | None
    ) -> SessionOutcome:
        """Another writer closed the attempt first; adopt its outcome."""
        attempt = self.attempt
        logger.info("Attempt %s was already closed elsewhere; not re-scoring", attempt.id)
        try:
            latest = await self.store.get_attempt(attempt.id)
            status, reason = latest.status, latest.termination_reason
            self.attempt = latest
            self.state = SessionState(status.value)
            result = await self.store.get_result(attempt.id)
        except PersistenceError as exc:
            logger.warning("Could not read final state of attempt %s: %s", attempt.id, exc)
            result = None
        return SessionOutcome(
            attempt_id=attempt.id,
            status=status,
            reason=reason,
            score=None,
            result=result,
            scored=False,
            persisted=result is not None,
        )

    async def _score(
        self,
        status: AttemptStatus,
        reason: TerminationReason | None,
        end_time: datetime,
        *,
        status_saved: bool,
        unsaved: bool = False,
    ) -> SessionOutcome:
        attempt, exam = self.attempt, self.exam

        if unsaved:
            logger.warning("Scoring attempt %s from local answers (unsaved writes)", attempt.id)
            answers = self._local_answer_records()
        else:
            try:
                answers = await self._with_retries(
                    f"Loading answers of attempt {attempt.id}",
                    lambda: self.store.list_answers(attempt.id),
                )
            except PersistenceError:
                logger.warning("Scoring attempt %s from local answers", attempt.id)
                answers = self._local_answer_records()

        card = score_attempt(exam, answers)
        elapsed = completion_seconds(attempt.start_time, end_time, exam.duration_seconds)
        logger.info(
            "Attempt %s %s: %d/%d correct, score %d, %s",
            attempt.id,
            status.value,
            card.correct_answers,
            card.total_questions,
            card.score,
            "passed" if card.passed else "failed",
        )

        result = None
        if status_saved:
            result = await self._write_result(card)
            if result is not None:
                await self._fold_analytics(card, elapsed)

        persisted = result is not None
        if not persisted:
            lost = LostResult(
                attempt_id=attempt.id,
                exam_id=exam.id,
                user_id=self.user_id,
                status=status,
                reason=reason,
                end_time=end_time,
                score=card,
                completion_seconds=elapsed,
            )
            logger.error(
                "RESULT NOT PERSISTED for attempt %s (score %d) — handing off for retry",
                attempt.id,
                card.score,
            )
            if self._on_result_lost is not None:
                self._on_result_lost(lost)

        return SessionOutcome(
            attempt_id=attempt.id,
            status=status,
            reason=reason,
            score=card,
            result=result,
            scored=True,
            persisted=persisted,
        )

    async def _write_result(self, card: ScoreCard) -> ResultRecord | None:
        attempt = self.attempt
        try:
            return await self._with_retries(
                f"Writing result of attempt {attempt.id}",
                lambda: self.store.create_result(
                    attempt.id,
                    self.exam.id,
                    self.user_id,
                    card.score,
                    card.correct_answers,
                    card.total_questions,
                    card.passed,
                ),
            )
        except ConflictError:
            logger.warning("Result for attempt %s already exists", attempt.id)
        except PersistenceError:
            return None
        try:
            return await self.store.get_result(attempt.id)
        except PersistenceError:
            return None

    async def _fold_analytics(self, card: ScoreCard, elapsed: float) -> None:
        exam_id = self.exam.id
        sample = AnalyticsSample(
            score=card.score, passed=card.passed, completion_seconds=elapsed
        )
        try:
            await self._with_retries(
                f"Updating analytics of exam {exam_id}",
                lambda: self.store.upsert_analytics(
                    exam_id, lambda current: fold_analytics(exam_id, current, sample)
                ),
            )
        except PersistenceError:
            logger.error(
                "Analytics for exam %s missed the result of attempt %s",
                exam_id,
                self.attempt.id,
            )

    def _local_answer_records(self) -> list[AnswerRecord]:
        records = []
        for question_id, label in self.answers.items():
            option = self.exam.question(question_id).option_by_label(label)
            records.append(
                AnswerRecord(
                    attempt_id=self.attempt.id,
                    question_id=question_id,
                    selected_option_id=option.id if option else None,
                )
            )
        return records


def _ending_message(outcome: SessionOutcome) -> str:
    if outcome.reason is TerminationReason.TIME_UP:
        return "Time is up. Your answers have been submitted."
    if outcome.reason is TerminationReason.SECURITY_VIOLATION:
        return "Your exam was ended because you left the exam window again."
    return "Your exam has been submitted."
