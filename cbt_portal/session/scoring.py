"""Scoring engine — deterministic score, pass/fail and the analytics fold.

Scores are whole percentages rounded **half-up** (66.5 → 67), the same rule
the portal has always shown students. Unanswered questions simply earn no
credit; there is no negative marking.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from cbt_portal.session.records import AnalyticsRecord, AnswerRecord, ExamRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreCard:
    correct_answers: int
    total_questions: int
    score: int
    passed: bool


@dataclass(frozen=True)
class AnalyticsSample:
    score: int
    passed: bool
    completion_seconds: float


def percentage(correct: int, total: int) -> int:
    """Whole-number percentage, rounded half-up. Zero questions score 0."""
    if total <= 0:
        return 0
    exact = Decimal(100 * correct) / Decimal(total)
    return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def score_attempt(exam: ExamRecord, answers: Iterable[AnswerRecord]) -> ScoreCard:
    """Grade *answers* against the exam's answer key."""
    selected: dict[uuid.UUID, uuid.UUID | None] = {
        a.question_id: a.selected_option_id for a in answers
    }

    correct = 0
    for question in exam.questions:
        key = question.correct_option
        if key is None:
            logger.warning("Question %s has no correct option — never scores", question.id)
            continue
        if selected.get(question.id) == key.id:
            correct += 1

    total = len(exam.questions)
    score = percentage(correct, total)
    return ScoreCard(
        correct_answers=correct,
        total_questions=total,
        score=score,
        passed=score >= exam.passing_score,
    )


def completion_seconds(
    start_time: datetime, end_time: datetime, duration_seconds: int
) -> float:
    """Seconds spent on the attempt, clamped to ``[0, duration]``."""
    elapsed = (end_time - start_time).total_seconds()
    return float(min(max(elapsed, 0.0), duration_seconds))


def fold_analytics(
    exam_id: uuid.UUID, current: AnalyticsRecord | None, sample: AnalyticsSample
) -> AnalyticsRecord:
    """Fold one new result into the running per-exam aggregates.

    The pass count is carried explicitly instead of being reconstructed from
    the (rounded) pass rate, so repeated folds never drift.
    """
    passed = 1 if sample.passed else 0
    if current is None or current.total_attempts <= 0:
        return AnalyticsRecord(
            exam_id=exam_id,
            total_attempts=1,
            avg_score=float(sample.score),
            pass_count=passed,
            pass_rate=100.0 * passed,
            avg_completion_time=sample.completion_seconds,
        )

    n = current.total_attempts
    n_new = n + 1
    pass_count = current.pass_count + passed
    return AnalyticsRecord(
        exam_id=exam_id,
        total_attempts=n_new,
        avg_score=(current.avg_score * n + sample.score) / n_new,
        pass_count=pass_count,
        pass_rate=pass_count / n_new * 100,
        avg_completion_time=(
            (current.avg_completion_time * n + sample.completion_seconds) / n_new
        ),
    )
