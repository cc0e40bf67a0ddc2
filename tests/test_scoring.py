"""Unit tests for the scoring engine."""

import uuid
from datetime import timedelta

import pytest

from cbt_portal.session.records import AnalyticsRecord, AnswerRecord
from cbt_portal.session.scoring import (
    AnalyticsSample,
    completion_seconds,
    fold_analytics,
    percentage,
    score_attempt,
)
from tests.fakes import T0, make_exam


def _answers(exam, labels):
    """AnswerRecords selecting *labels* (None = unanswered) question by question."""
    attempt_id = uuid.uuid4()
    records = []
    for question, label in zip(exam.questions, labels):
        if label is None:
            continue
        records.append(
            AnswerRecord(
                attempt_id=attempt_id,
                question_id=question.id,
                selected_option_id=question.option_by_label(label).id,
            )
        )
    return records


class TestPercentage:
    @pytest.mark.parametrize(
        "correct,total,expected",
        [
            (3, 4, 75),
            (2, 3, 67),
            (1, 3, 33),
            (1, 8, 13),  # 12.5 rounds half-up, not to even
            (5, 8, 63),  # 62.5
            (0, 5, 0),
            (5, 5, 100),
        ],
    )
    def test_rounding(self, correct, total, expected):
        assert percentage(correct, total) == expected

    def test_zero_questions_scores_zero(self):
        assert percentage(0, 0) == 0


class TestScoreAttempt:
    def test_three_of_four_correct_passes(self):
        exam = make_exam(4, passing_score=50)
        card = score_attempt(exam, _answers(exam, ["a", "a", "a", "b"]))

        assert card.correct_answers == 3
        assert card.total_questions == 4
        assert card.score == 75
        assert card.passed is True

    def test_unanswered_questions_earn_nothing(self):
        exam = make_exam(4, passing_score=50)
        card = score_attempt(exam, _answers(exam, ["a", None, None, None]))

        assert card.correct_answers == 1
        assert card.score == 25
        assert card.passed is False

    def test_score_equal_to_passing_score_passes(self):
        exam = make_exam(4, passing_score=75)
        card = score_attempt(exam, _answers(exam, ["a", "a", "a", "c"]))
        assert card.score == 75
        assert card.passed is True

    def test_no_answers(self):
        exam = make_exam(3)
        card = score_attempt(exam, [])
        assert card.correct_answers == 0
        assert card.score == 0

    def test_empty_exam(self):
        exam = make_exam(0, passing_score=0)
        card = score_attempt(exam, [])
        assert card.total_questions == 0
        assert card.score == 0
        assert card.passed is True

    def test_answers_to_other_exams_are_ignored(self):
        exam = make_exam(2)
        stray = AnswerRecord(
            attempt_id=uuid.uuid4(),
            question_id=uuid.uuid4(),
            selected_option_id=uuid.uuid4(),
        )
        card = score_attempt(exam, [stray, *_answers(exam, ["a", "b"])])
        assert card.correct_answers == 1
        assert card.score == 50


class TestCompletionSeconds:
    def test_elapsed(self):
        assert completion_seconds(T0, T0 + timedelta(minutes=12), 3600) == 720.0

    def test_clamped_to_duration(self):
        assert completion_seconds(T0, T0 + timedelta(hours=2), 3600) == 3600.0

    def test_never_negative(self):
        assert completion_seconds(T0, T0 - timedelta(seconds=5), 3600) == 0.0


class TestFoldAnalytics:
    def test_first_result(self):
        exam_id = uuid.uuid4()
        folded = fold_analytics(
            exam_id, None, AnalyticsSample(score=80, passed=True, completion_seconds=1200)
        )
        assert folded == AnalyticsRecord(
            exam_id=exam_id,
            total_attempts=1,
            avg_score=80.0,
            pass_count=1,
            pass_rate=100.0,
            avg_completion_time=1200.0,
        )

    def test_two_results_average(self):
        exam_id = uuid.uuid4()
        first = fold_analytics(
            exam_id, None, AnalyticsSample(score=80, passed=True, completion_seconds=1200)
        )
        second = fold_analytics(
            exam_id, first, AnalyticsSample(score=100, passed=True, completion_seconds=1800)
        )
        assert second.total_attempts == 2
        assert second.avg_score == pytest.approx(90.0)
        assert second.pass_rate == pytest.approx(100.0)
        assert second.avg_completion_time == pytest.approx(1500.0)

    def test_pass_rate_tracks_pass_count(self):
        exam_id = uuid.uuid4()
        current = None
        for score, passed in [(80, True), (30, False), (60, True)]:
            current = fold_analytics(
                exam_id,
                current,
                AnalyticsSample(score=score, passed=passed, completion_seconds=600),
            )
        assert current.total_attempts == 3
        assert current.pass_count == 2
        assert current.pass_rate == pytest.approx(200 / 3)
        assert current.avg_score == pytest.approx(170 / 3)
