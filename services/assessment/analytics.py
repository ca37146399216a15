"""Assessment-level analytics.

Running aggregates are folded in one graded attempt at a time with an
incremental mean, so no attempt history is needed to keep them current.
`get_attempt_statistics` computes a fuller report from the stored attempts.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from packages.common.locks import KeyedLocks
from packages.schemas.assessment import (
    Assessment,
    AssessmentAnalytics,
    AssessmentAttempt,
    AttemptStatistics,
    GradeResult,
    QuestionAnalytics,
)
from .repo import AssessmentRepository, AttemptRepository
from .scorer import round_half_up

log = logging.getLogger(__name__)

DISTRIBUTION_BUCKETS = (
    (90, "90-100%"),
    (80, "80-89%"),
    (70, "70-79%"),
    (60, "60-69%"),
)
BELOW_BUCKET = "Below 60%"


def running_mean(current: float, count: int, value: float) -> float:
    """Mean of `count` values plus one more, from the old mean alone."""
    if count <= 0:
        return float(value)
    return (current * count + value) / (count + 1)


def fold_difficulty(
    current: Sequence[QuestionAnalytics],
    result: GradeResult,
    attempt: AssessmentAttempt,
) -> List[QuestionAnalytics]:
    """Update per-question stats with one graded attempt; untouched questions are kept."""
    by_id: Dict[str, QuestionAnalytics] = {q.question_id: q for q in current}
    times = {a.question_id: a.time_spent for a in attempt.answers}
    for entry in result.breakdown:
        prev = by_id.get(entry.question_id) or QuestionAnalytics(question_id=entry.question_id)
        n = prev.attempts
        by_id[entry.question_id] = QuestionAnalytics(
            question_id=entry.question_id,
            attempts=n + 1,
            correct_rate=running_mean(prev.correct_rate, n, 1.0 if entry.correct else 0.0),
            difficulty=running_mean(prev.difficulty, n, 0.0 if entry.correct else 1.0),
            average_time=running_mean(prev.average_time, n, times.get(entry.question_id, 0)),
        )
    return list(by_id.values())


def fold_attempt(
    analytics: AssessmentAnalytics,
    attempt: AssessmentAttempt,
    result: GradeResult,
) -> AssessmentAnalytics:
    """Return the aggregates after counting one more graded attempt."""
    n = analytics.total_attempts
    total = n + 1
    answered = {a.question_id for a in attempt.answers}
    completed = analytics.completed_attempts + (
        1 if all(e.question_id in answered for e in result.breakdown) else 0
    )
    return AssessmentAnalytics(
        total_attempts=total,
        completed_attempts=completed,
        avg_score=running_mean(analytics.avg_score, n, result.percentage),
        avg_time_spent=running_mean(analytics.avg_time_spent, n, attempt.time_spent),
        completion_rate=completed / total * 100,
        flagged_attempts=analytics.flagged_attempts + (1 if attempt.proctoring.flagged else 0),
        difficulty_analysis=fold_difficulty(analytics.difficulty_analysis, result, attempt),
    )


def performance_distribution(attempts: Sequence[AssessmentAttempt]) -> Dict[str, int]:
    dist = {label: 0 for _, label in DISTRIBUTION_BUCKETS}
    dist[BELOW_BUCKET] = 0
    for a in attempts:
        pct = a.grading.percentage
        label = next((lbl for floor, lbl in DISTRIBUTION_BUCKETS if pct >= floor), BELOW_BUCKET)
        dist[label] += 1
    return dist


class AnalyticsAggregator:
    """Maintains `Assessment.analytics` and builds attempt statistics."""

    def __init__(
        self,
        assessments: AssessmentRepository,
        attempts: AttemptRepository,
        recent_limit: int = 10,
    ) -> None:
        self.assessments = assessments
        self.attempts = attempts
        self.recent_limit = recent_limit
        # one writer per assessment inside this process; revisions cover the rest
        self._locks = KeyedLocks()

    async def record_graded_attempt(
        self,
        assessment_id: str,
        attempt: AssessmentAttempt,
        result: GradeResult,
    ) -> Optional[AssessmentAnalytics]:
        """Fold a graded attempt into the assessment's running analytics.

        Best-effort: failures are logged and None is returned, the attempt's
        grading is never affected.
        """
        try:
            async with self._locks.hold(assessment_id):
                updated = await self.assessments.mutate(
                    assessment_id,
                    lambda a: {"analytics": fold_attempt(a.analytics, attempt, result)},
                    label="Assessment",
                )
        except Exception:
            log.exception(f"analytics update failed assessment={assessment_id} attempt={attempt.id}")
            return None
        log.info(f"analytics updated assessment={assessment_id} total={updated.analytics.total_attempts}")
        return updated.analytics

    async def record_flagged(self, assessment_id: str) -> Optional[AssessmentAnalytics]:
        """Count an attempt that became flagged after it was graded (best-effort)."""

        def bump(a: Assessment) -> dict:
            return {"analytics": a.analytics.model_copy(update={"flagged_attempts": a.analytics.flagged_attempts + 1})}

        try:
            async with self._locks.hold(assessment_id):
                updated = await self.assessments.mutate(assessment_id, bump, label="Assessment")
        except Exception:
            log.exception(f"flagged counter update failed assessment={assessment_id}")
            return None
        return updated.analytics

    async def get_attempt_statistics(self, assessment_id: str) -> AttemptStatistics:
        """Report computed from stored attempts plus the running difficulty analysis.

        Raises:
            NotFound: If the assessment does not exist.
        """
        assessment = await self.assessments.require(assessment_id, "Assessment")
        attempts = await self.attempts.for_assessment(assessment_id)
        graded = [a for a in attempts if a.status == "graded"]
        recent = sorted(attempts, key=lambda a: a.start_time, reverse=True)[: self.recent_limit]
        flagged = sum(1 for a in attempts if a.proctoring.flagged)

        if not graded:
            return AttemptStatistics(
                flagged_attempts=flagged,
                difficulty_analysis=assessment.analytics.difficulty_analysis,
                recent_attempts=recent,
                performance_distribution=performance_distribution([]),
            )

        n = len(graded)
        passing = assessment.settings.passing_score
        passed = sum(1 for a in graded if a.grading.percentage >= passing)
        return AttemptStatistics(
            total_attempts=n,
            average_score=round_half_up(sum(a.grading.percentage for a in graded) / n, 2),
            average_time=round_half_up(sum(a.time_spent for a in graded) / n),
            pass_rate=round_half_up(passed / n * 100, 2),
            flagged_attempts=flagged,
            difficulty_analysis=assessment.analytics.difficulty_analysis,
            recent_attempts=recent,
            performance_distribution=performance_distribution(graded),
        )
