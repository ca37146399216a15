"""Attempt lifecycle for the Assessment service.

State machine per attempt:

    in_progress -> submitted -> graded     (submission)
    in_progress -> failed                  (time limit exceeded, terminal)

`AttemptLifecycleManager` validates eligibility when an attempt starts,
detects timeouts, autosaves progress and drives submission through grading
and analytics. The attempt document in the store is the only source of
truth; every write is guarded by the revision that was read.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import TypeAdapter, ValidationError

from packages.common.events import EventBus
from packages.common.locks import KeyedLocks
from packages.schemas.assessment import (
    Answer,
    Assessment,
    AssessmentAttempt,
    Grading,
    Proctoring,
    StartAttemptResult,
    SubmitAttemptResult,
    as_utc,
    utcnow,
)
from .analytics import AnalyticsAggregator
from .errors import (
    ActiveAttemptExists,
    AssessmentError,
    AssessmentUnavailable,
    InvalidStateTransition,
    MaxAttemptsExceeded,
)
from .repo import AssessmentRepository, AttemptRepository
from .scorer import GradingEngine

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]
AnswersIn = Sequence[Union[Answer, Mapping[str, Any]]]

_answers_adapter = TypeAdapter(List[Answer])


def parse_answers(answers: AnswersIn) -> List[Answer]:
    """Validate raw answer payloads into `Answer` models."""
    try:
        return _answers_adapter.validate_python(
            [a.model_dump() if isinstance(a, Answer) else a for a in answers]
        )
    except ValidationError as exc:
        raise AssessmentError("malformed answers", errors=exc.errors()) from exc


def elapsed_seconds(start: datetime, now: datetime) -> int:
    return max(0, round((now - start).total_seconds()))


class AttemptLifecycleManager:
    """Orchestrates start, resume, autosave and submission of attempts."""

    def __init__(
        self,
        assessments: AssessmentRepository,
        attempts: AttemptRepository,
        grader: GradingEngine,
        analytics: AnalyticsAggregator,
        events: Optional[EventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.assessments = assessments
        self.attempts = attempts
        self.grader = grader
        self.analytics = analytics
        self.events = events
        self.clock = clock
        self._start_locks = KeyedLocks()

    # ------------------------------------------------------------------ start

    async def start_attempt(
        self,
        assessment_id: str,
        user_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StartAttemptResult:
        """Create a new `in_progress` attempt after checking eligibility.

        Checks, in order: the assessment exists; the user has no live attempt
        (a timed-out one is failed first); the attempt number stays within
        `max_attempts`; now is inside the availability window.

        Returns:
            StartAttemptResult with the attempt and the sanitized assessment.

        Raises:
            NotFound, ActiveAttemptExists, MaxAttemptsExceeded,
            AssessmentUnavailable, PersistenceError.
        """
        assessment = await self.assessments.require(assessment_id, "Assessment")
        async with self._start_locks.hold((user_id, assessment_id)):
            now = self.clock()
            previous = await self.attempts.for_user(user_id, assessment_id)
            for prior in previous:
                if prior.status == "in_progress" and not await self._expire_if_timed_out(prior, assessment, now):
                    raise ActiveAttemptExists(
                        f"Attempt {prior.id} is still in progress", attempt_id=prior.id
                    )

            attempt_number = len(previous) + 1
            max_attempts = assessment.settings.max_attempts
            if attempt_number > max_attempts:
                raise MaxAttemptsExceeded(
                    f"Maximum attempts ({max_attempts}) exceeded", attempts_used=len(previous)
                )
            if assessment.availability.not_yet_open(now):
                raise AssessmentUnavailable(
                    "Assessment not yet available",
                    guidance=f"Opens at {assessment.availability.start_date.isoformat()}.",
                )
            if assessment.availability.closed(now):
                raise AssessmentUnavailable("Assessment deadline has passed")

            attempt = AssessmentAttempt(
                id=self.attempts.new_id(),
                assessment_id=assessment_id,
                user_id=user_id,
                attempt_number=attempt_number,
                status="in_progress",
                start_time=now,
                proctoring=Proctoring(session_id=f"session_{user_id}_{assessment_id}_{uuid.uuid4().hex[:12]}"),
                grading=Grading(max_score=assessment.max_score),
                metadata={**(metadata or {}), "started_at": now.isoformat()},
            )
            attempt = await self.attempts.add(attempt)

        log.info(
            f"attempt started attempt={attempt.id} assessment={assessment_id} user={user_id} number={attempt_number}"
        )
        self._publish("attempt.started", attempt)
        return StartAttemptResult(
            attempt=attempt,
            assessment=assessment.sanitized(),
            time_limit=assessment.settings.time_limit,
            max_attempts=max_attempts,
            attempt_number=attempt_number,
        )

    # ----------------------------------------------------------------- resume

    async def resume_attempt(self, user_id: str, assessment_id: str) -> Optional[AssessmentAttempt]:
        """Return the most recent live attempt, or None.

        An attempt past the assessment's time limit is moved to `failed`
        (with `time_spent` pinned to the limit) and None is returned.
        """
        previous = await self.attempts.for_user(user_id, assessment_id)
        active = next((a for a in previous if a.status == "in_progress"), None)
        if active is None:
            return None
        assessment = await self.assessments.require(assessment_id, "Assessment")
        now = self.clock()
        if await self._expire_if_timed_out(active, assessment, now):
            return None
        log.info(
            f"attempt resumed attempt={active.id} user={user_id} elapsed={elapsed_seconds(active.start_time, now)}s"
        )
        return active

    def is_timed_out(self, attempt: AssessmentAttempt, assessment: Assessment, now: datetime) -> bool:
        limit = assessment.settings.time_limit
        if limit is None:
            return False
        return (now - attempt.start_time).total_seconds() / 60 > limit

    async def _expire_if_timed_out(self, attempt: AssessmentAttempt, assessment: Assessment, now: datetime) -> bool:
        """Fail a timed-out attempt; True when the attempt is no longer live.

        Safe to race: whoever loses re-reads, sees the attempt already left
        `in_progress`, and writes nothing.
        """
        if not self.is_timed_out(attempt, assessment, now):
            return False
        limit_seconds = assessment.settings.time_limit * 60  # type: ignore[operator]
        transitioned: Dict[str, bool] = {}

        def fail(current: AssessmentAttempt) -> Optional[dict]:
            transitioned["done"] = False
            if current.status != "in_progress":
                return None
            transitioned["done"] = True
            return {"status": "failed", "end_time": now, "time_spent": limit_seconds}

        updated = await self.attempts.mutate(attempt.id, fail, label="Attempt")
        if transitioned.get("done"):
            log.info(f"attempt timed out attempt={attempt.id} user={attempt.user_id} limit={limit_seconds}s")
            self._publish("attempt.timed_out", updated)
        return updated.status != "in_progress"

    # --------------------------------------------------------------- autosave

    async def auto_save_progress(
        self,
        attempt_id: str,
        answers: AnswersIn,
        current_time: Optional[datetime] = None,
    ) -> None:
        """Persist in-flight answers and elapsed time; no-op unless `in_progress`.

        `time_spent` never decreases, so repeated saves are harmless.

        Raises:
            NotFound: If the attempt does not exist.
        """
        parsed = parse_answers(answers)
        now = as_utc(current_time) if current_time is not None else self.clock()

        def save(attempt: AssessmentAttempt) -> Optional[dict]:
            if attempt.status != "in_progress":
                return None
            meta = dict(attempt.metadata)
            meta["last_auto_save"] = now.isoformat()
            meta["auto_save_count"] = int(meta.get("auto_save_count", 0)) + 1
            return {
                "answers": parsed,
                "time_spent": max(attempt.time_spent, elapsed_seconds(attempt.start_time, now)),
                "metadata": meta,
            }

        updated = await self.attempts.mutate(attempt_id, save, label="Attempt")
        if updated.status != "in_progress":
            log.debug(f"autosave ignored attempt={attempt_id} status={updated.status}")
            return
        log.debug(f"progress auto-saved attempt={attempt_id} answers={len(parsed)} time_spent={updated.time_spent}")

    # ----------------------------------------------------------------- submit

    async def submit_attempt(
        self,
        attempt_id: str,
        answers: AnswersIn,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SubmitAttemptResult:
        """Submit, grade and finalize an attempt.

        The `in_progress -> submitted` write is rejected if the attempt
        changed after it was read (e.g. a concurrent autosave), so a stale
        submission never overwrites newer data. Grading is then persisted
        with `graded` status, and analytics are updated best-effort.

        An attempt left `submitted` by a failed grading write is graded from
        its stored answers when the submission is retried; the answers sent
        with the retry are ignored.

        Raises:
            NotFound: Attempt or assessment missing.
            InvalidStateTransition: Attempt is `graded` or `failed`.
            ConcurrentModification: The attempt changed underneath the submission.
            PersistenceError: Storage failure.
        """
        parsed = parse_answers(answers)
        attempt = await self.attempts.require(attempt_id, "Attempt")
        if attempt.status not in ("in_progress", "submitted"):
            raise InvalidStateTransition(
                f"Cannot submit: attempt is {attempt.status}, not in_progress",
                attempt_id=attempt_id, status=attempt.status,
            )
        assessment = await self.assessments.require(attempt.assessment_id, "Assessment")

        if attempt.status == "submitted":
            log.warning(f"resuming grading of submitted attempt={attempt_id}")
            return await self._grade_and_finalize(attempt, assessment)

        now = self.clock()
        submitted = await self.attempts.replace(
            attempt,
            status="submitted",
            answers=parsed,
            end_time=now,
            time_spent=elapsed_seconds(attempt.start_time, now),
            metadata={**attempt.metadata, **(metadata or {}), "submitted_at": now.isoformat()},
        )
        return await self._grade_and_finalize(submitted, assessment)

    async def _grade_and_finalize(self, submitted: AssessmentAttempt, assessment: Assessment) -> SubmitAttemptResult:
        """Grade a `submitted` attempt and persist it as `graded`."""
        result = self.grader.grade_attempt(assessment, submitted)
        grading = Grading(
            score=result.score,
            max_score=result.max_score,
            percentage=result.percentage,
            breakdown=result.breakdown,
            feedback=result.feedback,
            graded_at=self.clock(),
            auto_graded=True,
        )

        def finalize(current: AssessmentAttempt) -> dict:
            # violations may land between the two writes; only grading fields change here
            if current.status != "submitted":
                raise InvalidStateTransition(
                    f"Cannot grade: attempt is {current.status}, not submitted", attempt_id=submitted.id
                )
            return {"status": "graded", "grading": grading}

        graded = await self.attempts.mutate(submitted.id, finalize, label="Attempt")
        await self.analytics.record_graded_attempt(assessment.id, graded, result)

        attempts_used = len(await self.attempts.for_user(graded.user_id, graded.assessment_id))
        can_retake = attempts_used < assessment.settings.max_attempts and not result.passed

        log.info(
            f"attempt graded attempt={graded.id} user={graded.user_id} percentage={result.percentage} "
            f"passed={result.passed} time_spent={graded.time_spent}s"
        )
        self._publish("attempt.graded", graded, percentage=result.percentage, passed=result.passed)
        return SubmitAttemptResult(attempt=graded, grade_result=result, passed=result.passed, can_retake=can_retake)

    # ---------------------------------------------------------------- queries

    async def get_user_attempts(self, user_id: str, assessment_id: str) -> List[AssessmentAttempt]:
        return await self.attempts.for_user(user_id, assessment_id)

    async def get_user_best_attempt(self, user_id: str, assessment_id: str) -> Optional[AssessmentAttempt]:
        """Highest-percentage attempt (earliest wins ties), or None."""
        attempts = await self.attempts.for_user(user_id, assessment_id)
        best: Optional[AssessmentAttempt] = None
        for a in reversed(attempts):
            if best is None or a.grading.percentage > best.grading.percentage:
                best = a
        return best

    def _publish(self, topic: str, attempt: AssessmentAttempt, **extra: Any) -> None:
        if self.events is None:
            return
        self.events.publish(
            topic,
            key=attempt.id,
            value={
                "attempt_id": attempt.id,
                "assessment_id": attempt.assessment_id,
                "user_id": attempt.user_id,
                "attempt_number": attempt.attempt_number,
                "status": attempt.status,
                **extra,
            },
        )
