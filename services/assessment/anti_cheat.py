# services/assessment/anti_cheat.py
"""Proctoring utilities for the Assessment service.

Includes:
- `FlagThresholds` / `should_flag`: the pure flagging rule over a violation list.
- `ProctoringMonitor`: appends violations to an attempt and recomputes its flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Union

from packages.schemas.assessment import AssessmentAttempt, Violation
from .repo import AttemptRepository

if TYPE_CHECKING:
    from packages.common.events import EventBus
    from .analytics import AnalyticsAggregator

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlagThresholds:
    """Counts at or above which an attempt is flagged."""
    high: int = 1
    medium: int = 3
    total: int = 5


def should_flag(violations: Iterable[Violation], thresholds: FlagThresholds = FlagThresholds()) -> bool:
    """Return True if the violations cross any threshold.

    Flagged when: high-severity count >= `high`, medium-severity count >=
    `medium`, or total count >= `total`. Depends only on the list, so
    re-evaluating the same list always gives the same answer.
    """
    items = list(violations)
    high = sum(1 for v in items if v.severity == "high")
    medium = sum(1 for v in items if v.severity == "medium")
    return high >= thresholds.high or medium >= thresholds.medium or len(items) >= thresholds.total


class ProctoringMonitor:
    """Records proctoring violations; allowed in every attempt status."""

    def __init__(
        self,
        attempts: AttemptRepository,
        thresholds: FlagThresholds = FlagThresholds(),
        analytics: Optional["AnalyticsAggregator"] = None,
        events: Optional["EventBus"] = None,
    ) -> None:
        self.attempts = attempts
        self.thresholds = thresholds
        self.analytics = analytics
        self.events = events

    def evaluate(self, violations: Iterable[Violation]) -> bool:
        return should_flag(violations, self.thresholds)

    async def record_violation(
        self,
        attempt_id: str,
        violation: Union[Violation, Mapping[str, Any]],
    ) -> AssessmentAttempt:
        """Append a violation and recompute the attempt's `flagged` state.

        Args:
            attempt_id: Target attempt id.
            violation: The violation (model or mapping).

        Returns:
            The updated attempt.

        Raises:
            NotFound: If the attempt does not exist.
            PersistenceError: If the write cannot be stored.
        """
        v = violation if isinstance(violation, Violation) else Violation.model_validate(violation)
        before: Dict[str, bool] = {}

        def append(attempt: AssessmentAttempt) -> dict:
            before["flagged"] = attempt.proctoring.flagged
            violations = [*attempt.proctoring.violations, v]
            proctoring = attempt.proctoring.model_copy(
                update={"violations": violations, "flagged": self.evaluate(violations)}
            )
            return {"proctoring": proctoring}

        updated = await self.attempts.mutate(attempt_id, append, label="Attempt")
        log.warning(
            f"proctoring violation recorded attempt={attempt_id} type={v.type} severity={v.severity}",
            extra={"ctx": {"attempt_id": attempt_id, "flagged": updated.proctoring.flagged,
                           "violations": len(updated.proctoring.violations)}},
        )
        if updated.proctoring.flagged and not before.get("flagged", False):
            await self._on_flagged(updated)
        return updated

    async def reevaluate(self, attempt_id: str) -> bool:
        """Recompute `flagged` from the stored violations; returns the flag.

        A flag turned on here is reported like one set by `record_violation`.
        """
        before: Dict[str, bool] = {}

        def recompute(attempt: AssessmentAttempt) -> Optional[dict]:
            before["flagged"] = attempt.proctoring.flagged
            flagged = self.evaluate(attempt.proctoring.violations)
            if flagged == attempt.proctoring.flagged:
                return None
            return {"proctoring": attempt.proctoring.model_copy(update={"flagged": flagged})}

        attempt = await self.attempts.mutate(attempt_id, recompute, label="Attempt")
        if attempt.proctoring.flagged and not before.get("flagged", False):
            await self._on_flagged(attempt)
        return attempt.proctoring.flagged

    async def _on_flagged(self, attempt: AssessmentAttempt) -> None:
        log.warning(f"attempt flagged attempt={attempt.id} user={attempt.user_id}")
        if self.events is not None:
            self.events.publish(
                "attempt.flagged",
                key=attempt.id,
                value={"attempt_id": attempt.id, "assessment_id": attempt.assessment_id,
                       "user_id": attempt.user_id, "violations": len(attempt.proctoring.violations)},
            )
        # graded attempts were already folded into analytics unflagged
        if attempt.status == "graded" and self.analytics is not None:
            await self.analytics.record_flagged(attempt.assessment_id)
