"""Wiring of the assessment components around one document store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from packages.common.config import Settings
from packages.common.docstore import DocumentStore
from packages.common.events import EventBus
from packages.schemas.assessment import utcnow
from .analytics import AnalyticsAggregator
from .anti_cheat import FlagThresholds, ProctoringMonitor
from .lifecycle import AttemptLifecycleManager, Clock
from .repo import AssessmentRepository, AttemptRepository
from .scorer import GradingEngine


@dataclass
class AssessmentServices:
    store: DocumentStore
    assessments: AssessmentRepository
    attempts: AttemptRepository
    grader: GradingEngine
    analytics: AnalyticsAggregator
    proctoring: ProctoringMonitor
    lifecycle: AttemptLifecycleManager


def build_services(
    store: DocumentStore,
    settings: Settings,
    events: Optional[EventBus] = None,
    clock: Clock = utcnow,
) -> AssessmentServices:
    """Create repositories and components sharing `store` and `settings`."""
    assessments = AssessmentRepository(store, retries=settings.WRITE_RETRY_LIMIT)
    attempts = AttemptRepository(store, retries=settings.WRITE_RETRY_LIMIT)
    grader = GradingEngine(
        hint_penalty_per_hint=settings.HINT_PENALTY_PER_HINT,
        hint_penalty_cap=settings.HINT_PENALTY_CAP,
    )
    analytics = AnalyticsAggregator(assessments, attempts, recent_limit=settings.RECENT_ATTEMPTS_LIMIT)
    proctoring = ProctoringMonitor(
        attempts,
        thresholds=FlagThresholds(
            high=settings.FLAG_HIGH_SEVERITY,
            medium=settings.FLAG_MEDIUM_SEVERITY,
            total=settings.FLAG_TOTAL_VIOLATIONS,
        ),
        analytics=analytics,
        events=events,
    )
    lifecycle = AttemptLifecycleManager(assessments, attempts, grader, analytics, events=events, clock=clock)
    return AssessmentServices(store, assessments, attempts, grader, analytics, proctoring, lifecycle)
