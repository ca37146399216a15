"""Shared fixtures for the Assessment service tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from packages.common.config import Settings
from packages.common.docstore import InMemoryDocumentStore
from packages.schemas.assessment import Assessment
from services.assessment.container import AssessmentServices, build_services

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into the lifecycle manager."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingBus:
    """Collects published events instead of sending them."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def publish(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        self.events.append((topic, key, value))

    def topics(self) -> List[str]:
        return [t for t, _, _ in self.events]


def make_assessment(**overrides: Any) -> Assessment:
    data: Dict[str, Any] = {
        "id": "assessment_geo",
        "course_id": "course_1",
        "title": "Geography basics",
        "questions": [
            {
                "id": "q1", "type": "multiple-choice", "points": 2,
                "options": [
                    {"id": "a", "text": "Red"},
                    {"id": "b", "text": "Blue", "is_correct": True},
                    {"id": "c", "text": "Green"},
                ],
                "explanation": "Blue is the colour of the sky.",
            },
            {"id": "q2", "type": "true-false", "points": 1, "correct_answer": True},
            {"id": "q3", "type": "multiple-select", "points": 3, "correct_answer": ["a", "b", "c"]},
            {"id": "q4", "type": "fill-blank", "points": 2, "correct_answer": ["Paris", "Paris, France"]},
            {
                "id": "q5", "type": "matching", "points": 8,
                "correct_answer": {"1": "one", "2": "two", "3": "three", "4": "four"},
            },
            {"id": "q6", "type": "essay", "points": 4},
        ],
        "settings": {"passing_score": 70, "max_attempts": 3, "time_limit": 30},
    }
    data.update(overrides)
    return Assessment.model_validate(data)


def perfect_answers() -> List[Dict[str, Any]]:
    return [
        {"question_id": "q1", "answer": "b", "time_spent": 20},
        {"question_id": "q2", "answer": "true", "time_spent": 10},
        {"question_id": "q3", "answer": ["c", "a", "b"], "time_spent": 30},
        {"question_id": "q4", "answer": "  paris ", "time_spent": 15},
        {"question_id": "q5", "answer": {"1": "one", "2": "two", "3": "three", "4": "four"}, "time_spent": 40},
        {"question_id": "q6", "answer": "Rivers shape valleys over time.", "time_spent": 120},
    ]


def partial_answers() -> List[Dict[str, Any]]:
    """Scores 9/20 (45%): q2, q4 and three of four q5 pairs; q6 left blank."""
    return [
        {"question_id": "q1", "answer": "a", "time_spent": 20},
        {"question_id": "q2", "answer": True, "time_spent": 10},
        {"question_id": "q3", "answer": ["a", "b"], "time_spent": 30},
        {"question_id": "q4", "answer": "paris", "time_spent": 15},
        {"question_id": "q5", "answer": {"1": "one", "2": "two", "3": "three", "4": "five"}, "time_spent": 40},
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, DOCUMENT_STORE_DSN="memory://")


@pytest.fixture
def services(settings: Settings, bus: RecordingBus, clock: FakeClock) -> AssessmentServices:
    return build_services(InMemoryDocumentStore(), settings, events=bus, clock=clock)  # type: ignore[arg-type]


async def seed(services: AssessmentServices, **overrides: Any) -> Assessment:
    return await services.assessments.add(make_assessment(**overrides))
