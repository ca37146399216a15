"""Assessment schemas for questions, assessments, attempts, grading and analytics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

QuestionType = Literal[
    "multiple-choice", "true-false", "multiple-select", "fill-blank", "matching", "essay", "code"
]
QUESTION_TYPES: tuple[str, ...] = QuestionType.__args__  # type: ignore[attr-defined]

AttemptStatus = Literal["in_progress", "submitted", "graded", "failed"]
Severity = Literal["low", "medium", "high"]
Difficulty = Literal["easy", "medium", "hard"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QuestionOption(BaseModel):
    """A selectable option; any of id/value/text may identify it."""
    id: Optional[str] = None
    text: Optional[str] = None
    value: Optional[Any] = None
    is_correct: Optional[bool] = None


class CodeTestCase(BaseModel):
    """Input/expected-output pair attached to a code question."""
    input: str = ""
    expected_output: str = ""
    points: float = 0


class Question(BaseModel):
    """A question definition.

    `type` is kept as a plain string so definitions with a type the grader
    does not know still load (they score zero). `correct_answer` is a scalar,
    a list or a mapping depending on the type.
    """
    id: str
    type: str
    text: str = ""
    points: float = Field(..., gt=0)
    correct_answer: Optional[Any] = None
    options: Optional[List[QuestionOption]] = None
    explanation: Optional[str] = None
    hints: List[str] = []
    test_cases: Optional[List[CodeTestCase]] = None
    difficulty: Difficulty = "medium"

    @field_validator("options", mode="before")
    @classmethod
    def plain_string_options(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"text": o} if isinstance(o, str) else o for o in v]
        return v


class AssessmentSettings(BaseModel):
    """Scoring and attempt rules. `time_limit` is in minutes; None means untimed."""
    passing_score: float = Field(70, ge=0, le=100)
    max_attempts: int = Field(1, ge=1)
    time_limit: Optional[int] = Field(None, gt=0)


class Availability(BaseModel):
    """Optional open/close window for starting attempts."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def not_yet_open(self, now: datetime) -> bool:
        return self.start_date is not None and now < self.start_date

    def closed(self, now: datetime) -> bool:
        return self.end_date is not None and now > self.end_date


class QuestionAnalytics(BaseModel):
    """Running per-question statistics."""
    question_id: str
    attempts: int = 0
    correct_rate: float = 0.0
    difficulty: float = 0.0  # running share of incorrect answers
    average_time: float = 0.0


class AssessmentAnalytics(BaseModel):
    """Running aggregates maintained after each graded attempt."""
    total_attempts: int = 0
    completed_attempts: int = 0
    avg_score: float = 0.0
    avg_time_spent: float = 0.0
    completion_rate: float = 0.0
    flagged_attempts: int = 0
    difficulty_analysis: List[QuestionAnalytics] = []


class Assessment(BaseModel):
    """An assessment definition plus its analytics rollup."""
    id: str
    revision: int = 0
    course_id: Optional[str] = None
    title: str = ""
    questions: List[Question] = []
    settings: AssessmentSettings = Field(default_factory=AssessmentSettings)
    availability: Availability = Field(default_factory=Availability)
    analytics: AssessmentAnalytics = Field(default_factory=AssessmentAnalytics)

    @property
    def max_score(self) -> float:
        return sum(q.points for q in self.questions)

    def sanitized(self) -> Dict[str, Any]:
        """Client-safe copy: answer keys, explanations and option flags removed."""
        data = self.model_dump(mode="json", exclude={"revision", "analytics"})
        for q in data["questions"]:
            q.pop("correct_answer", None)
            q.pop("explanation", None)
            for opt in q.get("options") or []:
                opt.pop("is_correct", None)
        return data


class Answer(BaseModel):
    """A learner's answer to one question."""
    question_id: str
    answer: Any = None
    time_spent: float = Field(0, ge=0)
    hints_used: int = Field(0, ge=0)


class Violation(BaseModel):
    """A proctoring event recorded against an attempt."""
    type: str
    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity
    description: str = ""
    evidence: Optional[str] = None


class Proctoring(BaseModel):
    session_id: str
    violations: List[Violation] = []
    flagged: bool = False


class GradeBreakdownEntry(BaseModel):
    question_id: str
    score: float
    max_score: float
    correct: bool
    feedback: str = ""
    requires_manual_review: bool = False


class Grading(BaseModel):
    score: float = 0
    max_score: float = 0
    percentage: float = 0
    breakdown: List[GradeBreakdownEntry] = []
    feedback: Optional[str] = None
    graded_at: Optional[datetime] = None
    auto_graded: bool = True


class AssessmentAttempt(BaseModel):
    """One learner's attempt; `revision` is the store's concurrency token."""
    id: str
    revision: int = 0
    assessment_id: str
    user_id: str
    attempt_number: int = Field(..., ge=1)
    status: AttemptStatus = "in_progress"
    start_time: datetime
    end_time: Optional[datetime] = None
    time_spent: int = Field(0, ge=0)
    answers: List[Answer] = []
    proctoring: Proctoring
    grading: Grading = Field(default_factory=Grading)
    metadata: Dict[str, Any] = {}

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class GradeResult(BaseModel):
    """Output of the grading engine for one attempt."""
    score: float
    max_score: float
    percentage: float
    passed: bool
    letter_grade: str
    breakdown: List[GradeBreakdownEntry]
    feedback: str
    requires_manual_review: bool = False


class StartAttemptResult(BaseModel):
    attempt: AssessmentAttempt
    assessment: Dict[str, Any]
    time_limit: Optional[int]
    max_attempts: int
    attempt_number: int


class SubmitAttemptResult(BaseModel):
    attempt: AssessmentAttempt
    grade_result: GradeResult
    passed: bool
    can_retake: bool


class AttemptStatistics(BaseModel):
    total_attempts: int = 0
    average_score: float = 0
    average_time: float = 0
    pass_rate: float = 0
    flagged_attempts: int = 0
    difficulty_analysis: List[QuestionAnalytics] = []
    recent_attempts: List[AssessmentAttempt] = []
    performance_distribution: Dict[str, int] = {}
