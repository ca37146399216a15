# services/assessment/scorer.py
"""Grading engine for the Assessment service.

`GradingEngine` is stateless: an instance only holds the hint-penalty policy,
so one instance can be injected wherever attempts are graded.

Per-type rules:
- multiple-choice: normalized exact match against the answer key or the option marked correct.
- true-false: boolean comparison after normalizing strings/numbers.
- multiple-select: sorted set equality, no partial credit.
- fill-blank: trimmed, case-insensitive match against one or more accepted strings.
- matching: proportional credit per correct pair.
- essay / code: accepted for manual review (code with test cases scores 0 until reviewed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from packages.schemas.assessment import (
    Answer,
    Assessment,
    AssessmentAttempt,
    GradeBreakdownEntry,
    GradeResult,
    Question,
    QuestionOption,
)
from .errors import GradingError

log = logging.getLogger(__name__)

NO_ANSWER_FEEDBACK = "No answer provided"
MANUAL_REVIEW_FEEDBACK = "Submitted. Manual review required."
GRADING_FAILED_FEEDBACK = "This answer could not be graded automatically."

_TRUE = {"true", "t", "yes", "y", "1"}
_FALSE = {"false", "f", "no", "n", "0"}

LETTER_GRADES = (
    (97, "A+"), (93, "A"), (90, "A-"),
    (87, "B+"), (83, "B"), (80, "B-"),
    (77, "C+"), (73, "C"), (70, "C-"),
    (67, "D+"), (63, "D"), (60, "D-"),
)


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round like a calculator (2.5 -> 3), not banker's rounding."""
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def normalize(value: Any) -> str:
    """Canonical string form used for answer comparison."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip().lower()


def to_bool(value: Any) -> Optional[bool]:
    """Interpret booleans, 0/1 and common strings; None when not boolean-like."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = normalize(value)
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def letter_grade(percentage: float) -> str:
    for floor, grade in LETTER_GRADES:
        if percentage >= floor:
            return grade
    return "F"


def _option_tokens(option: QuestionOption) -> set[str]:
    return {normalize(v) for v in (option.id, option.value, option.text) if v is not None and normalize(v)}


def _is_blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple, dict)):
        return len(answer) == 0
    return False


@dataclass
class QuestionOutcome:
    """Raw result of a type-specific grader, before hint penalties."""
    score: float
    correct: bool
    feedback: str
    requires_manual_review: bool = False


Grader = Callable[[Question, Any], QuestionOutcome]


class GradingEngine:
    """Pure grading of an attempt against an assessment definition."""

    def __init__(self, hint_penalty_per_hint: float = 0.1, hint_penalty_cap: float = 0.3) -> None:
        self.hint_penalty_per_hint = hint_penalty_per_hint
        self.hint_penalty_cap = hint_penalty_cap
        self._graders: Dict[str, Grader] = {
            "multiple-choice": self._grade_multiple_choice,
            "true-false": self._grade_true_false,
            "multiple-select": self._grade_multiple_select,
            "fill-blank": self._grade_fill_blank,
            "matching": self._grade_matching,
            "essay": self._grade_essay,
            "code": self._grade_code,
        }

    # ------------------------------------------------------------------ attempt

    def grade_attempt(
        self,
        assessment: Assessment,
        attempt: Union[AssessmentAttempt, Sequence[Answer]],
    ) -> GradeResult:
        """Grade every question of `assessment` against the attempt's answers.

        Unanswered questions contribute zero points but still count toward
        `max_score`. A failure while grading one question scores that question
        zero and grading continues with the next one.

        Args:
            assessment: The assessment definition (with answer keys).
            attempt: The attempt, or just its list of answers.

        Returns:
            GradeResult with totals, percentage, pass flag, letter grade,
            per-question breakdown and overall feedback.
        """
        answers = attempt.answers if isinstance(attempt, AssessmentAttempt) else list(attempt)
        by_question: Dict[str, Answer] = {a.question_id: a for a in answers}

        breakdown: List[GradeBreakdownEntry] = []
        for question in assessment.questions:
            breakdown.append(self.grade_question(question, by_question.get(question.id)))

        total = sum(e.score for e in breakdown)
        max_score = sum(q.points for q in assessment.questions)
        total = round_half_up(min(max(total, 0.0), max_score), 2)
        percentage = round_half_up(total / max_score * 100) if max_score > 0 else 0.0
        percentage = min(max(percentage, 0.0), 100.0)
        passing = assessment.settings.passing_score
        passed = percentage >= passing

        return GradeResult(
            score=total,
            max_score=max_score,
            percentage=percentage,
            passed=passed,
            letter_grade=letter_grade(percentage),
            breakdown=breakdown,
            feedback=overall_feedback(percentage, passed, passing, breakdown),
            requires_manual_review=any(e.requires_manual_review for e in breakdown),
        )

    # ----------------------------------------------------------------- question

    def grade_question(self, question: Question, answer: Optional[Answer]) -> GradeBreakdownEntry:
        """Grade one question; never raises."""
        if answer is None:
            return GradeBreakdownEntry(
                question_id=question.id, score=0, max_score=question.points,
                correct=False, feedback=NO_ANSWER_FEEDBACK,
            )
        try:
            outcome = self._dispatch(question, answer.answer)
            score = self.apply_hint_penalty(outcome.score, answer.hints_used)
        except Exception as exc:
            err = GradingError(f"grading failed for question {question.id}", question_id=question.id)
            log.exception(str(err), extra={"ctx": {"question_id": question.id, "type": question.type, "error": repr(exc)}})
            return GradeBreakdownEntry(
                question_id=question.id, score=0, max_score=question.points,
                correct=False, feedback=GRADING_FAILED_FEEDBACK,
            )
        return GradeBreakdownEntry(
            question_id=question.id,
            score=min(max(score, 0.0), question.points),
            max_score=question.points,
            correct=outcome.correct,
            feedback=outcome.feedback,
            requires_manual_review=outcome.requires_manual_review,
        )

    def apply_hint_penalty(self, points: float, hints_used: int) -> float:
        """Reduce earned points by a per-hint fraction, capped; 2-decimal result."""
        if hints_used <= 0 or points <= 0:
            return points
        penalty = min(self.hint_penalty_per_hint * hints_used, self.hint_penalty_cap)
        return round_half_up(points * (1 - penalty), 2)

    def _dispatch(self, question: Question, value: Any) -> QuestionOutcome:
        grader = self._graders.get(question.type)
        if grader is None:
            log.warning(f"unknown question type {question.type!r}", extra={"ctx": {"question_id": question.id}})
            return QuestionOutcome(0, False, "Question type not supported for auto-grading")
        return grader(question, value)

    # ------------------------------------------------------------------ graders

    @staticmethod
    def _verdict(question: Question, correct: bool, reveal: str) -> QuestionOutcome:
        if correct:
            return QuestionOutcome(question.points, True, question.explanation or "Correct!")
        return QuestionOutcome(0, False, f"Incorrect. {question.explanation or reveal}")

    def _grade_multiple_choice(self, question: Question, value: Any) -> QuestionOutcome:
        given = normalize(value)
        accepted: set[str] = set()
        key = question.correct_answer
        if key is not None and not isinstance(key, (list, dict)):
            accepted.add(normalize(key))
            options = question.options or []
            # integer keys may index into the option list
            if isinstance(key, int) and not isinstance(key, bool) and 0 <= key < len(options):
                accepted |= _option_tokens(options[key])
        else:
            for option in question.options or []:
                if option.is_correct:
                    accepted |= _option_tokens(option)
        accepted.discard("")
        if not accepted:
            log.warning(
                f"multiple-choice question {question.id} has no correct answer configured",
                extra={"ctx": {"question_id": question.id}},
            )
            return QuestionOutcome(0, False, "Incorrect.")
        reveal_key = key if key is not None else next(iter(sorted(accepted)))
        return self._verdict(question, given in accepted, f"The correct answer is: {reveal_key}")

    def _grade_true_false(self, question: Question, value: Any) -> QuestionOutcome:
        expected = to_bool(question.correct_answer)
        if expected is None:
            log.warning(f"true-false question {question.id} has a non-boolean answer key",
                        extra={"ctx": {"question_id": question.id}})
            return QuestionOutcome(0, False, "Incorrect.")
        given = to_bool(value)
        return self._verdict(question, given == expected, f"The correct answer is: {normalize(expected)}")

    def _grade_multiple_select(self, question: Question, value: Any) -> QuestionOutcome:
        selected = value if isinstance(value, (list, tuple, set)) else [value]
        options = question.options or []
        if isinstance(question.correct_answer, (list, tuple)):
            expected = sorted({normalize(v) for v in question.correct_answer})
            given = sorted({normalize(v) for v in selected if not _is_blank(v)})
        else:
            correct_idx = [i for i, o in enumerate(options) if o.is_correct]
            expected = sorted(str(i) for i in correct_idx)
            given = sorted(set(self._option_indexes(options, selected)))
        if not expected:
            log.warning(f"multiple-select question {question.id} has no correct options",
                        extra={"ctx": {"question_id": question.id}})
            return QuestionOutcome(0, False, "Incorrect.")
        if given == expected:
            return QuestionOutcome(question.points, True, question.explanation or "Correct! All selections are accurate.")
        return QuestionOutcome(0, False, f"Incorrect. {question.explanation or 'Please select all correct options.'}")

    @staticmethod
    def _option_indexes(options: Sequence[QuestionOption], selected: Iterable[Any]) -> List[str]:
        out = []
        for raw in selected:
            token = normalize(raw)
            match = next((i for i, o in enumerate(options) if token in _option_tokens(o)), None)
            # unmatched selections still count against equality
            out.append(str(match) if match is not None else f"?{token}")
        return out

    def _grade_fill_blank(self, question: Question, value: Any) -> QuestionOutcome:
        key = question.correct_answer
        accepted = [normalize(a) for a in (key if isinstance(key, (list, tuple)) else [key]) if a is not None]
        if not accepted:
            log.warning(f"fill-blank question {question.id} has no accepted answers",
                        extra={"ctx": {"question_id": question.id}})
            return QuestionOutcome(0, False, "Incorrect.")
        return self._verdict(question, normalize(value) in accepted, f"Accepted answers: {', '.join(accepted)}")

    def _grade_matching(self, question: Question, value: Any) -> QuestionOutcome:
        key = question.correct_answer
        if not isinstance(key, Mapping) or not key:
            log.warning(f"matching question {question.id} has no pairs configured",
                        extra={"ctx": {"question_id": question.id}})
            return QuestionOutcome(0, False, "Invalid question configuration for matching type")
        given = self._pairs(value)
        total = len(key)
        hits = sum(1 for left, right in key.items() if normalize(given.get(normalize(left))) == normalize(right))
        score = round_half_up(question.points * hits / total)
        if hits == total:
            return QuestionOutcome(score, True, question.explanation or "All matches correct!")
        return QuestionOutcome(score, False, f"Partially correct: {hits}/{total} matches. {question.explanation or ''}".strip())

    @staticmethod
    def _pairs(value: Any) -> Dict[str, Any]:
        """Accept {left: right} or [[left, right], ...] / [{"left":..,"right":..}]."""
        if isinstance(value, Mapping):
            return {normalize(k): v for k, v in value.items()}
        pairs: Dict[str, Any] = {}
        for item in value or []:
            if isinstance(item, Mapping) and "left" in item:
                pairs[normalize(item["left"])] = item.get("right")
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                pairs[normalize(item[0])] = item[1]
        return pairs

    def _grade_essay(self, question: Question, value: Any) -> QuestionOutcome:
        if _is_blank(value):
            return QuestionOutcome(0, False, "No content submitted.")
        return QuestionOutcome(question.points, True, MANUAL_REVIEW_FEEDBACK, requires_manual_review=True)

    def _grade_code(self, question: Question, value: Any) -> QuestionOutcome:
        if question.test_cases:
            # test execution happens outside this service
            if _is_blank(value):
                return QuestionOutcome(0, False, "No code submitted.")
            return QuestionOutcome(0, False, "Code submitted. Manual review required.", requires_manual_review=True)
        return self._grade_essay(question, value)


def overall_feedback(
    percentage: float,
    passed: bool,
    passing_score: float,
    breakdown: Sequence[GradeBreakdownEntry],
) -> str:
    """Summary sentence shown with the result, pointing at missed questions."""
    correct = sum(1 for e in breakdown if e.correct)
    text = f"You scored {percentage:g}% ({correct}/{len(breakdown)} questions correct). "
    if passed:
        if percentage >= 90:
            return text + "Excellent work! You have a strong understanding of the material."
        if percentage >= 80:
            return text + "Good job! You have a solid grasp of the concepts."
        return text + "You passed! Consider reviewing the topics you missed."
    text += f"You need {passing_score:g}% to pass. Review the material and try again."
    missed = [str(i + 1) for i, e in enumerate(breakdown) if not e.correct]
    if missed:
        text += f" Focus on questions {', '.join(missed)}."
    return text
