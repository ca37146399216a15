import logging

import pytest

from packages.schemas.assessment import Answer, Question
from services.assessment.scorer import (
    GRADING_FAILED_FEEDBACK,
    MANUAL_REVIEW_FEEDBACK,
    NO_ANSWER_FEEDBACK,
    GradingEngine,
    letter_grade,
    round_half_up,
)

from conftest import make_assessment, partial_answers, perfect_answers


def q(**data) -> Question:
    data.setdefault("id", "q")
    data.setdefault("points", 1)
    return Question.model_validate(data)


def ans(value, hints: int = 0) -> Answer:
    return Answer(question_id="q", answer=value, hints_used=hints)


@pytest.fixture
def engine() -> GradingEngine:
    return GradingEngine()


def test_round_half_up_is_not_bankers_rounding():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.125, 2) == 0.13
    assert round_half_up(44.5) == 45


def test_letter_grade_table():
    assert letter_grade(100) == "A+"
    assert letter_grade(93) == "A"
    assert letter_grade(85) == "B"
    assert letter_grade(70) == "C-"
    assert letter_grade(59.9) == "F"


def test_multiple_choice_against_answer_key(engine):
    question = q(type="multiple-choice", points=2, correct_answer="B")
    assert engine.grade_question(question, ans(" b ")).score == 2
    wrong = engine.grade_question(question, ans("c"))
    assert wrong.score == 0 and not wrong.correct
    assert wrong.feedback.startswith("Incorrect.")


def test_multiple_choice_against_option_marked_correct(engine):
    question = q(
        type="multiple-choice",
        options=[{"id": "a", "text": "Red"}, {"id": "b", "text": "Blue", "is_correct": True}],
    )
    assert engine.grade_question(question, ans("b")).correct
    assert engine.grade_question(question, ans("blue")).correct
    assert not engine.grade_question(question, ans("Red")).correct


def test_multiple_choice_integer_key_indexes_options(engine):
    question = q(type="multiple-choice", correct_answer=1, options=["Red", "Blue", "Green"])
    assert engine.grade_question(question, ans(1)).correct
    assert engine.grade_question(question, ans("Blue")).correct
    assert not engine.grade_question(question, ans("Green")).correct


def test_multiple_choice_without_key_scores_zero_and_warns(engine, caplog):
    question = q(type="multiple-choice", options=["Red", "Blue"])
    with caplog.at_level(logging.WARNING, logger="services.assessment.scorer"):
        entry = engine.grade_question(question, ans("Red"))
    assert entry.score == 0
    assert "no correct answer configured" in caplog.text


@pytest.mark.parametrize("given", [True, "true", "TRUE", " yes ", 1])
def test_true_false_accepts_boolean_like_answers(engine, given):
    assert engine.grade_question(q(type="true-false", correct_answer=True), ans(given)).correct


def test_true_false_string_key(engine):
    question = q(type="true-false", correct_answer="false")
    assert engine.grade_question(question, ans(False)).correct
    assert not engine.grade_question(question, ans("true")).correct
    assert not engine.grade_question(question, ans("maybe")).correct


def test_multiple_select_requires_exact_set(engine):
    question = q(type="multiple-select", points=3, correct_answer=["a", "b", "c"])
    assert engine.grade_question(question, ans(["c", "b", "a"])).score == 3
    subset = engine.grade_question(question, ans(["a", "b"]))
    assert subset.score == 0 and not subset.correct
    superset = engine.grade_question(question, ans(["a", "b", "c", "d"]))
    assert superset.score == 0


def test_multiple_select_with_option_flags(engine):
    question = q(
        type="multiple-select",
        points=2,
        options=[
            {"id": "x", "text": "Oxygen", "is_correct": True},
            {"id": "y", "text": "Gold"},
            {"id": "z", "text": "Nitrogen", "is_correct": True},
        ],
    )
    assert engine.grade_question(question, ans(["nitrogen", "x"])).score == 2
    assert engine.grade_question(question, ans(["x", "z", "unknown"])).score == 0


def test_fill_blank_trims_and_ignores_case(engine):
    question = q(type="fill-blank", correct_answer=["Paris", "Paris, France"])
    assert engine.grade_question(question, ans("  PARIS ")).correct
    assert engine.grade_question(question, ans("paris, france")).correct
    assert not engine.grade_question(question, ans("Lyon")).correct


def test_matching_gives_proportional_credit(engine):
    question = q(type="matching", points=8, correct_answer={"1": "one", "2": "two", "3": "three", "4": "four"})
    entry = engine.grade_question(question, ans({"1": "one", "2": "two", "3": "three", "4": "nine"}))
    assert entry.score == 6
    assert entry.correct is False
    assert "3/4" in entry.feedback


def test_matching_accepts_pair_lists(engine):
    question = q(type="matching", points=4, correct_answer={"cat": "meow", "dog": "woof"})
    entry = engine.grade_question(question, ans([["cat", "meow"], {"left": "dog", "right": "woof"}]))
    assert entry.score == 4 and entry.correct


def test_matching_without_pairs_is_a_configuration_error(engine):
    entry = engine.grade_question(q(type="matching", points=4), ans({"a": "b"}))
    assert entry.score == 0
    assert "Invalid question configuration" in entry.feedback


def test_essay_needs_content_and_manual_review(engine):
    question = q(type="essay", points=5)
    written = engine.grade_question(question, ans("A short essay."))
    assert written.score == 5
    assert written.requires_manual_review
    assert written.feedback == MANUAL_REVIEW_FEEDBACK
    blank = engine.grade_question(question, ans("   "))
    assert blank.score == 0 and not blank.requires_manual_review


def test_code_with_test_cases_waits_for_review(engine):
    question = q(type="code", points=5, test_cases=[{"input": "1", "expected_output": "2"}])
    entry = engine.grade_question(question, ans("print(2)"))
    assert entry.score == 0
    assert entry.requires_manual_review
    without_cases = engine.grade_question(q(type="code", points=5), ans("print(2)"))
    assert without_cases.score == 5


def test_unknown_type_scores_zero(engine, caplog):
    with caplog.at_level(logging.WARNING, logger="services.assessment.scorer"):
        entry = engine.grade_question(q(type="drawing", points=3), ans("a picture"))
    assert entry.score == 0
    assert "unknown question type" in caplog.text


def test_hint_penalty_is_capped(engine):
    question = q(type="fill-blank", correct_answer="x")
    assert engine.grade_question(question, ans("x", hints=10)).score == 0.7
    assert engine.grade_question(question, ans("x", hints=1)).score == 0.9
    assert engine.apply_hint_penalty(2, 2) == 1.6
    assert engine.apply_hint_penalty(0, 3) == 0


def test_hint_penalty_policy_is_configurable():
    engine = GradingEngine(hint_penalty_per_hint=0.25, hint_penalty_cap=0.5)
    assert engine.apply_hint_penalty(4, 1) == 3
    assert engine.apply_hint_penalty(4, 5) == 2


def test_grade_attempt_perfect(engine):
    result = engine.grade_attempt(make_assessment(), [Answer.model_validate(a) for a in perfect_answers()])
    assert result.score == 20
    assert result.max_score == 20
    assert result.percentage == 100
    assert result.passed
    assert result.letter_grade == "A+"
    assert result.requires_manual_review
    assert "Excellent work" in result.feedback


def test_grade_attempt_partial_and_unanswered(engine):
    result = engine.grade_attempt(make_assessment(), [Answer.model_validate(a) for a in partial_answers()])
    assert result.score == 9
    assert result.percentage == 45
    assert not result.passed
    assert result.letter_grade == "F"
    by_id = {e.question_id: e for e in result.breakdown}
    assert len(result.breakdown) == 6
    assert by_id["q6"].feedback == NO_ANSWER_FEEDBACK
    assert by_id["q6"].max_score == 4
    assert "You need 70% to pass" in result.feedback
    assert "Focus on questions 1, 3, 5, 6." in result.feedback


def test_grade_attempt_bounds_and_pass_rule(engine):
    assessment = make_assessment()
    for answers in ([], partial_answers(), perfect_answers()):
        result = engine.grade_attempt(assessment, [Answer.model_validate(a) for a in answers])
        assert 0 <= result.score <= result.max_score
        assert 0 <= result.percentage <= 100
        assert result.passed == (result.percentage >= assessment.settings.passing_score)


def test_pass_threshold_is_inclusive(engine):
    assessment = make_assessment(
        questions=[
            {"id": "a", "type": "true-false", "points": 7, "correct_answer": True},
            {"id": "b", "type": "true-false", "points": 3, "correct_answer": True},
        ],
    )
    result = engine.grade_attempt(assessment, [Answer(question_id="a", answer=True)])
    assert result.percentage == 70
    assert result.passed


def test_one_failing_question_does_not_abort_grading(engine, monkeypatch):
    def explode(question, value):
        raise RuntimeError("broken key")

    monkeypatch.setitem(engine._graders, "fill-blank", explode)
    result = engine.grade_attempt(make_assessment(), [Answer.model_validate(a) for a in perfect_answers()])
    by_id = {e.question_id: e for e in result.breakdown}
    assert by_id["q4"].score == 0
    assert by_id["q4"].feedback == GRADING_FAILED_FEEDBACK
    assert result.score == 18
