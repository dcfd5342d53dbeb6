import logging
from datetime import datetime, timedelta, timezone

import pytest

from exam_engine.errors import ExamExpired, ExamNotFound, MalformedInput
from exam_engine.grader import Grader, grade_answers, percentage_of
from exam_engine.schemas import QuestionRecord, SubmittedAnswer


def _answer(qid, shown):
    return SubmittedAnswer(question_id=qid, display_index=shown)


FOUR = QuestionRecord(id="q1", choices=["w", "x", "y", "z"], correct_index=2)


def test_display_slot_of_correct_choice_grades_correct():
    perms = {"q1": [2, 0, 3, 1]}
    result = grade_answers([_answer("q1", 0)], {"q1": FOUR}, perms, pass_threshold=60)

    detail = result.details[0]
    assert detail.correct
    assert detail.your_canonical_index == 2
    assert detail.selected_text == "y"
    assert result.score == 1 and result.percentage == 100 and result.passed


@pytest.mark.parametrize("shown", [1, 2, 3])
def test_other_display_slots_grade_incorrect(shown):
    result = grade_answers([_answer("q1", shown)], {"q1": FOUR}, {"q1": [2, 0, 3, 1]}, 60)
    assert not result.details[0].correct


def test_without_permutation_index_is_canonical():
    result = grade_answers([_answer("q1", 2)], {"q1": FOUR}, {}, 60)
    assert result.details[0].correct
    assert result.details[0].your_canonical_index == 2


def test_out_of_range_and_missing_answers_are_incorrect():
    result = grade_answers(
        [_answer("q1", 7), _answer("q1b", None)],
        {"q1": FOUR, "q1b": FOUR.model_copy(update={"id": "q1b"})},
        {"q1": [2, 0, 3, 1]},
        60,
    )
    assert [d.your_canonical_index for d in result.details] == [None, None]
    assert result.score == 0


def test_unknown_key_counts_in_total():
    keyless = QuestionRecord(id="q2", choices=["a", "b"])
    result = grade_answers(
        [_answer("q1", 2), _answer("q2", 0), _answer("ghost", 0)],
        {"q1": FOUR, "q2": keyless},
        {},
        60,
    )
    assert result.score == 1
    assert result.total == 3
    assert result.percentage == 33
    assert not result.passed
    assert result.details[2].correct_index is None


def test_duplicate_answers_collapse_to_last_value():
    result = grade_answers([_answer("q1", 0), _answer("q1", 2)], {"q1": FOUR}, {}, 60)
    assert result.total == 1
    assert result.details[0].display_index == 2
    assert result.details[0].correct


def test_percentage_rounds_halves_up():
    assert percentage_of(1, 8) == 13
    assert percentage_of(0, 0) == 0
    assert percentage_of(2, 3) == 67


def test_pass_threshold_is_inclusive():
    answers = [_answer("q1", 2), _answer("q1b", 0)]
    records = {"q1": FOUR, "q1b": FOUR.model_copy(update={"id": "q1b"})}
    assert grade_answers(answers, records, {}, 50).passed
    assert not grade_answers(answers, records, {}, 51).passed


def test_grade_rejects_empty_submission(db, store):
    with pytest.raises(MalformedInput):
        Grader(db, store).grade([], 60)


def test_load_exam_unknown_and_expired(db, store, make_exam):
    grader = Grader(db, store)
    with pytest.raises(ExamNotFound):
        grader.load_exam("nope")

    make_exam("old", ["q1"], [[0, 1]], expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    with pytest.raises(ExamExpired):
        grader.load_exam("old")

    assert grader.load_exam(None) is None


def test_grader_uses_stored_permutation(db, store, make_question, make_exam):
    make_question("q1", choices=("w", "x", "y", "z"), correct_index=2)
    instance = make_exam("exam-1", ["q1"], [[2, 0, 3, 1]])
    grader = Grader(db, store)

    result = grader.grade([_answer("q1", 0)], 60, grader.load_exam("exam-1"))

    assert result.details[0].correct
    assert instance.exam_id == "exam-1"


def test_answers_outside_the_exam_are_flagged(db, store, make_question, make_passage, make_exam, caplog):
    make_question("q1")
    make_question("stray")
    make_passage("p1", ["c1"])
    make_exam("exam-1", ["q1", "parent:p1"], [[0, 1, 2, 3], None])
    grader = Grader(db, store)

    with caplog.at_level(logging.WARNING, logger="exam_engine.grader"):
        result = grader.grade([_answer("q1", 0), _answer("c1", 0), _answer("stray", 0)], 60,
                              grader.load_exam("exam-1"))

    assert result.total == 3
    flagged = [r.getMessage() for r in caplog.records if "outside it" in r.getMessage()]
    assert len(flagged) == 1
    assert flagged[0].endswith(": stray")
