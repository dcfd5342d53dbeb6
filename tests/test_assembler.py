import random

import pytest

from database import crud
from exam_engine.assembler import ExamAssembler, exam_plan
from exam_engine.errors import ExamNotFound
from exam_engine.permutation import is_valid_permutation
from exam_engine.schemas import SeriesComprehension


def _ids(series):
    return [item.id for item in series]


def test_parent_marker_expands_in_place(db, store, make_question, make_passage, make_exam):
    make_question("q1")
    make_passage("p1", ["c1", "c2"])
    make_exam("exam-1", ["q1", "parent:p1"])

    payload = ExamAssembler(db, store).replay("exam-1")

    assert _ids(payload.series) == ["q1", "p1"]
    parent = payload.series[1]
    assert isinstance(parent, SeriesComprehension)
    assert parent.type == "comprehension"
    assert [c.id for c in parent.children] == ["c1", "c2"]
    assert payload.gradable_ids() == ["q1", "c1", "c2"]


def test_children_listed_after_marker_are_nested_once(db, store, make_question, make_passage, make_exam):
    make_passage("p1", ["c1", "c2"])
    make_question("q9")
    make_exam("exam-1", ["parent:p1", "c1", "c2", "q9", "c1"])

    payload = ExamAssembler(db, store).replay("exam-1")

    assert _ids(payload.series) == ["p1", "q9"]
    assert [c.id for c in payload.series[0].children] == ["c1", "c2"]


def test_missing_parent_drops_unit_without_orphaning_children(db, store, make_question, make_exam):
    make_question("c1", parent_id="p-missing")
    make_question("c2", parent_id="p-missing")
    make_question("q1")
    make_exam("exam-1", ["parent:p-missing", "c1", "c2", "q1"])

    payload = ExamAssembler(db, store).replay("exam-1")

    assert _ids(payload.series) == ["q1"]


def test_missing_child_is_omitted_but_parent_kept(db, store, make_question, make_exam):
    make_question("p1", text="", choices=(), correct_index=None,
                  kind="comprehension", passage="Passage", child_ids=["c1", "c-gone"])
    make_question("c1", parent_id="p1")
    make_exam("exam-1", ["parent:p1"])

    payload = ExamAssembler(db, store).replay("exam-1")

    assert _ids(payload.series) == ["p1"]
    assert [c.id for c in payload.series[0].children] == ["c1"]
    assert payload.series[0].passage == "Passage"


def test_unresolvable_tokens_are_skipped(db, store, make_question, make_exam):
    make_question("q1")
    make_exam("exam-1", ["ghost", "q1", "parent:also-ghost"])

    assert _ids(ExamAssembler(db, store).replay("exam-1").series) == ["q1"]


def test_stored_permutation_orders_choices(db, store, make_question, make_exam):
    make_question("q1", choices=("w", "x", "y", "z"), correct_index=2)
    make_exam("exam-1", ["q1"], [[2, 0, 3, 1]])

    series = ExamAssembler(db, store).replay("exam-1").series

    assert [c.text for c in series[0].choices] == ["y", "w", "z", "x"]


def test_child_permutation_comes_from_its_own_slot(db, store, make_passage, make_exam):
    make_passage("p1", ["c1"])
    make_exam("exam-1", ["parent:p1", "c1"], [None, [3, 2, 1, 0]])

    child = ExamAssembler(db, store).replay("exam-1").series[0].children[0]

    assert [c.text for c in child.choices] == ["D", "C", "B", "A"]


def test_legacy_string_token_list(db, store, make_question, make_exam):
    make_question("q1")
    make_question("q2")
    make_exam("exam-1", '["q2", "q1"]', "[[1, 0, 2, 3], [0, 1, 2, 3]]")

    series = ExamAssembler(db, store).replay("exam-1").series

    assert _ids(series) == ["q2", "q1"]
    assert [c.text for c in series[0].choices] == ["B", "A", "C", "D"]


def test_replay_unknown_exam_raises(db, store):
    with pytest.raises(ExamNotFound):
        ExamAssembler(db, store).replay("nope")


def test_fresh_assembly_persists_layout_and_permutations(db, store, make_question, make_passage):
    make_question("q1")
    make_question("q2", choices=("a", "b", "c"))
    make_passage("p1", ["c1", "c2"])

    payload = ExamAssembler(db, store, random.Random(7)).assemble_fresh(count=3, user_id="u1")
    instance = crud.get_exam_instance(db, payload.exam_id)
    plan = exam_plan(instance)

    refs = instance.question_ids
    assert sorted(refs) == sorted(["q1", "q2", "parent:p1", "c1", "c2"])
    marker = refs.index("parent:p1")
    assert refs[marker + 1:marker + 3] == ["c1", "c2"]
    assert instance.choices_order[marker] is None
    for token, perm in plan:
        if not token.is_parent:
            n = 3 if token.id == "q2" else 4
            assert is_valid_permutation(perm, n)
    assert instance.user_id == "u1"
    assert instance.expires_at is None
    assert sorted(payload.gradable_ids()) == ["c1", "c2", "q1", "q2"]


def test_fresh_assembly_returns_what_the_pool_has(db, store, make_question):
    for qid in ("q1", "q2", "q3"):
        make_question(qid)

    payload = ExamAssembler(db, store).assemble_fresh(count=10)

    assert len(payload.series) == 3


def test_fresh_assembly_on_empty_pool_is_empty_not_an_error(db, store):
    payload = ExamAssembler(db, store).assemble_fresh(count=5)
    assert payload.series == []
    assert crud.get_exam_instance(db, payload.exam_id) is not None


def test_replay_reproduces_fresh_payload(db, store, make_question, make_passage):
    for qid in ("q1", "q2", "q3", "q4"):
        make_question(qid)
    make_passage("p1", ["c1", "c2"])
    assembler = ExamAssembler(db, store, random.Random(11))

    fresh = assembler.assemble_fresh(count=5)
    first = assembler.replay(fresh.exam_id)
    second = assembler.replay(fresh.exam_id)

    assert first.model_dump_json(by_alias=True) == fresh.model_dump_json(by_alias=True)
    assert first.model_dump_json(by_alias=True) == second.model_dump_json(by_alias=True)


def test_series_never_carries_answer_keys(db, store, make_question, make_passage):
    make_question("q1", correct_index=3)
    make_passage("p1", ["c1"])
    payload = ExamAssembler(db, store).assemble_fresh(count=5)

    dumped = payload.model_dump_json(by_alias=True)

    assert "correct" not in dumped.lower()
