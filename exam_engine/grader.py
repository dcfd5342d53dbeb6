"""
Step 5 — Grading Engine

Maps each submitted display index back to a canonical index through the
exam's stored permutation and compares it with the question's answer key.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from database import crud
from database.models import ExamInstance
from exam_engine.assembler import exam_plan, stored_permutations
from exam_engine.errors import ExamExpired, ExamNotFound, MalformedInput
from exam_engine.permutation import display_to_canonical, effective_permutation
from exam_engine.question_store import QuestionStore
from exam_engine.schemas import GradeDetail, GradeResult, QuestionRecord, SubmittedAnswer

log = logging.getLogger(__name__)


def percentage_of(score: int, total: int) -> int:
    """Whole percent, halves rounded up."""
    return int(math.floor(100 * score / max(1, total) + 0.5))


def collapse_answers(answers: Sequence[SubmittedAnswer]) -> List[SubmittedAnswer]:
    """One answer per question: first position kept, last value wins."""
    latest: Dict[str, SubmittedAnswer] = {}
    for answer in answers:
        latest[answer.question_id] = answer
    return list(latest.values())


def grade_answers(
    answers: Sequence[SubmittedAnswer],
    records: Dict[str, QuestionRecord],
    permutations: Dict[str, List[int]],
    pass_threshold: int,
) -> GradeResult:
    """
    Grade answers against resolved records.

    Args:
        answers: submissions in client order
        records: resolved question records by id
        permutations: stored display->canonical maps by question id; a question
            without one has its display index taken as canonical
        pass_threshold: minimum percentage to pass, supplied by the caller

    Returns:
        GradeResult with one detail per distinct question, in submission order.
        Unknown questions and questions without an answer key count as incorrect.
    """
    details = []
    for answer in collapse_answers(answers):
        rec = records.get(answer.question_id)
        perm = permutations.get(answer.question_id)
        shown = answer.display_index

        canonical: Optional[int] = None
        if rec is not None:
            n = len(rec.choices)
            if perm is not None:
                canonical = display_to_canonical(shown, effective_permutation(perm, n))
            elif shown is not None and 0 <= shown < n:
                canonical = shown

        correct_index = rec.correct_index if rec is not None else None
        correct = canonical is not None and correct_index is not None and canonical == correct_index

        details.append(GradeDetail(
            question_id=answer.question_id,
            display_index=shown,
            your_canonical_index=canonical,
            correct_index=correct_index,
            selected_text=rec.choices[canonical] if rec is not None and canonical is not None else None,
            correct_text=rec.choices[correct_index] if rec is not None and correct_index is not None else None,
            correct=correct,
        ))

    score = sum(1 for d in details if d.correct)
    total = len(details)
    percentage = percentage_of(score, total)
    return GradeResult(
        score=score,
        total=total,
        percentage=percentage,
        pass_threshold=pass_threshold,
        passed=percentage >= pass_threshold,
        details=details,
    )


def _is_expired(instance: ExamInstance) -> bool:
    if instance.expires_at is None:
        return False
    expires = instance.expires_at.replace(tzinfo=timezone.utc) if instance.expires_at.tzinfo is None else instance.expires_at
    return datetime.now(timezone.utc) > expires


class Grader:
    """Loads the exam instance and question records, then grades."""

    def __init__(self, db: Session, store: QuestionStore):
        self.db = db
        self.store = store

    def load_exam(self, exam_id: Optional[str]) -> Optional[ExamInstance]:
        if not exam_id:
            return None
        instance = crud.get_exam_instance(self.db, exam_id)
        if instance is None:
            raise ExamNotFound(exam_id)
        if _is_expired(instance):
            raise ExamExpired(exam_id)
        return instance

    def grade(
        self,
        answers: Sequence[SubmittedAnswer],
        pass_threshold: int,
        instance: Optional[ExamInstance] = None,
    ) -> GradeResult:
        if not answers:
            raise MalformedInput("No answers submitted")

        records = self.store.resolve_many(a.question_id for a in answers)
        permutations: Dict[str, List[int]] = {}
        if instance is None:
            log.info("Grading %d answers without an exam instance; indexes taken as canonical", len(answers))
        else:
            plan = exam_plan(instance)
            permutations = stored_permutations(plan)
            listed = {token.id for token, _ in plan}
            foreign = sorted(
                qid for qid in {a.question_id for a in answers}
                if qid not in listed and not (qid in records and records[qid].parent_id in listed)
            )
            if foreign:
                log.warning("Exam %s received answers for questions outside it, graded as canonical: %s",
                            instance.exam_id, ", ".join(foreign))

        result = grade_answers(answers, records, permutations, pass_threshold)
        log.info("Graded %s: %d/%d (%d%%)",
                 instance.exam_id if instance is not None else "ad-hoc submission",
                 result.score, result.total, result.percentage)
        return result
