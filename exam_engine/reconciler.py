"""
Step 6 — Attempt Reconciler

One attempt row per identity. The identity is the exam id when there is one,
otherwise a user / scope / module composite. Resubmission updates in place.
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from database import crud
from database.models import Attempt, ExamInstance
from exam_engine.assembler import exam_plan
from exam_engine.grader import Grader
from exam_engine.schemas import GradeResult, SubmittedAnswer

log = logging.getLogger(__name__)


def identity_key(
    exam_id: Optional[str] = None,
    user_id: Optional[str] = None,
    scope_id: Optional[int] = None,
    module: Optional[str] = None,
) -> Optional[str]:
    """Upsert key for an attempt; None when nothing identifies the taker."""
    if exam_id:
        return f"exam:{exam_id}"
    module = (module or "").strip().lower()
    if not user_id and scope_id is None and not module:
        return None
    return f"user:{user_id or '-'}|scope:{'-' if scope_id is None else scope_id}|module:{module or '-'}"


def attempt_answers(result: GradeResult) -> List[dict]:
    return [
        {
            "questionId": d.question_id,
            "displayIndex": d.display_index,
            "canonicalIndex": d.your_canonical_index,
            "selectedText": d.selected_text or "",
            "correctIndex": d.correct_index,
            "isCorrect": d.correct,
        }
        for d in result.details
    ]


def graded_question_ids(instance: Optional[ExamInstance], result: GradeResult) -> List[str]:
    """Gradable ids of the exam in order (parent markers excluded), else the submitted ids."""
    if instance is not None:
        return [token.id for token, _ in exam_plan(instance) if not token.is_parent]
    return [d.question_id for d in result.details]


class AttemptReconciler:

    def __init__(self, db: Session):
        self.db = db

    def open(self, key: str, exam_id: Optional[str] = None, user_id: Optional[str] = None,
             scope_id: Optional[int] = None, module: Optional[str] = None) -> Attempt:
        return crud.open_attempt(self.db, key, {
            "exam_id": exam_id,
            "user_id": user_id,
            "organization_id": scope_id,
            "module": module,
        })

    def finalize(
        self,
        key: str,
        result: GradeResult,
        instance: Optional[ExamInstance] = None,
        user_id: Optional[str] = None,
        scope_id: Optional[int] = None,
        module: Optional[str] = None,
    ) -> Attempt:
        attempt = crud.upsert_attempt(self.db, key, {
            "exam_id": instance.exam_id if instance is not None else None,
            "user_id": user_id if user_id is not None else (instance.user_id if instance is not None else None),
            "organization_id": scope_id if scope_id is not None else (instance.organization_id if instance is not None else None),
            "module": module or (instance.module if instance is not None else None),
            "question_ids": graded_question_ids(instance, result),
            "answers": attempt_answers(result),
            "score": result.score,
            "max_score": result.total,
            "percentage": result.percentage,
            "passed": result.passed,
        })
        if instance is not None:
            crud.mark_exam_finished(self.db, instance)
        log.info("Attempt %s finalized: %d/%d passed=%s", key, attempt.score, attempt.max_score, attempt.passed)
        return attempt


def submit_exam(
    db: Session,
    grader: Grader,
    answers: Sequence[SubmittedAnswer],
    pass_threshold: int,
    exam_id: Optional[str] = None,
    user_id: Optional[str] = None,
    scope_id: Optional[int] = None,
    module: Optional[str] = None,
) -> GradeResult:
    """
    Grade a submission and reconcile its attempt.
    Identity problems (unknown exam, expired exam, no answers) raise before any write.
    """
    instance = grader.load_exam(exam_id)
    result = grader.grade(answers, pass_threshold, instance)

    key = identity_key(exam_id, user_id, scope_id, module)
    if key is None:
        log.info("Anonymous submission without exam id; attempt not recorded")
        return result

    AttemptReconciler(db).finalize(key, result, instance, user_id, scope_id, module)
    return result
