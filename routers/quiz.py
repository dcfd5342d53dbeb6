"""
Quiz router.
Serves fresh or replayed exams, autosaves answers (Redis), grades submissions
and exposes the reconciled attempt.
"""

import logging
import os
from typing import List, Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud
from database.database import get_db
from database.redis_client import clear_answers, get_all_answers, save_answer
from exam_engine.assembler import ExamAssembler, exam_plan
from exam_engine.errors import ExamExpired, ExamNotFound, MalformedInput
from exam_engine.grader import Grader
from exam_engine.question_store import FallbackDataset, PrimaryQuestionStore, QuestionStore, get_fallback_dataset
from exam_engine.reconciler import AttemptReconciler, identity_key, submit_exam
from exam_engine.schemas import SubmittedAnswer

router = APIRouter(prefix="/lms/quiz", tags=["quiz"])

log = logging.getLogger(__name__)

# ─── Config ────────────────────────────────────────────────────────────────────

QUIZ_PASS_THRESHOLD = int(os.getenv("QUIZ_PASS_THRESHOLD", "60"))
QUIZ_DEFAULT_COUNT = int(os.getenv("QUIZ_DEFAULT_COUNT", "5"))
QUIZ_MAX_COUNT = int(os.getenv("QUIZ_MAX_COUNT", "50"))
EXAM_EXPIRES_MINUTES = int(os.getenv("EXAM_EXPIRES_MINUTES", "1440"))
AUTOSAVE_TTL_MINUTES = int(os.getenv("AUTOSAVE_TTL_MINUTES", "120"))


# ─── Schemas ───────────────────────────────────────────────────────────────────

class AnswerIn(BaseModel):
    question_id: str = Field(..., validation_alias=AliasChoices("questionId", "question_id"))
    display_index: Optional[int] = Field(
        None, validation_alias=AliasChoices("displayIndex", "display_index", "choiceIndex")
    )


class SubmitRequest(BaseModel):
    exam_id: Optional[str] = Field(None, validation_alias=AliasChoices("examId", "exam_id"))
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("userId", "user_id"))
    org: Optional[str] = None
    module: Optional[str] = None
    answers: List[AnswerIn] = Field(default_factory=list)


class SaveAnswerRequest(AnswerIn):
    display_index: int = Field(..., validation_alias=AliasChoices("displayIndex", "display_index", "choiceIndex"))
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("userId", "user_id"))


# ─── Dependencies ──────────────────────────────────────────────────────────────

def get_question_store(
    db: Session = Depends(get_db),
    fallback: FallbackDataset = Depends(get_fallback_dataset),
) -> QuestionStore:
    return QuestionStore(PrimaryQuestionStore(db), fallback)


def _attempt_dict(attempt) -> dict:
    return {
        "examId": attempt.exam_id,
        "userId": attempt.user_id,
        "module": attempt.module,
        "questionIds": attempt.question_ids,
        "answers": attempt.answers,
        "score": attempt.score,
        "maxScore": attempt.max_score,
        "percentage": attempt.percentage,
        "passed": attempt.passed,
        "status": attempt.status,
        "startedAt": attempt.started_at.isoformat() if attempt.started_at else None,
        "finishedAt": attempt.finished_at.isoformat() if attempt.finished_at else None,
    }


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.get("")
def get_quiz(
    request: Request,
    exam_id: Optional[str] = Query(None, alias="examId"),
    count: int = Query(QUIZ_DEFAULT_COUNT),
    module: Optional[str] = None,
    org: Optional[str] = None,
    user_id: Optional[str] = Query(None, alias="userId"),
    db: Session = Depends(get_db),
    store: QuestionStore = Depends(get_question_store),
):
    """
    Serve an exam. With examId the stored exam is replayed verbatim;
    without it a fresh exam is sampled and persisted.
    """
    assembler = ExamAssembler(db, store)
    exam_id = (exam_id or "").strip() or None
    try:
        if exam_id:
            payload = assembler.replay(exam_id)
        else:
            payload = assembler.assemble_fresh(
                count=max(1, min(QUIZ_MAX_COUNT, count)),
                module=(module or "").strip() or None,
                org_slug=org,
                user_id=user_id,
                expires_minutes=EXAM_EXPIRES_MINUTES,
                created_by_ip=request.client.host if request.client else None,
            )
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="exam not found")
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Exam serve failed: %s", e)
        raise HTTPException(status_code=503, detail="exam storage unavailable")

    return payload.model_dump(by_alias=True)


@router.post("/submit")
def submit_quiz(
    request: SubmitRequest,
    db: Session = Depends(get_db),
    store: QuestionStore = Depends(get_question_store),
):
    """Grade a submission and upsert the attempt for its identity."""
    exam_id = (request.exam_id or "").strip() or None
    answers = [SubmittedAnswer(question_id=a.question_id, display_index=a.display_index) for a in request.answers]

    if exam_id:
        # autosaved answers fill in whatever the body does not carry
        try:
            saved = get_all_answers(exam_id)
        except redis.RedisError as e:
            log.warning("Autosave unavailable for exam %s: %s", exam_id, e)
            saved = {}
        sent = {a.question_id for a in answers}
        answers = answers + [
            SubmittedAnswer(question_id=qid, display_index=saved[qid])
            for qid in sorted(saved) if qid not in sent
        ]

    try:
        scope_id = crud.resolve_scope(db, request.org)
        result = submit_exam(
            db,
            Grader(db, store),
            answers,
            QUIZ_PASS_THRESHOLD,
            exam_id=exam_id,
            user_id=request.user_id,
            scope_id=scope_id,
            module=request.module,
        )
    except MalformedInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExamNotFound:
        raise HTTPException(status_code=404, detail="exam not found")
    except ExamExpired:
        raise HTTPException(status_code=410, detail="exam expired")
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Submission failed for exam %s: %s", exam_id, e)
        raise HTTPException(status_code=503, detail="exam storage unavailable")

    if exam_id:
        try:
            clear_answers(exam_id)
        except redis.RedisError as e:
            log.warning("Could not clear autosaved answers for exam %s: %s", exam_id, e)

    response = result.model_dump(by_alias=True)
    response["examId"] = exam_id
    return response


@router.post("/{exam_id}/answers")
def autosave_answer(
    exam_id: str,
    request: SaveAnswerRequest,
    db: Session = Depends(get_db),
):
    """Autosave one display-index answer and open the attempt if needed."""
    instance = crud.get_exam_instance(db, exam_id)
    if not instance:
        raise HTTPException(status_code=404, detail="exam not found")

    gradable = {token.id for token, _ in exam_plan(instance) if not token.is_parent}
    if request.question_id not in gradable:
        raise HTTPException(status_code=400, detail="Question not in this exam")

    try:
        save_answer(exam_id, request.question_id, request.display_index, AUTOSAVE_TTL_MINUTES)
    except redis.RedisError as e:
        log.error("Autosave failed for exam %s: %s", exam_id, e)
        raise HTTPException(status_code=503, detail="autosave unavailable")

    AttemptReconciler(db).open(
        identity_key(exam_id),
        exam_id=exam_id,
        user_id=request.user_id or instance.user_id,
        scope_id=instance.organization_id,
        module=instance.module,
    )
    return {"status": "saved", "questionId": request.question_id, "displayIndex": request.display_index}


@router.get("/{exam_id}/attempt")
def get_exam_attempt(exam_id: str, db: Session = Depends(get_db)):
    """Stored attempt for an exam."""
    attempt = crud.get_attempt(db, identity_key(exam_id))
    if not attempt:
        raise HTTPException(status_code=404, detail="attempt not found")
    return _attempt_dict(attempt)
