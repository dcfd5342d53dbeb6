"""
Step 2 — Question Store Façade

Resolves question ids against two sources:
  - the primary store (quiz_questions table), queried in one batch
  - the fallback dataset (static JSON file), loaded once and indexed by id
Primary wins on collision. A source that cannot be read is logged and skipped;
ids found in neither source are simply absent from the result.
"""

import json
import logging
import os
import random
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import QuizQuestion, QuestionKind
from exam_engine.errors import StorageDegraded
from exam_engine.schemas import QuestionRecord

log = logging.getLogger(__name__)

QUESTIONS_FALLBACK_PATH = os.getenv(
    "QUESTIONS_FALLBACK_PATH",
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "data_questions.json"),
)

_PRIMARY_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def looks_like_primary_id(question_id: str) -> bool:
    return bool(question_id) and bool(_PRIMARY_ID_RE.match(question_id))


def choice_text(choice: Any) -> str:
    """Choices are stored as plain strings or {label, text} objects."""
    if isinstance(choice, dict):
        return str(choice.get("text") or "")
    return "" if choice is None else str(choice)


class SampleFilter(BaseModel):
    """Opaque pass-through filters for fresh sampling."""
    module: Optional[str] = None
    scope_id: Optional[int] = None


# ─── Primary store ─────────────────────────────────────────────────────────────

def record_from_row(row: QuizQuestion) -> QuestionRecord:
    return QuestionRecord(
        id=str(row.id),
        kind=row.kind or QuestionKind.QUESTION.value,
        text=row.text or "",
        title=row.title,
        passage=row.passage,
        choices=[choice_text(c) for c in (row.choices or [])],
        correct_index=row.correct_index,
        child_ids=[str(c) for c in (row.child_ids or []) if c],
        parent_id=row.parent_id,
        module=row.module or "general",
        organization_id=row.organization_id,
        tags=list(row.tags or []),
        difficulty=row.difficulty or "medium",
        source="primary",
    )


class PrimaryQuestionStore:
    """SQLAlchemy-backed question lookups."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_ids(self, ids: Iterable[str]) -> List[QuestionRecord]:
        lookup = [i for i in ids if looks_like_primary_id(i)]
        if not lookup:
            return []
        try:
            rows = self.db.query(QuizQuestion).filter(QuizQuestion.id.in_(lookup)).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageDegraded("primary store", e) from e
        records = []
        for row in rows:
            try:
                records.append(record_from_row(row))
            except ValidationError as e:
                log.warning("Skipping malformed question %s: %s", row.id, e)
        return records

    def find_random_sample(self, sample_filter: SampleFilter, count: int,
                           rng: Optional[random.Random] = None) -> List[QuestionRecord]:
        """Uniform sample without replacement of standalone/parent questions, in draw order."""
        q = self.db.query(QuizQuestion.id).filter(QuizQuestion.parent_id.is_(None))
        if sample_filter.module:
            q = q.filter(func.lower(QuizQuestion.module) == sample_filter.module.strip().lower())
        if sample_filter.scope_id is not None:
            q = q.filter(or_(QuizQuestion.organization_id == sample_filter.scope_id,
                             QuizQuestion.organization_id.is_(None)))
        else:
            q = q.filter(QuizQuestion.organization_id.is_(None))

        try:
            eligible = sorted(row[0] for row in q.all())
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageDegraded("primary store", e) from e

        drawn = (rng or random).sample(eligible, min(count, len(eligible)))
        by_id = {rec.id: rec for rec in self.find_by_ids(drawn)}
        return [by_id[i] for i in drawn if i in by_id]


# ─── Fallback dataset ──────────────────────────────────────────────────────────

def record_from_dict(d: Dict[str, Any]) -> Optional[QuestionRecord]:
    """Build a record from a fallback JSON entry; None when it has no usable id."""
    qid = str(d.get("id") or d.get("_id") or d.get("uuid") or "").strip()
    if not qid:
        return None

    correct = None
    for key in ("correctIndex", "answerIndex", "correct"):
        value = d.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            correct = value
            break

    child_ids = [str(c) for c in (d.get("questionIds") or d.get("childIds") or []) if c]
    is_parent = d.get("type") == "comprehension" or bool(d.get("passage") and child_ids)

    return QuestionRecord(
        id=qid,
        kind="comprehension" if is_parent else "question",
        text=str(d.get("text") or ""),
        title=d.get("title"),
        passage=d.get("passage"),
        choices=[choice_text(c) for c in (d.get("choices") or [])],
        correct_index=correct,
        child_ids=child_ids,
        parent_id=d.get("parentId") or d.get("parent_id"),
        module=str(d.get("module") or "general"),
        tags=[str(t) for t in (d.get("tags") or [])],
        difficulty=str(d.get("difficulty") or "medium"),
        source="fallback",
    )


class FallbackDataset:
    """Read-only, process-local snapshot of the static question file."""

    def __init__(self, records: Optional[Dict[str, QuestionRecord]] = None,
                 path: Optional[str] = None, load_error: Optional[Exception] = None):
        self.records = records or {}
        self.path = path
        self.load_error = load_error
        self._child_ids = {cid for rec in self.records.values() for cid in rec.child_ids}

    @classmethod
    def from_file(cls, path: str) -> "FallbackDataset":
        if not os.path.exists(path):
            log.info("Fallback dataset %s not present; continuing without it", path)
            return cls(path=path)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
            if not isinstance(raw, list):
                raise ValueError("fallback dataset must be a JSON list")
        except (OSError, ValueError) as e:
            log.error("Failed to load fallback dataset %s: %s", path, e)
            return cls(path=path, load_error=e)

        records = {}
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                rec = record_from_dict(entry)
            except ValidationError as e:
                log.warning("Skipping malformed fallback entry %r: %s", entry.get("id") or entry.get("_id"), e)
                continue
            if rec is not None:
                records[rec.id] = rec
        log.info("Loaded %d fallback questions from %s", len(records), path)
        return cls(records, path=path)

    def _check(self):
        if self.load_error is not None:
            raise StorageDegraded("fallback dataset", self.load_error)

    def find_by_ids(self, ids: Iterable[str]) -> List[QuestionRecord]:
        self._check()
        return [self.records[i] for i in ids if i in self.records]

    def sample(self, sample_filter: SampleFilter, count: int,
               rng: Optional[random.Random] = None) -> List[QuestionRecord]:
        self._check()
        module = (sample_filter.module or "").strip().lower()
        eligible = [
            rec for rec in self.records.values()
            if rec.parent_id is None
            and rec.id not in self._child_ids
            and (not module or rec.module.lower() == module)
        ]
        return (rng or random).sample(eligible, min(count, len(eligible)))


_fallback_dataset: Optional[FallbackDataset] = None


def get_fallback_dataset() -> FallbackDataset:
    """Get or load the fallback dataset (a failed load is retried on the next call)."""
    global _fallback_dataset
    if _fallback_dataset is None:
        dataset = FallbackDataset.from_file(QUESTIONS_FALLBACK_PATH)
        if dataset.load_error is not None:
            return dataset
        _fallback_dataset = dataset
    return _fallback_dataset


# ─── Façade ────────────────────────────────────────────────────────────────────

class QuestionStore:
    """Two-source resolution with graceful degradation."""

    def __init__(self, primary: Optional[PrimaryQuestionStore], fallback: Optional[FallbackDataset]):
        self.primary = primary
        self.fallback = fallback

    def resolve_many(self, ids: Iterable[str]) -> Dict[str, QuestionRecord]:
        """
        Resolve ids to records. Missing ids are absent from the map;
        an unreadable source only narrows what can be found.
        """
        wanted = list(dict.fromkeys(i for i in ids if i))
        resolved: Dict[str, QuestionRecord] = {}
        if not wanted:
            return resolved

        if self.primary is not None:
            try:
                for rec in self.primary.find_by_ids(wanted):
                    resolved[rec.id] = rec
            except StorageDegraded as e:
                log.warning("Primary store degraded, resolving from fallback only: %s", e)

        missing = [i for i in wanted if i not in resolved]
        if missing and self.fallback is not None:
            try:
                for rec in self.fallback.find_by_ids(missing):
                    resolved.setdefault(rec.id, rec)
            except StorageDegraded as e:
                log.warning("Fallback dataset degraded, resolving from primary only: %s", e)

        if len(resolved) < len(wanted):
            log.warning("Resolved %d of %d question ids", len(resolved), len(wanted))
        return resolved

    def sample(self, sample_filter: SampleFilter, count: int,
               rng: Optional[random.Random] = None) -> List[QuestionRecord]:
        """Fresh-assembly pool draw: primary first, fallback when primary is down or empty."""
        if count <= 0:
            return []
        if self.primary is not None:
            try:
                drawn = self.primary.find_random_sample(sample_filter, count, rng)
                if drawn:
                    return drawn
            except StorageDegraded as e:
                log.warning("Primary store degraded during sampling: %s", e)
        if self.fallback is not None:
            try:
                return self.fallback.sample(sample_filter, count, rng)
            except StorageDegraded as e:
                log.warning("Fallback dataset degraded during sampling: %s", e)
        return []
