"""
Step 3 — Exam Assembler

Fresh mode: sample the pool, lay out tokens (parents as "parent:<id>" followed
by their children), draw one permutation per gradable slot, persist the instance.
Replay mode: load the stored tokens + permutations verbatim and rebuild the series.

Both modes render through build_series(), so a fresh exam and any later replay
of it produce the same payload.
"""

import json
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from database import crud
from database.models import ExamInstance
from exam_engine.errors import ExamNotFound
from exam_engine.normalizer import normalize_question_refs
from exam_engine.permutation import apply_permutation, generate_permutation
from exam_engine.question_store import QuestionStore, SampleFilter
from exam_engine.schemas import (
    ExamPayload, QuestionRecord, QuestionToken,
    SeriesChoice, SeriesComprehension, SeriesItem, SeriesQuestion,
)

log = logging.getLogger(__name__)

PlanEntry = Tuple[QuestionToken, Optional[List[int]]]


# ─── Stored plan helpers ───────────────────────────────────────────────────────

def _as_list(value) -> list:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    return value if isinstance(value, list) else []


def _as_perm(value) -> Optional[List[int]]:
    if not isinstance(value, list) or not value:
        return None
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError):
        return None


def exam_plan(instance: ExamInstance) -> List[PlanEntry]:
    """Pair every stored token with the permutation stored at the same position."""
    table = _as_list(instance.choices_order)
    raw_ids = instance.question_ids

    if isinstance(raw_ids, list):
        plan = []
        for pos, ref in enumerate(raw_ids):
            tokens = normalize_question_refs([ref])
            if not tokens:
                continue
            plan.append((tokens[0], _as_perm(table[pos]) if pos < len(table) else None))
        return plan

    tokens = normalize_question_refs(raw_ids)
    return [(t, _as_perm(table[pos]) if pos < len(table) else None) for pos, t in enumerate(tokens)]


def stored_permutations(plan: Iterable[PlanEntry]) -> Dict[str, List[int]]:
    """question id -> permutation, taken from the first plain slot that has one."""
    perms: Dict[str, List[int]] = {}
    for token, perm in plan:
        if not token.is_parent and perm is not None and token.id not in perms:
            perms[token.id] = perm
    return perms


# ─── Rendering ─────────────────────────────────────────────────────────────────

def _series_question(rec: QuestionRecord, perm: Optional[List[int]]) -> SeriesQuestion:
    return SeriesQuestion(
        id=rec.id,
        title=rec.title,
        text=rec.text,
        choices=[SeriesChoice(text=t) for t in apply_permutation(rec.choices, perm)],
        tags=rec.tags,
        difficulty=rec.difficulty,
    )


def build_series(
    plan: List[PlanEntry],
    store: QuestionStore,
    known: Optional[Dict[str, QuestionRecord]] = None,
) -> List[SeriesItem]:
    """
    Expand a token plan into the client series.

    Args:
        plan: (token, permutation) pairs in exam order
        store: question source façade
        known: records already resolved by the caller

    Returns:
        Series in plan order. Parent units appear once, in place, carrying their
        resolvable children; every child is emitted exactly once. Unresolvable
        tokens are omitted.
    """
    records: Dict[str, QuestionRecord] = dict(known or {})
    first_ids = [t.id for t, _ in plan if t.id not in records]
    records.update(store.resolve_many(first_ids))

    # plain tokens that resolve to a passage are expanded like markers
    parent_ids = {
        t.id for t, _ in plan
        if t.is_parent or (t.id in records and records[t.id].is_comprehension)
    }
    child_ids = [
        cid for pid in parent_ids if pid in records
        for cid in records[pid].child_ids
    ]
    missing = [cid for cid in child_ids if cid not in records]
    if missing:
        records.update(store.resolve_many(missing))

    claimed = set(child_ids)
    perms = stored_permutations(plan)
    series: List[SeriesItem] = []
    emitted_parents = set()
    emitted_children = set()

    for token, perm in plan:
        if token.id in parent_ids:
            if token.id in emitted_parents:
                continue
            parent = records.get(token.id)
            if parent is None:
                log.warning("Parent %s could not be resolved; dropping its passage", token.id)
                continue
            emitted_parents.add(token.id)

            children = []
            for cid in dict.fromkeys(parent.child_ids):
                if cid in emitted_children:
                    continue
                child = records.get(cid)
                if child is None:
                    log.warning("Child %s of parent %s could not be resolved", cid, parent.id)
                    continue
                emitted_children.add(cid)
                children.append(_series_question(child, perms.get(cid)))

            series.append(SeriesComprehension(
                id=parent.id,
                title=parent.title,
                passage=parent.passage or parent.text or "",
                children=children,
                tags=parent.tags,
                difficulty=parent.difficulty,
            ))
            continue

        if token.id in claimed:
            continue
        rec = records.get(token.id)
        if rec is None:
            log.warning("Question %s could not be resolved; skipping", token.id)
            continue
        if rec.parent_id and rec.parent_id in parent_ids:
            # belongs to a passage of this exam whose record was unavailable
            continue
        series.append(_series_question(rec, perm))

    return series


# ─── Assembler ─────────────────────────────────────────────────────────────────

class ExamAssembler:
    """Builds and re-serves exam instances."""

    def __init__(self, db: Session, store: QuestionStore, rng: Optional[random.Random] = None):
        self.db = db
        self.store = store
        self.rng = rng or random.Random()

    def assemble_fresh(
        self,
        count: int,
        module: Optional[str] = None,
        org_slug: Optional[str] = None,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        expires_minutes: Optional[int] = None,
        created_by_ip: Optional[str] = None,
    ) -> ExamPayload:
        """Sample up to `count` questions, fix their permutations and persist the instance."""
        scope_id = crud.resolve_scope(self.db, org_slug)
        drawn = self.store.sample(SampleFilter(module=module, scope_id=scope_id), count, self.rng)

        child_ids = [cid for rec in drawn if rec.is_comprehension for cid in rec.child_ids]
        known = {rec.id: rec for rec in drawn}
        known.update(self.store.resolve_many(cid for cid in child_ids if cid not in known))

        plan: List[PlanEntry] = []
        for rec in drawn:
            if rec.is_comprehension:
                plan.append((QuestionToken.parent(rec.id), None))
                for cid in dict.fromkeys(rec.child_ids):
                    child = known.get(cid)
                    if child is None:
                        log.warning("Sampled passage %s references missing child %s", rec.id, cid)
                        continue
                    plan.append((QuestionToken.plain(cid), generate_permutation(len(child.choices), self.rng)))
            else:
                plan.append((QuestionToken.plain(rec.id), generate_permutation(len(rec.choices), self.rng)))

        expires_at = None
        if expires_minutes:
            expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)

        instance = crud.create_exam_instance(
            self.db,
            exam_id=str(uuid.uuid4()),
            title=title,
            organization_id=scope_id,
            module=(module or "general").strip().lower(),
            user_id=user_id,
            question_ids=[token.to_ref() for token, _ in plan],
            choices_order=[perm for _, perm in plan],
            expires_at=expires_at,
            created_by_ip=created_by_ip,
            meta={"requested_count": count, "sampled": len(drawn)},
        )
        log.info("Assembled exam %s: %d sampled of %d requested, %d slots",
                 instance.exam_id, len(drawn), count, len(plan))

        return ExamPayload(exam_id=instance.exam_id, series=build_series(plan, self.store, known))

    def load_instance(self, exam_id: str) -> ExamInstance:
        instance = crud.get_exam_instance(self.db, exam_id)
        if instance is None:
            raise ExamNotFound(exam_id)
        return instance

    def replay(self, exam_id: str) -> ExamPayload:
        """Re-serve a stored exam exactly as issued: no resampling, no reshuffling."""
        instance = self.load_instance(exam_id)
        plan = exam_plan(instance)
        series = build_series(plan, self.store)
        log.info("Replayed exam %s: %d slots -> %d series items", exam_id, len(plan), len(series))
        return ExamPayload(exam_id=instance.exam_id, series=series)
