"""
CRUD operations for exam instances, attempts and scope lookup
All database writes of the assessment engine go through these functions
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import Attempt, AttemptStatus, ExamInstance, ExamStatus, Organization

# columns overwritten when a submission lands on an existing attempt;
# started_at / created_at are deliberately absent
ATTEMPT_RESULT_FIELDS = (
    "question_ids", "answers", "score", "max_score", "percentage",
    "passed", "status", "finished_at", "updated_at",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_insert(db: Session):
    """Dialect insert construct supporting ON CONFLICT, or None."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


# ==========================================
# SCOPE
# ==========================================

def resolve_scope(db: Session, slug: Optional[str]) -> Optional[int]:
    """Organization slug -> opaque scope id (None when blank or unknown)."""
    slug = (slug or "").strip()
    if not slug:
        return None
    org = db.query(Organization).filter(Organization.slug == slug).first()
    return org.id if org else None


# ==========================================
# EXAM INSTANCE CRUD
# ==========================================

def get_exam_instance(db: Session, exam_id: str) -> Optional[ExamInstance]:
    """Get exam instance by its public exam id"""
    return db.query(ExamInstance).filter(ExamInstance.exam_id == exam_id).first()


def create_exam_instance(db: Session, **fields: Any) -> ExamInstance:
    """Persist a freshly assembled exam instance"""
    instance = ExamInstance(**fields)
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def mark_exam_finished(db: Session, instance: ExamInstance) -> ExamInstance:
    """Terminal stamp after grading; the token list and permutations are untouched"""
    instance.status = ExamStatus.FINISHED.value
    instance.finished_at = _now()
    db.commit()
    db.refresh(instance)
    return instance


# ==========================================
# ATTEMPT CRUD
# ==========================================

def get_attempt(db: Session, identity_key: str) -> Optional[Attempt]:
    return db.query(Attempt).filter(Attempt.identity_key == identity_key).first()


def open_attempt(db: Session, identity_key: str, fields: Dict[str, Any]) -> Attempt:
    """
    Create an in-progress attempt for the identity unless one exists.
    An existing attempt (in progress or finished) is returned unchanged.
    """
    now = _now()
    values = {
        **fields,
        "identity_key": identity_key,
        "status": AttemptStatus.IN_PROGRESS.value,
        "started_at": now,
        "updated_at": now,
    }
    insert = _dialect_insert(db)
    if insert is not None:
        stmt = insert(Attempt).values(**values).on_conflict_do_nothing(index_elements=["identity_key"])
        db.execute(stmt)
        db.commit()
    else:
        try:
            db.add(Attempt(**values))
            db.commit()
        except IntegrityError:
            db.rollback()
    return get_attempt(db, identity_key)


def upsert_attempt(db: Session, identity_key: str, fields: Dict[str, Any]) -> Attempt:
    """
    Atomically create or finalize the attempt for an identity.
    Existing rows keep started_at and created_at; result columns are overwritten.
    """
    now = _now()
    values = {
        **fields,
        "identity_key": identity_key,
        "status": AttemptStatus.FINISHED.value,
        "started_at": now,
        "finished_at": now,
        "updated_at": now,
    }
    insert = _dialect_insert(db)
    if insert is not None:
        stmt = insert(Attempt).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity_key"],
            set_={name: stmt.excluded[name] for name in ATTEMPT_RESULT_FIELDS},
        )
        db.execute(stmt)
        db.commit()
        return get_attempt(db, identity_key)

    # other dialects: the unique identity_key turns a racing create into an update
    try:
        db.add(Attempt(**values))
        db.commit()
    except IntegrityError:
        db.rollback()
        db.query(Attempt).filter(Attempt.identity_key == identity_key).update(
            {name: values[name] for name in ATTEMPT_RESULT_FIELDS}, synchronize_session=False
        )
        db.commit()
    return get_attempt(db, identity_key)
