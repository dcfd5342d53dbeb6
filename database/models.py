"""
SQLAlchemy models for the assessment engine

Question content is read-only here (written by the content importer).
ExamInstance and Attempt are the only tables this service writes.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
import enum
from database.database import Base


class QuestionKind(str, enum.Enum):
    """Enum for stored question kinds"""
    QUESTION = "question"
    COMPREHENSION = "comprehension"


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class ExamStatus(str, enum.Enum):
    PENDING = "pending"
    FINISHED = "finished"


def _new_id() -> str:
    return uuid.uuid4().hex


# ==========================================
# SCOPE: ORGANIZATIONS
# ==========================================

class Organization(Base):
    """Organization that can own questions and exams. Resolved by slug only."""
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Organization(id={self.id}, slug='{self.slug}')>"


# ==========================================
# QUESTION CONTENT (primary store)
# ==========================================

class QuizQuestion(Base):
    """
    One assessable item.
    kind='question': text + choices + correct_index.
    kind='comprehension': passage + ordered child_ids; children point back via parent_id.
    """
    __tablename__ = "quiz_questions"

    id = Column(String(64), primary_key=True, default=_new_id)
    kind = Column(String(20), nullable=False, default=QuestionKind.QUESTION.value, index=True)
    title = Column(String(255), nullable=True)
    text = Column(Text, nullable=False, default="")
    passage = Column(Text, nullable=True)
    choices = Column(JSON, nullable=False, default=list)  # ["...", ...] or [{"label":"A","text":"..."}, ...]
    correct_index = Column(Integer, nullable=True)  # canonical order; null = ungraded
    child_ids = Column(JSON, nullable=False, default=list)  # comprehension parents only
    parent_id = Column(String(64), nullable=True, index=True)  # children only
    module = Column(String(100), nullable=False, default="general", index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    difficulty = Column(String(20), nullable=True)
    source = Column(String(50), nullable=False, default="import")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    organization = relationship("Organization")

    def __repr__(self):
        return f"<QuizQuestion(id='{self.id}', kind='{self.kind}', module='{self.module}')>"


# ==========================================
# EXAM INSTANCES
# ==========================================

class ExamInstance(Base):
    """
    One assembled exam. question_ids holds the token list as strings
    ("<id>" or "parent:<id>"); choices_order is parallel to it and holds
    the display->canonical permutation per slot (null for parent markers).
    Never rewritten after creation except status / finished_at.
    """
    __tablename__ = "exam_instances"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(String(64), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True)
    module = Column(String(100), nullable=False, default="general", index=True)
    user_id = Column(String(64), nullable=True, index=True)
    question_ids = Column(JSON, nullable=False, default=list)
    choices_order = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=ExamStatus.PENDING.value, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_by_ip = Column(String(64), nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    organization = relationship("Organization")

    def __repr__(self):
        return f"<ExamInstance(exam_id='{self.exam_id}', module='{self.module}', status='{self.status}')>"


# ==========================================
# ATTEMPTS
# ==========================================

class Attempt(Base):
    """
    One test-taking episode. identity_key is the upsert target:
    "exam:<exam_id>" when the exam is known, otherwise a user/scope/module composite.
    """
    __tablename__ = "attempts"

    id = Column(Integer, primary_key=True, index=True)
    identity_key = Column(String(255), unique=True, nullable=False, index=True)
    exam_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True)
    module = Column(String(100), nullable=True)
    question_ids = Column(JSON, nullable=False, default=list)
    answers = Column(JSON, nullable=False, default=list)
    score = Column(Integer, nullable=False, default=0)
    max_score = Column(Integer, nullable=False, default=0)
    percentage = Column(Integer, nullable=False, default=0)
    passed = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=AttemptStatus.IN_PROGRESS.value)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Attempt(identity_key='{self.identity_key}', score={self.score}/{self.max_score}, status='{self.status}')>"
