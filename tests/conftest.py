import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import assessment_api
from database.database import Base, get_db
from database.models import ExamInstance, Organization, QuizQuestion
from exam_engine.question_store import (
    FallbackDataset, PrimaryQuestionStore, QuestionStore, get_fallback_dataset, record_from_dict,
)
from routers import quiz as quiz_router


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def fallback():
    return FallbackDataset({})


@pytest.fixture
def store(db, fallback):
    return QuestionStore(PrimaryQuestionStore(db), fallback)


@pytest.fixture
def build_fallback():
    def _build(entries):
        records = {}
        for entry in entries:
            rec = record_from_dict(entry)
            records[rec.id] = rec
        return FallbackDataset(records)
    return _build


@pytest.fixture
def make_question(db):
    def _make(qid, text=None, choices=("A", "B", "C", "D"), correct_index=0, **fields):
        row = QuizQuestion(
            id=qid,
            text=text if text is not None else f"Question {qid}",
            choices=list(choices),
            correct_index=correct_index,
            **fields,
        )
        db.add(row)
        db.commit()
        return row
    return _make


@pytest.fixture
def make_passage(make_question):
    """Parent with children; children point back via parent_id."""
    def _make(pid, child_ids, passage="Read the passage.", **fields):
        for cid in child_ids:
            make_question(cid, parent_id=pid, **fields)
        return make_question(
            pid, text="", choices=(), correct_index=None,
            kind="comprehension", passage=passage, child_ids=list(child_ids), **fields,
        )
    return _make


@pytest.fixture
def make_exam(db):
    def _make(exam_id, refs, perms=None, **fields):
        instance = ExamInstance(
            exam_id=exam_id,
            question_ids=refs,
            choices_order=perms if perms is not None else [None] * len(refs),
            **fields,
        )
        db.add(instance)
        db.commit()
        return instance
    return _make


@pytest.fixture
def make_org(db):
    def _make(slug):
        org = Organization(slug=slug, name=slug.title())
        db.add(org)
        db.commit()
        return org
    return _make


class FakeAutosave:
    """In-memory stand-in for the Redis autosave hash."""

    def __init__(self):
        self.hashes = {}

    def save_answer(self, exam_id, question_id, display_index, ttl_minutes=120):
        self.hashes.setdefault(exam_id, {})[question_id] = int(display_index)

    def get_all_answers(self, exam_id):
        return dict(self.hashes.get(exam_id, {}))

    def clear_answers(self, exam_id):
        self.hashes.pop(exam_id, None)


@pytest.fixture
def autosave(monkeypatch):
    fake = FakeAutosave()
    monkeypatch.setattr(quiz_router, "save_answer", fake.save_answer)
    monkeypatch.setattr(quiz_router, "get_all_answers", fake.get_all_answers)
    monkeypatch.setattr(quiz_router, "clear_answers", fake.clear_answers)
    return fake


@pytest.fixture
def client(db, fallback, autosave):
    app = assessment_api.app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fallback_dataset] = lambda: fallback
    yield TestClient(app)
    app.dependency_overrides.clear()
