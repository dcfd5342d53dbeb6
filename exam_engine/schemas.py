"""
Pydantic types shared by the exam pipeline.

QuestionToken    — normalized reference (plain id or parent marker)
QuestionRecord   — canonical question content from either source
Series*          — the client payload (display order, no answer keys)
Grade*           — grading output
"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

PARENT_PREFIX = "parent:"


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase on input, dumps camelCase with by_alias."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Tokens ────────────────────────────────────────────────────────────────────

class QuestionToken(BaseModel):
    """One entry of an exam's token list."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["plain", "parent"]
    id: str

    @classmethod
    def plain(cls, question_id: str) -> "QuestionToken":
        return cls(kind="plain", id=question_id)

    @classmethod
    def parent(cls, parent_id: str) -> "QuestionToken":
        return cls(kind="parent", id=parent_id)

    @property
    def is_parent(self) -> bool:
        return self.kind == "parent"

    def to_ref(self) -> str:
        """Storage form: "<id>" or "parent:<id>"."""
        return f"{PARENT_PREFIX}{self.id}" if self.is_parent else self.id


# ─── Question content ──────────────────────────────────────────────────────────

class QuestionRecord(BaseModel):
    """Canonical content for one item. Read-only to the pipeline."""
    id: str
    kind: Literal["question", "comprehension"] = "question"
    text: str = ""
    title: Optional[str] = None
    passage: Optional[str] = None
    choices: List[str] = Field(default_factory=list)
    correct_index: Optional[int] = None
    child_ids: List[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    module: str = "general"
    organization_id: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "medium"
    source: Literal["primary", "fallback"] = "primary"

    @model_validator(mode="after")
    def _drop_invalid_key(self):
        # an answer key that does not point at a choice is treated as unknown
        if self.correct_index is not None and not 0 <= self.correct_index < len(self.choices):
            self.correct_index = None
        return self

    @property
    def is_comprehension(self) -> bool:
        return self.kind == "comprehension"


# ─── Client payload ────────────────────────────────────────────────────────────

class SeriesChoice(CamelModel):
    text: str


class SeriesQuestion(CamelModel):
    id: str
    type: Literal["question"] = "question"
    title: Optional[str] = None
    text: str
    choices: List[SeriesChoice]
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "medium"


class SeriesComprehension(CamelModel):
    id: str
    type: Literal["comprehension"] = "comprehension"
    title: Optional[str] = None
    passage: str
    children: List[SeriesQuestion]
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "medium"


SeriesItem = Union[SeriesQuestion, SeriesComprehension]


class ExamPayload(CamelModel):
    exam_id: str
    series: List[SeriesItem]

    def gradable_ids(self) -> List[str]:
        """Question ids in the order they are graded (children inline, parents excluded)."""
        ids = []
        for item in self.series:
            if isinstance(item, SeriesComprehension):
                ids.extend(child.id for child in item.children)
            else:
                ids.append(item.id)
        return ids


# ─── Grading ───────────────────────────────────────────────────────────────────

class SubmittedAnswer(CamelModel):
    question_id: str
    display_index: Optional[int] = None


class GradeDetail(CamelModel):
    question_id: str
    display_index: Optional[int] = None
    your_canonical_index: Optional[int] = None
    correct_index: Optional[int] = None
    selected_text: Optional[str] = None
    correct_text: Optional[str] = None
    correct: bool = False


class GradeResult(CamelModel):
    score: int
    total: int
    percentage: int
    pass_threshold: int
    passed: bool
    details: List[GradeDetail]
