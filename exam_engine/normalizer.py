"""
Step 1 — Identifier Normalizer

Turns a stored or submitted reference list into an ordered list of QuestionToken.
Accepted shapes:
  - a native list of ids / "parent:<id>" strings
  - a JSON string whose top-level value is such a list
  - loosely delimited text (commas / whitespace), possibly mixing parent markers and bare ids
Nothing is de-duplicated and nothing recognizable is dropped; unknown tokens stay
plain and are resolved-or-skipped downstream.
"""

import json
import logging
import re
from typing import Any, List, Tuple

from exam_engine.schemas import PARENT_PREFIX, QuestionToken

log = logging.getLogger(__name__)

# both patterns only match whole delimited pieces
_START = r"(?<![^\s,;\[\]\"'])"
_END = r"(?![^\s,;\[\]\"'])"
_PARENT_RE = re.compile(_START + r"parent:\s*([^\s,;\[\]\"']+)" + _END, re.IGNORECASE)
# object-id / uuid shaped identifiers
_BARE_ID_RE = re.compile(
    _START
    + r"(?:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
    r"|[0-9a-fA-F]{32}|[0-9a-fA-F]{24})"
    + _END
)
_SPLIT_RE = re.compile(r"[^\s,;]+")
_STRIP_CHARS = "[]\"'"


def token_from_ref(ref: Any) -> QuestionToken:
    """Map a single list element to a token."""
    text = str(ref).strip()
    if text.lower().startswith(PARENT_PREFIX):
        parent_id = text[len(PARENT_PREFIX):].strip()
        if parent_id:
            return QuestionToken.parent(parent_id)
    return QuestionToken.plain(text)


def _from_list(items: List[Any]) -> List[QuestionToken]:
    tokens = []
    for item in items:
        if item is None or (isinstance(item, str) and not item.strip()):
            continue
        if isinstance(item, QuestionToken):
            tokens.append(item)
        else:
            tokens.append(token_from_ref(item))
    return tokens


def _overlaps(span: Tuple[int, int], claimed: List[Tuple[int, int]]) -> bool:
    start, end = span
    return any(start < c_end and c_start < end for c_start, c_end in claimed)


def _from_text(text: str) -> List[QuestionToken]:
    """
    Scan free-form text: parent markers first, then id-shaped tokens, then
    whatever is left after naive splitting. Results are emitted in the order
    they appear in the text.
    """
    found: List[Tuple[int, QuestionToken]] = []
    claimed: List[Tuple[int, int]] = []

    for m in _PARENT_RE.finditer(text):
        found.append((m.start(), QuestionToken.parent(m.group(1))))
        claimed.append(m.span())

    for m in _BARE_ID_RE.finditer(text):
        if _overlaps(m.span(), claimed):
            continue
        found.append((m.start(), QuestionToken.plain(m.group(0))))
        claimed.append(m.span())

    for m in _SPLIT_RE.finditer(text):
        if _overlaps(m.span(), claimed):
            continue
        piece = m.group(0).strip(_STRIP_CHARS)
        if piece:
            found.append((m.start(), token_from_ref(piece)))

    found.sort(key=lambda pair: pair[0])
    return [token for _, token in found]


def normalize_question_refs(raw: Any) -> List[QuestionToken]:
    """
    Normalize a reference list in any accepted shape.

    Args:
        raw: list/tuple of refs, JSON string, free-form string, or None

    Returns:
        Ordered tokens; empty for empty or unusable input.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return _from_list(list(raw))
    if isinstance(raw, QuestionToken):
        return [raw]
    if not isinstance(raw, str):
        return [token_from_ref(raw)]

    text = raw.strip()
    if not text:
        return []

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return _from_list(parsed)

    tokens = _from_text(text)
    if tokens:
        log.info("Normalized %d tokens from free-form reference text", len(tokens))
    return tokens
