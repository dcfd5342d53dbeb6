"""
Redis client for quiz answer autosave.
Stores display-index answers in a Redis hash per exam while it is being taken.
"""

import os
from typing import Dict, Optional

import redis

# ─── Config ────────────────────────────────────────────────────────────────────

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


# ─── Key helpers ───────────────────────────────────────────────────────────────

def _exam_key(exam_id: str) -> str:
    return f"quiz_exam:{exam_id}:answers"


# ─── Autosave operations ──────────────────────────────────────────────────────

def save_answer(exam_id: str, question_id: str, display_index: int, ttl_minutes: int = 120):
    """Save a single answer to Redis. TTL ensures cleanup even if submit never happens."""
    r = get_redis()
    key = _exam_key(exam_id)
    r.hset(key, question_id, str(display_index))
    # Reset TTL on every save
    r.expire(key, ttl_minutes * 60)


def get_all_answers(exam_id: str) -> Dict[str, int]:
    """Get all saved answers for an exam. Returns {question_id: display_index}."""
    r = get_redis()
    raw = r.hgetall(_exam_key(exam_id))
    answers = {}
    for qid, value in raw.items():
        try:
            answers[qid] = int(value)
        except (TypeError, ValueError):
            continue
    return answers


def clear_answers(exam_id: str):
    """Delete all saved answers for an exam (after submit)."""
    get_redis().delete(_exam_key(exam_id))
