"""
Exam Assembly & Grading Pipeline
exam_engine/

Steps:
1. Normalizer       — stored/submitted reference lists → QuestionToken list
2. Question Store   — batched primary lookup + static fallback dataset
3. Assembler        — fresh sampling or verbatim replay, passage expansion
4. Permutation      — per-question display order, forward and inverse maps
5. Grader           — display index → canonical index → score / pass
6. Reconciler       — one attempt per identity, idempotent upsert
"""
