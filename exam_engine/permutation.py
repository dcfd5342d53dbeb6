"""
Step 4 — Choice Permutation Engine

A permutation P maps display position -> canonical position:
    displayed[k] = canonical[P[k]]
P is generated once per question per exam instance and stored verbatim.
"""

import random
from typing import List, Optional, Sequence, TypeVar

T = TypeVar("T")


def generate_permutation(n: int, rng: Optional[random.Random] = None) -> List[int]:
    """Uniform random permutation of 0..n-1 (identity for n < 2)."""
    order = list(range(max(0, n)))
    if n < 2:
        return order
    (rng or random).shuffle(order)
    return order


def is_valid_permutation(perm: Sequence[int], n: int) -> bool:
    """True iff perm is a bijection on 0..n-1."""
    if perm is None or len(perm) != n:
        return False
    try:
        return sorted(int(p) for p in perm) == list(range(n))
    except (TypeError, ValueError):
        return False


def effective_permutation(perm: Optional[Sequence[int]], n: int) -> List[int]:
    """
    The permutation to apply for an n-choice question: the stored one when it
    fits, otherwise identity (so content edits never crash a served exam).
    """
    if perm is not None and is_valid_permutation(perm, n):
        return [int(p) for p in perm]
    return list(range(n))


def apply_permutation(canonical: Sequence[T], perm: Optional[Sequence[int]]) -> List[T]:
    """Forward map: canonical choices -> display order."""
    order = effective_permutation(perm, len(canonical))
    return [canonical[p] for p in order]


def invert_permutation(perm: Sequence[int]) -> List[int]:
    """Inverse map: inv[c] is the display slot holding canonical choice c."""
    inverse = [0] * len(perm)
    for display_idx, canonical_idx in enumerate(perm):
        inverse[canonical_idx] = display_idx
    return inverse


def display_to_canonical(display_index: Optional[int], perm: Sequence[int]) -> Optional[int]:
    """Canonical index for a submitted display index; None when out of range."""
    if display_index is None or not 0 <= display_index < len(perm):
        return None
    return perm[display_index]


def canonical_to_display(canonical_index: Optional[int], perm: Sequence[int]) -> Optional[int]:
    if canonical_index is None or not 0 <= canonical_index < len(perm):
        return None
    return invert_permutation(perm)[canonical_index]
