"""Deterministic bucketing for percentage rollouts and variant selection.

Buckets are a pure function of (visitor key, salt): the same inputs map to
the same bucket in every process, on every host, across restarts.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Mapping

BUCKET_COUNT = 100


def _hash32(value: str) -> int:
    """First 32 bits of the SHA-256 digest of ``value``."""
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def compute_rollout_hash(visitor_key: str, salt: str) -> int:
    """Map a visitor to a rollout bucket in ``[0, 100)``.

    A visitor is inside a percentage rollout iff ``bucket < percentage``.
    """
    return _hash32(f"{salt}:{visitor_key}") % BUCKET_COUNT


def select_variant(visitor_key: str, salt: str, weights: Mapping[str, int]) -> str:
    """Pick a variant by relative weight.

    Weights need not sum to 100. Variants are walked in sorted name order so
    the assignment does not depend on mapping insertion order.

    Raises:
        ValueError: if ``weights`` is empty or its total is not positive.
    """
    total_weight = sum(weights.values()) if weights else 0
    if total_weight <= 0:
        raise ValueError("select_variant requires at least one positive weight")

    threshold = _hash32(f"{salt}:variant:{visitor_key}") % total_weight
    cumulative = 0
    names = sorted(weights)
    for name in names:
        cumulative += weights[name]
        if threshold < cumulative:
            return name

    return names[-1]


def generate_flag_salt() -> str:
    return secrets.token_hex(8)


__all__ = [
    "BUCKET_COUNT",
    "compute_rollout_hash",
    "select_variant",
    "generate_flag_salt",
]
