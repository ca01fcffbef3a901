"""
Identity resolution for knowledge points.

Every list, set, cache and mutation in the core keys knowledge points by a
single opaque string, the effective ID. Resolution order, first match wins:

1. composite ID  -> "owner:sequence"
2. legacy ID     -> "42"
3. ancient ID    -> "7"
4. nothing       -> "fallback_" + stable hash of the correct phrase

The fallback hash must survive process restarts (guest points are compared
across launches), so it is derived from SHA-256 rather than ``hash()``.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable

from .errors import IdentityUnresolvable
from .models import CompositeKnowledgePointID, KnowledgePoint

FALLBACK_PREFIX = "fallback_"


def stable_hash(text: str) -> str:
    """Deterministic 16 hex digit digest of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def effective_id(point: KnowledgePoint) -> str:
    """Canonical string identity of ``point``. Never raises."""
    if point.composite_id is not None:
        return str(point.composite_id)
    if point.legacy_id is not None:
        return str(point.legacy_id)
    if point.ancient_id is not None:
        return str(point.ancient_id)
    return FALLBACK_PREFIX + stable_hash(point.correct_phrase)


def is_fallback_id(value: str) -> bool:
    return value.startswith(FALLBACK_PREFIX)


def has_identifier(point: KnowledgePoint) -> bool:
    return (
        point.composite_id is not None
        or point.legacy_id is not None
        or point.ancient_id is not None
    )


def require_identity(point: KnowledgePoint) -> str:
    """
    Resolve the effective ID, refusing records that cannot be told apart.

    A point with no identifier and a blank correct phrase would hash to the
    same fallback as every other such point, so write paths reject it.

    Raises:
        IdentityUnresolvable: If the point has neither identifier nor phrase
    """
    if not has_identifier(point) and not point.correct_phrase.strip():
        raise IdentityUnresolvable(
            f"Knowledge point in category {point.category!r} has no identifier and no correct phrase"
        )
    return effective_id(point)


def remote_target(point: KnowledgePoint) -> CompositeKnowledgePointID | int:
    """
    Address of ``point`` on the server: its composite ID, else a numeric ID.

    Raises:
        IdentityUnresolvable: If the point was never assigned a server identity
    """
    if point.composite_id is not None:
        return point.composite_id
    numeric = point.legacy_id if point.legacy_id is not None else point.ancient_id
    if numeric is None:
        raise IdentityUnresolvable(
            f"Knowledge point {effective_id(point)} has no server identity"
        )
    return numeric


def content_key(point: KnowledgePoint) -> tuple[str, str]:
    """Key the on-device store uses for points without a server identity."""
    return (point.category, point.correct_phrase)


def dedupe(points: Iterable[KnowledgePoint]) -> list[KnowledgePoint]:
    """Keep the first point for each effective ID, preserving order."""
    seen: set[str] = set()
    unique: list[KnowledgePoint] = []
    for point in points:
        key = effective_id(point)
        if key in seen:
            continue
        seen.add(key)
        unique.append(point)
    return unique
