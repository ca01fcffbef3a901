"""
Knowledge point domain model.

A knowledge point records one mistake a learner made and its corrected form,
plus the progress state (mastery, counters, schedule) used to review it.

Identity comes in four shapes, oldest last:
- composite_id: server-assigned (user_id, sequence_id) pair
- legacy_id: global integer from the v1 API
- ancient_id: the ``id`` field of the very first API
- none: guest points created on-device before login

Origin replaces the old "stored locally" notes sentinel as the signal that a
point has not been promoted to the server yet.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

# Notes value written by older clients for on-device points ("stored locally").
LOCAL_ONLY_SENTINEL = "本地儲存"


class Origin(str, Enum):
    """Where the authoritative copy of a knowledge point lives."""

    LOCAL = "local"  # On-device only, pending promotion
    REMOTE = "remote"  # Server owns it


@dataclass(frozen=True)
class CompositeKnowledgePointID:
    """Server-assigned identity, unique per (owner, sequence)."""

    owner_id: int
    sequence_id: int

    def __str__(self) -> str:
        return f"{self.owner_id}:{self.sequence_id}"

    @property
    def string_representation(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, int]:
        return {"user_id": self.owner_id, "sequence_id": self.sequence_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompositeKnowledgePointID:
        owner = data.get("user_id", data.get("owner_id"))
        return cls(owner_id=int(owner), sequence_id=int(data["sequence_id"]))

    @classmethod
    def parse(cls, value: str) -> CompositeKnowledgePointID:
        """
        Parse the canonical ``"owner:sequence"`` form.

        Raises:
            ValueError: If the string is not two colon-separated integers
        """
        owner, sep, sequence = value.partition(":")
        if not sep:
            raise ValueError(f"Not a composite knowledge point ID: {value!r}")
        return cls(owner_id=int(owner), sequence_id=int(sequence))

    @classmethod
    def from_legacy_global_id(cls, global_id: int) -> CompositeKnowledgePointID:
        """Map a pre-migration global ID; every such point belonged to user 1."""
        return cls(owner_id=1, sequence_id=global_id)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 date or datetime, treating naive values as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class KnowledgePoint:
    """
    One tracked mistake and its correction.

    Instances are immutable; every state change produces a new copy via
    ``dataclasses.replace`` so cached snapshots can be restored on rollback.
    """

    category: str
    subcategory: str
    correct_phrase: str

    # Identity
    composite_id: CompositeKnowledgePointID | None = None
    legacy_id: int | None = None
    ancient_id: int | None = None

    # Content
    explanation: str | None = None
    user_context_sentence: str | None = None
    incorrect_phrase_in_context: str | None = None
    key_point_summary: str | None = None

    # Progress (mastery on a 0-5 scale)
    mastery_level: float = 0.0
    mistake_count: int = 0
    correct_count: int = 0
    consecutive_correct: int = 0
    next_review_date: datetime | None = None
    last_ai_review_date: datetime | None = None
    ai_review_notes: str | None = None

    # Lifecycle
    is_archived: bool = False
    updated_at: datetime | None = None
    origin: Origin = Origin.LOCAL

    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_local_only(self) -> bool:
        return self.origin is Origin.LOCAL

    @property
    def numeric_id(self) -> int | None:
        """Numeric ID for backward compatible server calls."""
        if self.composite_id is not None:
            return self.composite_id.sequence_id
        if self.legacy_id is not None:
            return self.legacy_id
        return self.ancient_id

    def with_changes(self, **changes: Any) -> KnowledgePoint:
        return replace(self, **changes)

    def promoted(self, composite_id: CompositeKnowledgePointID) -> KnowledgePoint:
        """Copy of this point adopted by the server under ``composite_id``."""
        notes = None if self.ai_review_notes == LOCAL_ONLY_SENTINEL else self.ai_review_notes
        return replace(
            self,
            composite_id=composite_id,
            origin=Origin.REMOTE,
            ai_review_notes=notes,
        )

    def to_dict(self, include_origin: bool = False) -> dict[str, Any]:
        """Convert to the snake_case wire format."""
        data: dict[str, Any] = {
            "composite_id": self.composite_id.to_dict() if self.composite_id else None,
            "legacy_id": self.legacy_id,
            "id": self.ancient_id,
            "category": self.category,
            "subcategory": self.subcategory,
            "correct_phrase": self.correct_phrase,
            "explanation": self.explanation,
            "user_context_sentence": self.user_context_sentence,
            "incorrect_phrase_in_context": self.incorrect_phrase_in_context,
            "key_point_summary": self.key_point_summary,
            "mastery_level": self.mastery_level,
            "mistake_count": self.mistake_count,
            "correct_count": self.correct_count,
            "consecutive_correct": self.consecutive_correct,
            "next_review_date": format_datetime(self.next_review_date),
            "last_ai_review_date": format_datetime(self.last_ai_review_date),
            "ai_review_notes": self.ai_review_notes,
            "is_archived": self.is_archived,
            "updated_at": format_datetime(self.updated_at),
        }
        if include_origin:
            data["origin"] = self.origin.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KnowledgePoint:
        """
        Parse a knowledge point from server, cache or legacy guest payloads.

        Legacy guest records are recognised by the notes sentinel or by a
        negative ``id`` (old temporary local IDs); both become Origin.LOCAL
        with the marker stripped.
        """
        raw_composite = data.get("composite_id")
        composite: CompositeKnowledgePointID | None = None
        if isinstance(raw_composite, dict):
            composite = CompositeKnowledgePointID.from_dict(raw_composite)
        elif isinstance(raw_composite, str) and raw_composite:
            composite = CompositeKnowledgePointID.parse(raw_composite)

        legacy_id = _optional_int(data.get("legacy_id"))
        # Very old guest records used UUID strings for "id"; those carry no identity.
        raw_id = data.get("id")
        ancient_id = None if isinstance(raw_id, str) else _optional_int(raw_id)

        notes = data.get("ai_review_notes")
        local_marker = notes == LOCAL_ONLY_SENTINEL or (ancient_id is not None and ancient_id < 0)
        if ancient_id is not None and ancient_id < 0:
            ancient_id = None
        if notes == LOCAL_ONLY_SENTINEL:
            notes = None

        if data.get("origin"):
            origin = Origin(data["origin"])
        elif local_marker:
            origin = Origin.LOCAL
        elif composite is not None or legacy_id is not None or ancient_id is not None:
            origin = Origin.REMOTE
        else:
            origin = Origin.LOCAL

        known = {
            "composite_id", "legacy_id", "id", "category", "subcategory",
            "correct_phrase", "explanation", "user_context_sentence",
            "incorrect_phrase_in_context", "key_point_summary", "mastery_level",
            "mistake_count", "correct_count", "consecutive_correct",
            "next_review_date", "last_ai_review_date", "ai_review_notes",
            "is_archived", "updated_at", "origin",
        }

        return cls(
            category=data.get("category") or "",
            subcategory=data.get("subcategory") or "",
            correct_phrase=data.get("correct_phrase") or "",
            composite_id=composite,
            legacy_id=legacy_id,
            ancient_id=ancient_id,
            explanation=data.get("explanation"),
            user_context_sentence=data.get("user_context_sentence"),
            incorrect_phrase_in_context=data.get("incorrect_phrase_in_context"),
            key_point_summary=data.get("key_point_summary"),
            mastery_level=float(data.get("mastery_level") or 0.0),
            mistake_count=int(data.get("mistake_count") or 0),
            correct_count=int(data.get("correct_count") or 0),
            consecutive_correct=int(data.get("consecutive_correct") or 0),
            next_review_date=parse_datetime(data.get("next_review_date")),
            last_ai_review_date=parse_datetime(data.get("last_ai_review_date")),
            ai_review_notes=notes,
            is_archived=bool(data.get("is_archived") or False),
            updated_at=parse_datetime(data.get("updated_at")),
            origin=origin,
            extra={k: v for k, v in data.items() if k not in known},
        )
