"""
Local store tables.

SQLAlchemy models for on-device persistence:
- Guest knowledge points (local-only, keyed by category + correct phrase)
- Cached remote snapshots for offline reading
- Small key/value table for sync bookkeeping
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class GuestKnowledgePointRecord(Base):
    """
    A knowledge point created without authentication.

    Rows keep insertion order through the integer primary key. The full
    point is stored as JSON in ``payload``; category and correct phrase are
    duplicated into columns because they form the lookup key.
    """

    __tablename__ = "guest_knowledge_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    correct_phrase: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_guest_points_key", "category", "correct_phrase"),
    )

    def __repr__(self) -> str:
        return f"<GuestKnowledgePointRecord {self.category!r} {self.correct_phrase!r}>"


class CachedKnowledgePointRecord(Base):
    """Last fetched server copy of a knowledge point, for offline reads."""

    __tablename__ = "cached_knowledge_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    effective_id: Mapped[str] = mapped_column(Text, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("effective_id", "is_archived", name="uq_cached_point"),
    )


class SyncStateRecord(Base):
    """Key/value bookkeeping (last sync time and similar)."""

    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text)
