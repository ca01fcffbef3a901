"""
Local Store - durable on-device persistence for guest knowledge points.

Guest points have no server identity, so the store keeps them as an ordered
collection of content records addressed by (category, correct_phrase).
Duplicate keys are not supported: saving an existing key replaces the record
in place, and removal deletes every match.

The same SQLite file also holds the offline cache of server snapshots and a
small key/value table for sync bookkeeping.

Writes are serialized through one lock (single writer, many readers) and
each write is a single transaction, so a cancelled background sync can never
leave a half-written row behind.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from linker.core.errors import GuestLimitReached, IdentityUnresolvable, LocalPersistenceFailure
from linker.core.identity import content_key, dedupe, effective_id
from linker.core.models import KnowledgePoint, Origin

from .models import Base, CachedKnowledgePointRecord, GuestKnowledgePointRecord, SyncStateRecord

LAST_SYNC_KEY = "last_knowledge_point_sync_date"


def _ensure_sqlite_parent(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return
    database = url.database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


class LocalStore:
    """SQLite-backed store for guest points, offline cache and sync state."""

    def __init__(self, database_url: str, max_points: int | None = None):
        """
        Open (and create if needed) the local database.

        Args:
            database_url: SQLAlchemy URL, normally ``sqlite:///path/to/file.db``
            max_points: Cap on guest points; None or 0 disables it
        """
        _ensure_sqlite_parent(database_url)
        connect_args: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        self.database_url = database_url
        self.max_points = max_points or None
        self._engine = create_engine(database_url, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self._engine, autocommit=False, autoflush=False)
        self._write_lock = threading.RLock()

        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            raise LocalPersistenceFailure(f"Could not initialize local store: {e}") from e
        logger.debug(f"Local store ready at {database_url}")

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Local store operation failed: {e}")
            raise LocalPersistenceFailure(str(e)) from e
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _decode(payload: str) -> KnowledgePoint | None:
        try:
            return KnowledgePoint.from_dict(json.loads(payload))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping unreadable local record: {e}")
            return None

    @staticmethod
    def _encode(point: KnowledgePoint) -> str:
        return json.dumps(point.to_dict(include_origin=True), ensure_ascii=False)

    # =========================================================================
    # Guest points
    # =========================================================================

    def save(self, point: KnowledgePoint) -> KnowledgePoint:
        """
        Insert or replace the guest record with the same (category, phrase).

        Args:
            point: Point to persist; stored with Origin.LOCAL

        Returns:
            The point as stored

        Raises:
            IdentityUnresolvable: If the correct phrase is blank
            GuestLimitReached: If a new key would exceed ``max_points``
            LocalPersistenceFailure: If the write failed (nothing changed)
        """
        if not point.correct_phrase.strip():
            raise IdentityUnresolvable(
                f"Guest point in category {point.category!r} has no correct phrase"
            )
        stored = point.with_changes(origin=Origin.LOCAL)
        category, phrase = content_key(stored)
        payload = self._encode(stored)

        with self._write_lock, self._session_scope() as session:
            rows = session.scalars(
                select(GuestKnowledgePointRecord)
                .where(
                    GuestKnowledgePointRecord.category == category,
                    GuestKnowledgePointRecord.correct_phrase == phrase,
                )
                .order_by(GuestKnowledgePointRecord.id)
            ).all()

            if rows:
                rows[0].payload = payload
                for duplicate in rows[1:]:
                    session.delete(duplicate)
            else:
                if self.max_points is not None:
                    current = session.scalar(select(func.count(GuestKnowledgePointRecord.id))) or 0
                    if current >= self.max_points:
                        raise GuestLimitReached(self.max_points)
                session.add(
                    GuestKnowledgePointRecord(
                        category=category, correct_phrase=phrase, payload=payload
                    )
                )

        logger.debug(f"Saved guest point {effective_id(stored)} ({category})")
        return stored

    def load_all(self) -> list[KnowledgePoint]:
        """All guest points in insertion order."""
        with self._session_scope() as session:
            payloads = session.scalars(
                select(GuestKnowledgePointRecord.payload).order_by(GuestKnowledgePointRecord.id)
            ).all()

        points = []
        for payload in payloads:
            point = self._decode(payload)
            if point is not None:
                points.append(point.with_changes(origin=Origin.LOCAL))
        return points

    def find(self, category: str, correct_phrase: str) -> KnowledgePoint | None:
        with self._session_scope() as session:
            payload = session.scalars(
                select(GuestKnowledgePointRecord.payload)
                .where(
                    GuestKnowledgePointRecord.category == category,
                    GuestKnowledgePointRecord.correct_phrase == correct_phrase,
                )
                .order_by(GuestKnowledgePointRecord.id)
                .limit(1)
            ).first()
        if payload is None:
            return None
        point = self._decode(payload)
        return point.with_changes(origin=Origin.LOCAL) if point else None

    def remove(self, predicate: Callable[[KnowledgePoint], bool]) -> int:
        """
        Delete every guest record whose point satisfies ``predicate``.

        Returns:
            Number of rows removed (zero is not an error)
        """
        with self._write_lock, self._session_scope() as session:
            rows = session.scalars(select(GuestKnowledgePointRecord)).all()
            removed = 0
            for row in rows:
                point = self._decode(row.payload)
                if point is not None and predicate(point):
                    session.delete(row)
                    removed += 1
        if removed:
            logger.debug(f"Removed {removed} guest record(s)")
        return removed

    def remove_matching(self, category: str, correct_phrase: str) -> int:
        """Delete all records with this (category, correct_phrase) key."""
        with self._write_lock, self._session_scope() as session:
            result = session.execute(
                delete(GuestKnowledgePointRecord).where(
                    GuestKnowledgePointRecord.category == category,
                    GuestKnowledgePointRecord.correct_phrase == correct_phrase,
                )
            )
            return result.rowcount or 0

    def count(self) -> int:
        with self._session_scope() as session:
            return session.scalar(select(func.count(GuestKnowledgePointRecord.id))) or 0

    def clear_guest_data(self) -> None:
        with self._write_lock, self._session_scope() as session:
            session.execute(delete(GuestKnowledgePointRecord))
        logger.info("Cleared guest knowledge points")

    def import_legacy_records(self, records: Iterable[dict[str, Any]]) -> int:
        """
        Import guest records exported by older clients.

        Records carrying the old notes sentinel or a negative temporary ID
        become local-only points; records without a correct phrase are skipped.

        Returns:
            Number of records imported
        """
        imported = 0
        for record in records:
            point = KnowledgePoint.from_dict(record)
            if not point.correct_phrase.strip():
                logger.warning(f"Skipping legacy guest record without correct phrase: {record}")
                continue
            self.save(point)
            imported += 1
        logger.info(f"Imported {imported} legacy guest record(s)")
        return imported

    # =========================================================================
    # Offline cache of server snapshots
    # =========================================================================

    def replace_cache(self, points: Iterable[KnowledgePoint], archived: bool) -> None:
        """Replace the cached active (or archived) server list."""
        unique = dedupe(points)
        with self._write_lock, self._session_scope() as session:
            session.execute(
                delete(CachedKnowledgePointRecord).where(
                    CachedKnowledgePointRecord.is_archived == archived
                )
            )
            for point in unique:
                session.add(
                    CachedKnowledgePointRecord(
                        effective_id=effective_id(point),
                        is_archived=archived,
                        payload=self._encode(point),
                    )
                )

    def load_cached(self, archived: bool) -> list[KnowledgePoint]:
        with self._session_scope() as session:
            payloads = session.scalars(
                select(CachedKnowledgePointRecord.payload)
                .where(CachedKnowledgePointRecord.is_archived == archived)
                .order_by(CachedKnowledgePointRecord.id)
            ).all()
        return [p for p in (self._decode(payload) for payload in payloads) if p is not None]

    # =========================================================================
    # Sync state
    # =========================================================================

    def get_state(self, key: str) -> str | None:
        with self._session_scope() as session:
            record = session.get(SyncStateRecord, key)
            return record.value if record else None

    def set_state(self, key: str, value: str | None) -> None:
        with self._write_lock, self._session_scope() as session:
            record = session.get(SyncStateRecord, key)
            if record is None:
                session.add(SyncStateRecord(key=key, value=value))
            else:
                record.value = value
