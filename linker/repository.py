"""
Knowledge Point Repository

Single entry point for reading and mutating knowledge points, whichever
store currently owns them. Callers address points by effective ID only;
routing to the local or remote store follows the point's origin.

Read model:
    Remote lists are cached in memory for ``cache_ttl_seconds`` and mirrored
    into the local store so the last snapshot stays readable offline. Local
    guest points are merged in, and a remote entry always wins over a local
    one with the same identity.

Mutations:
    One in-flight mutation per effective ID. The in-memory view is updated
    optimistically and restored if the owning store refuses the change.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from linker.core.errors import (
    ActionRequiresSync,
    IdentityUnresolvable,
    KnowledgePointNotFound,
    LocalPersistenceFailure,
    RemoteError,
)
from linker.core.identity import content_key, effective_id, remote_target, require_identity
from linker.core.mastery import MasteryEngine, MasteryTier, Severity, clamp_mastery
from linker.core.models import KnowledgePoint, Origin, parse_datetime
from linker.db.local_store import LocalStore
from linker.sync.platform_client import RemoteStore, RemoteTarget

Views = dict[bool, list[KnowledgePoint]]


def _replace(views: Views, point_id: str, updated: KnowledgePoint | None) -> None:
    """Drop ``point_id`` from every list and put ``updated`` where it belongs."""
    position: int | None = None
    for archived, points in views.items():
        for i, point in enumerate(points):
            if effective_id(point) == point_id:
                if updated is not None and archived == updated.is_archived:
                    position = i
                del points[i]
                break

    if updated is None or updated.is_archived not in views:
        return
    target = views[updated.is_archived]
    if position is None:
        target.append(updated)
    else:
        target.insert(position, updated)


class KnowledgePointRepository:
    """
    Façade over the local store, remote store and mastery engine.

    Usage:
        repo = KnowledgePointRepository(local_store, client, MasteryEngine())
        points = await repo.fetch_active()
        await repo.update_mastery(effective_id(points[0]), was_correct=True)
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        mastery_engine: MasteryEngine | None = None,
        cache_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._local = local_store
        self._remote = remote_store
        self.engine = mastery_engine or MasteryEngine()
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock

        self._views: Views = {}
        self._remote_cache: dict[bool, tuple[float, list[KnowledgePoint]]] = {}
        # Entries vanish once no caller holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # =========================================================================
    # Cache management
    # =========================================================================

    def mutation_lock(self, point_id: str) -> asyncio.Lock:
        """Lock serializing mutations of one effective ID."""
        lock = self._locks.get(point_id)
        if lock is None:
            lock = self._locks[point_id] = asyncio.Lock()
        return lock

    def invalidate(self) -> None:
        """Forget every cached list; the next read goes to the stores."""
        self._views.clear()
        self._remote_cache.clear()
        logger.debug("Knowledge point cache invalidated")

    def on_reconciled(self, result: Any) -> None:
        """Reconciliation listener: promoted points change identity."""
        self.invalidate()

    # =========================================================================
    # Reads
    # =========================================================================

    async def fetch_active(self, force: bool = False) -> list[KnowledgePoint]:
        return await self._fetch(archived=False, force=force)

    async def fetch_archived(self, force: bool = False) -> list[KnowledgePoint]:
        return await self._fetch(archived=True, force=force)

    async def _fetch(self, archived: bool, force: bool) -> list[KnowledgePoint]:
        try:
            local = [p for p in self._local.load_all() if p.is_archived == archived]
        except LocalPersistenceFailure as e:
            logger.error(f"Could not read guest points: {e}")
            local = []

        remote = await self._load_remote(archived, force) if self._remote.authenticated else []
        view = self._merge(remote, local)
        self._views[archived] = view
        return list(view)

    async def _load_remote(self, archived: bool, force: bool) -> list[KnowledgePoint]:
        cached = self._remote_cache.get(archived)
        if cached is not None and not force:
            fetched_at, points = cached
            if self._clock() - fetched_at < self.cache_ttl_seconds:
                return list(points)

        try:
            if archived:
                points = await self._remote.fetch_archived()
            else:
                points = await self._remote.fetch_active()
        except RemoteError as e:
            kind = "archived" if archived else "active"
            logger.warning(f"Remote store unavailable, using cached {kind} points: {e}")
            if cached is not None:
                return list(cached[1])
            try:
                return self._local.load_cached(archived)
            except LocalPersistenceFailure as cache_error:
                logger.error(f"Offline cache unreadable: {cache_error}")
                return []

        self._remote_cache[archived] = (self._clock(), list(points))
        try:
            self._local.replace_cache(points, archived)
        except LocalPersistenceFailure as e:
            logger.warning(f"Could not refresh offline cache: {e}")
        return points

    @staticmethod
    def _merge(
        remote: Iterable[KnowledgePoint], local: Iterable[KnowledgePoint]
    ) -> list[KnowledgePoint]:
        merged: list[KnowledgePoint] = []
        seen_ids: set[str] = set()
        seen_content: set[tuple[str, str]] = set()

        for point in list(remote) + list(local):
            try:
                point_id = require_identity(point)
            except IdentityUnresolvable as e:
                logger.warning(f"Excluding knowledge point: {e}")
                continue
            key = content_key(point)
            if point_id in seen_ids:
                if point.is_local_only:
                    logger.warning(
                        f"Hiding guest point {point.category!r}/{point.correct_phrase!r}: "
                        f"effective ID {point_id} already listed"
                    )
                continue
            # A guest copy of something the server already holds is hidden
            # until reconciliation adopts it.
            if point.is_local_only and key in seen_content:
                logger.debug(f"Hiding guest copy {point_id} of a server point")
                continue
            seen_ids.add(point_id)
            if not point.is_local_only:
                seen_content.add(key)
            merged.append(point)
        return merged

    async def _resolve(self, point_id: str) -> KnowledgePoint:
        if False not in self._views:
            await self.fetch_active()
        if True not in self._views:
            await self.fetch_archived()

        for points in self._views.values():
            for point in points:
                if effective_id(point) != point_id:
                    continue
                if not point.is_local_only:
                    return point
                current = self._local.find(*content_key(point))
                if current is None:
                    # Promoted or deleted since the view was built.
                    _replace(self._views, point_id, None)
                    raise KnowledgePointNotFound(point_id)
                return current
        raise KnowledgePointNotFound(point_id)

    async def get(self, point_id: str) -> KnowledgePoint:
        """
        Look up one point by effective ID.

        Raises:
            KnowledgePointNotFound: If no store holds the point
        """
        return await self._resolve(point_id)

    def query(
        self,
        points: Iterable[KnowledgePoint],
        tier: MasteryTier | None = None,
        category: str | None = None,
        due_only: bool = False,
        now: datetime | None = None,
    ) -> list[KnowledgePoint]:
        """Filter a list by tier, category and due state; weakest first."""
        if now is None:
            now = datetime.now(UTC)
        selected = []
        for point in points:
            if tier is not None and MasteryTier.from_level(point.mastery_level) is not tier:
                continue
            if category is not None and point.category != category:
                continue
            if due_only and not self.engine.is_due(point, now):
                continue
            selected.append(point)
        return sorted(selected, key=lambda p: (clamp_mastery(p.mastery_level), p.category))

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _commit(
        self,
        point: KnowledgePoint,
        updated: KnowledgePoint | None,
        remote_call: Callable[[RemoteTarget], Awaitable[Any]],
    ) -> None:
        """Apply ``updated`` (None = delete) optimistically, then persist it."""
        point_id = effective_id(point)
        snapshot = {archived: list(points) for archived, points in self._views.items()}
        _replace(self._views, point_id, updated)

        try:
            if point.is_local_only:
                if updated is None:
                    self._local.remove_matching(*content_key(point))
                else:
                    self._local.save(updated)
            else:
                await remote_call(remote_target(point))
        except Exception as e:  # Intentionally broad - restore the view before re-raising
            self._views = snapshot
            logger.warning(f"Mutation of {point_id} failed, view restored: {e}")
            raise

        if not point.is_local_only:
            fresh = {archived: points for archived, (_, points) in self._remote_cache.items()}
            _replace(fresh, point_id, updated)

    async def archive(self, point_id: str) -> KnowledgePoint:
        """Archive a point; archiving an archived point is a no-op."""
        async with self.mutation_lock(point_id):
            point = await self._resolve(point_id)
            if point.is_archived:
                return point
            updated = point.with_changes(is_archived=True, updated_at=datetime.now(UTC))
            await self._commit(point, updated, self._remote.archive)
            logger.info(f"Archived knowledge point {point_id}")
            return updated

    async def unarchive(self, point_id: str) -> KnowledgePoint:
        async with self.mutation_lock(point_id):
            point = await self._resolve(point_id)
            if not point.is_archived:
                return point
            updated = point.with_changes(is_archived=False, updated_at=datetime.now(UTC))
            await self._commit(point, updated, self._remote.unarchive)
            logger.info(f"Unarchived knowledge point {point_id}")
            return updated

    async def delete(self, point_id: str) -> None:
        async with self.mutation_lock(point_id):
            point = await self._resolve(point_id)
            await self._commit(point, None, self._remote.delete)
            logger.info(f"Deleted knowledge point {point_id}")

    async def update_mastery(
        self,
        point_id: str,
        was_correct: bool,
        severity: Severity | str | None = None,
        now: datetime | None = None,
    ) -> KnowledgePoint:
        """
        Record one answer for a point and persist the new progress.

        Args:
            point_id: Effective ID
            was_correct: Whether the learner answered correctly
            severity: Mistake severity (incorrect answers only)
            now: Evaluation time, injectable for tests

        Returns:
            The updated point

        Raises:
            KnowledgePointNotFound: If the point was deleted meanwhile
            RemoteError / LocalPersistenceFailure: Store refused the update
        """
        async with self.mutation_lock(point_id):
            point = await self._resolve(point_id)
            updated = self.engine.apply_outcome(point, was_correct, severity, now=now)

            async def push(target: RemoteTarget) -> None:
                await self._remote.update_mastery(target, updated)

            await self._commit(point, updated, push)
            logger.debug(
                f"Mastery of {point_id}: {point.mastery_level:.2f} -> {updated.mastery_level:.2f}"
            )
            return updated

    submit_outcome = update_mastery

    async def create(self, point: KnowledgePoint) -> KnowledgePoint:
        """
        Create a knowledge point in the store that fits the session.

        Authenticated sessions create it on the server; guests keep it on
        the device (subject to the guest cap).

        Raises:
            IdentityUnresolvable: If the correct phrase is blank
            GuestLimitReached: Guest cap exceeded
        """
        if not point.correct_phrase.strip():
            raise IdentityUnresolvable(
                f"Knowledge point in category {point.category!r} has no correct phrase"
            )
        now = datetime.now(UTC)
        fresh = point.with_changes(updated_at=point.updated_at or now)

        if self._remote.authenticated:
            composite = await self._remote.create(fresh)
            created = fresh.promoted(composite)
            for archived, (_, points) in self._remote_cache.items():
                if archived == created.is_archived:
                    points.append(created)
        else:
            created = self._local.save(
                fresh.with_changes(
                    composite_id=None, legacy_id=None, ancient_id=None, origin=Origin.LOCAL
                )
            )

        _replace(self._views, effective_id(created), created)
        logger.info(f"Created knowledge point {effective_id(created)} ({created.origin.value})")
        return created

    async def batch_archive(self, point_ids: Iterable[str]) -> list[KnowledgePoint]:
        """
        Archive many points; server points go out in one batch request.

        Returns:
            The archived points, in the order given
        """
        ids = list(dict.fromkeys(point_ids))
        async with AsyncExitStack() as stack:
            # Sorted acquisition keeps two overlapping batches from deadlocking.
            for point_id in sorted(ids):
                await stack.enter_async_context(self.mutation_lock(point_id))

            resolved = [await self._resolve(point_id) for point_id in ids]
            now = datetime.now(UTC)
            results: dict[str, KnowledgePoint] = {}
            remote_points: list[KnowledgePoint] = []

            for point_id, point in zip(ids, resolved):
                if point.is_archived:
                    results[point_id] = point
                elif point.is_local_only:
                    updated = point.with_changes(is_archived=True, updated_at=now)
                    await self._commit(point, updated, self._remote.archive)
                    results[point_id] = updated
                else:
                    remote_points.append(point)

            if remote_points:
                snapshot = {archived: list(points) for archived, points in self._views.items()}
                updates = [p.with_changes(is_archived=True, updated_at=now) for p in remote_points]
                for point, updated in zip(remote_points, updates):
                    _replace(self._views, effective_id(point), updated)
                try:
                    await self._remote.batch_action(
                        "archive", [remote_target(p) for p in remote_points]
                    )
                except Exception as e:  # Intentionally broad - restore the view before re-raising
                    self._views = snapshot
                    logger.warning(f"Batch archive failed, view restored: {e}")
                    raise
                fresh = {archived: points for archived, (_, points) in self._remote_cache.items()}
                for point, updated in zip(remote_points, updates):
                    _replace(fresh, effective_id(point), updated)
                    results[effective_id(point)] = updated

        logger.info(f"Batch archived {len(ids)} knowledge point(s)")
        return [results[point_id] for point_id in ids]

    async def request_ai_review(
        self, point_id: str, model_name: str | None = None
    ) -> dict[str, Any]:
        """
        Ask the backend for an AI review of a point.

        Raises:
            ActionRequiresSync: The point has not been promoted yet
        """
        async with self.mutation_lock(point_id):
            point = await self._resolve(point_id)
            if point.is_local_only:
                raise ActionRequiresSync(
                    f"Knowledge point {point_id} must be synced before requesting an AI review"
                )
            review = await self._remote.ai_review(remote_target(point), model_name)

            notes = review.get("ai_review_notes") or review.get("review")
            reviewed_at = parse_datetime(review.get("last_ai_review_date")) or datetime.now(UTC)
            updated = point.with_changes(
                ai_review_notes=notes if isinstance(notes, str) else point.ai_review_notes,
                last_ai_review_date=reviewed_at,
            )
            _replace(self._views, point_id, updated)
            return review
