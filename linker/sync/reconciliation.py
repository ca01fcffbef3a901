"""
Reconciliation Service - folds guest knowledge points into the remote store.

Core responsibilities:
- Promote local-only points to the server and adopt the composite ID it assigns
- Adopt (instead of re-creating) points the server already holds
- Keep every local record whose promotion failed, and report it for retry
- Run on login, on foreground after a long background stint, on explicit
  refresh and on an hourly auto-sync check, as a cancellable background task

Promotion is the only operation in the core that is retried automatically,
and it only retries on the next trigger.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from loguru import logger

from linker.core.errors import (
    IdentityUnresolvable,
    LocalPersistenceFailure,
    RemoteError,
    RemoteUnreachable,
)
from linker.core.identity import content_key, effective_id, remote_target, require_identity
from linker.core.models import KnowledgePoint, Origin, parse_datetime
from linker.db.local_store import LAST_SYNC_KEY, LocalStore
from linker.sync.platform_client import RemoteStore

LockProvider = Callable[[str], asyncio.Lock]


class SyncTrigger(str, Enum):
    """Why a reconciliation run started."""

    LOGIN = "login"
    FOREGROUND = "foreground"
    REFRESH = "refresh"
    AUTO = "auto"


@dataclass
class Conflict:
    """A local point that could not be promoted on this run."""

    point: KnowledgePoint
    effective_id: str
    reason: str
    retryable: bool = True


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""

    promoted: list[KnowledgePoint] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    skipped: list[KnowledgePoint] = field(default_factory=list)
    passed_through: list[KnowledgePoint] = field(default_factory=list)
    trigger: SyncTrigger | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.conflicts

    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "trigger": self.trigger.value if self.trigger else None,
            "promoted": [effective_id(p) for p in self.promoted],
            "conflicts": [
                {"effective_id": c.effective_id, "reason": c.reason, "retryable": c.retryable}
                for c in self.conflicts[:10]  # Limit to 10 errors
            ],
            "skipped": len(self.skipped),
            "passed_through": len(self.passed_through),
            "duration_seconds": round(self.duration_seconds(), 2),
        }


@dataclass
class SyncStatus:
    """Snapshot of reconciliation state for display."""

    is_syncing: bool
    pending_count: int
    last_sync: datetime | None
    errors: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if self.is_syncing:
            return "Syncing..."
        if self.pending_count > 0:
            noun = "point" if self.pending_count == 1 else "points"
            return f"{self.pending_count} knowledge {noun} waiting to sync"
        if self.last_sync is not None:
            return f"Last synced {self.last_sync:%Y-%m-%d %H:%M} UTC"
        return "All knowledge points synced"


def _progress_key(point: KnowledgePoint) -> tuple[Any, ...]:
    return (
        point.mastery_level,
        point.mistake_count,
        point.correct_count,
        point.next_review_date,
    )


def merge_points(remote: KnowledgePoint, local: KnowledgePoint) -> KnowledgePoint:
    """
    Merge a local copy into the server copy of the same logical point.

    Scalars follow last-writer-wins on ``updated_at`` (ties go to the server).
    Counters take the larger value, so adopting a point whose promotion
    already carried the local counters never counts an answer twice.
    Identity and lifecycle always come from the server copy.
    """
    local_newer = local.updated_at is not None and (
        remote.updated_at is None or local.updated_at > remote.updated_at
    )
    newer = local if local_newer else remote
    return remote.with_changes(
        mastery_level=newer.mastery_level,
        consecutive_correct=newer.consecutive_correct,
        next_review_date=newer.next_review_date,
        updated_at=newer.updated_at,
        mistake_count=max(remote.mistake_count, local.mistake_count),
        correct_count=max(remote.correct_count, local.correct_count),
        explanation=remote.explanation or local.explanation,
        user_context_sentence=remote.user_context_sentence or local.user_context_sentence,
        incorrect_phrase_in_context=(
            remote.incorrect_phrase_in_context or local.incorrect_phrase_in_context
        ),
        key_point_summary=remote.key_point_summary or local.key_point_summary,
        origin=Origin.REMOTE,
    )


class ReconciliationService:
    """
    Orchestrates promotion of guest points into the remote store.

    Features:
    - Idempotent promotion (stale snapshots never create a second record)
    - Failed promotions stay local and are reported as retryable conflicts
    - One run at a time; runs can be cancelled (e.g. on logout)
    - Listener callbacks after each run (cache invalidation)
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        promotion_delay_seconds: float = 0.5,
        auto_sync_interval_seconds: int = 3600,
        foreground_threshold_seconds: int = 300,
        mutation_lock: LockProvider | None = None,
    ):
        """
        Initialize reconciliation.

        Args:
            local_store: On-device store holding guest points
            remote_store: Authoritative server store
            promotion_delay_seconds: Pause between two promotion requests
            auto_sync_interval_seconds: Minimum gap between automatic runs
            foreground_threshold_seconds: Background time that triggers a run
            mutation_lock: Per effective ID lock shared with the repository
        """
        self._local = local_store
        self._remote = remote_store
        self.promotion_delay_seconds = promotion_delay_seconds
        self.auto_sync_interval_seconds = auto_sync_interval_seconds
        self.foreground_threshold_seconds = foreground_threshold_seconds
        self._mutation_lock = mutation_lock
        # Server copies created for guest points whose local removal failed.
        self._unsettled: dict[tuple[str, str], KnowledgePoint] = {}

        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task[ReconcileResult | None] | None = None
        self._syncing = False
        self._errors: list[str] = []
        self._listeners: list[Callable[[ReconcileResult], None]] = []
        self._last_sync = self._load_last_sync()

    # =========================================================================
    # State
    # =========================================================================

    def _load_last_sync(self) -> datetime | None:
        try:
            return parse_datetime(self._local.get_state(LAST_SYNC_KEY))
        except (LocalPersistenceFailure, ValueError) as e:
            logger.warning(f"Could not read last sync time: {e}")
            return None

    def _record_last_sync(self, when: datetime) -> None:
        self._last_sync = when
        try:
            self._local.set_state(LAST_SYNC_KEY, when.isoformat())
        except LocalPersistenceFailure as e:
            logger.warning(f"Could not persist last sync time: {e}")

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def pending_count(self) -> int:
        try:
            return self._local.count()
        except LocalPersistenceFailure:
            return 0

    def status(self) -> SyncStatus:
        return SyncStatus(
            is_syncing=self._syncing,
            pending_count=self.pending_count(),
            last_sync=self._last_sync,
            errors=list(self._errors),
        )

    def add_listener(self, callback: Callable[[ReconcileResult], None]) -> None:
        self._listeners.append(callback)

    # =========================================================================
    # Core algorithm
    # =========================================================================

    async def reconcile(
        self,
        local_points: Iterable[KnowledgePoint],
        remote_points: Iterable[KnowledgePoint],
        trigger: SyncTrigger | None = None,
    ) -> ReconcileResult:
        """
        Promote every local-only point in ``local_points``.

        Args:
            local_points: Snapshot of the local side (may include cached
                server points, which pass through untouched)
            remote_points: Snapshot of the server side, used to adopt points
                the server already holds instead of creating them again
            trigger: Why this run started (for logging)

        Returns:
            ReconcileResult with promoted points and conflicts
        """
        async with self._run_lock:
            result = ReconcileResult(trigger=trigger)
            remote_by_key = {
                content_key(p): p for p in remote_points if p.origin is Origin.REMOTE
            }

            first = True
            for point in local_points:
                if not point.is_local_only:
                    result.passed_through.append(point)
                    continue

                try:
                    eid = require_identity(point)
                except IdentityUnresolvable as e:
                    logger.error(f"Cannot promote point without identity: {e}")
                    result.conflicts.append(
                        Conflict(point, effective_id(point), str(e), retryable=False)
                    )
                    continue

                if not first and self.promotion_delay_seconds > 0:
                    await asyncio.sleep(self.promotion_delay_seconds)
                first = False

                if self._mutation_lock is not None:
                    async with self._mutation_lock(eid):
                        await self._promote_one(point, eid, remote_by_key, result)
                else:
                    await self._promote_one(point, eid, remote_by_key, result)

            result.finished_at = datetime.now(UTC)
            logger.info(
                f"Reconcile complete: {len(result.promoted)} promoted, "
                f"{len(result.conflicts)} conflicts, {len(result.skipped)} skipped"
            )
            return result

    async def _promote_one(
        self,
        point: KnowledgePoint,
        eid: str,
        remote_by_key: dict[tuple[str, str], KnowledgePoint],
        result: ReconcileResult,
    ) -> None:
        key = content_key(point)
        try:
            current = self._local.find(*key)
        except LocalPersistenceFailure as e:
            result.conflicts.append(Conflict(point, eid, f"Local store unreadable: {e}"))
            return

        if current is None:
            # Promoted by an earlier run working from the same snapshot.
            self._unsettled.pop(key, None)
            logger.debug(f"Skipping {eid}: no longer in local store")
            result.skipped.append(point)
            return

        counterpart = remote_by_key.get(key) or self._unsettled.get(key)
        try:
            if counterpart is not None:
                promoted = await self._adopt(current, counterpart)
            else:
                composite = await self._remote.create(current)
                promoted = current.promoted(composite)
                logger.info(f"Promoted {eid} -> {composite}")
        except RemoteError as e:
            retry = "queued for retry" if isinstance(e, RemoteUnreachable) else "rejected"
            logger.warning(f"Promotion of {eid} failed ({retry}): {e}")
            result.conflicts.append(Conflict(point, eid, str(e)))
            return
        except IdentityUnresolvable as e:
            result.conflicts.append(Conflict(point, eid, str(e), retryable=False))
            return

        remote_by_key[key] = promoted
        try:
            self._local.remove_matching(*key)
        except LocalPersistenceFailure as e:
            # The server copy exists; the next run adopts it instead of creating another.
            self._unsettled[key] = promoted
            result.conflicts.append(
                Conflict(point, eid, f"Promoted but local copy not removed: {e}")
            )
            return
        self._unsettled.pop(key, None)
        result.promoted.append(promoted)

    async def _adopt(self, local: KnowledgePoint, remote: KnowledgePoint) -> KnowledgePoint:
        merged = merge_points(remote, local)
        if _progress_key(merged) != _progress_key(remote):
            await self._remote.update_mastery(remote_target(remote), merged)
        logger.info(f"Adopted existing server point {effective_id(remote)} for local {effective_id(local)}")
        return merged

    # =========================================================================
    # Triggers
    # =========================================================================

    async def sync_pending(self, trigger: SyncTrigger = SyncTrigger.REFRESH) -> ReconcileResult | None:
        """
        Load both sides and reconcile them.

        Returns:
            The run result, or None when skipped (already syncing, or guest)
        """
        if self._syncing:
            logger.debug("Reconcile already running; skipping")
            return None
        if not self._remote.authenticated:
            logger.info("Cannot sync: user not authenticated")
            return None

        self._syncing = True
        try:
            try:
                local_points = self._local.load_all()
            except LocalPersistenceFailure as e:
                self._errors = [f"Local store unreadable: {e}"]
                logger.error(self._errors[0])
                return None

            try:
                remote_points = await self._remote.fetch_active()
                remote_points += await self._remote.fetch_archived()
            except RemoteError as e:
                logger.warning(f"Could not load server points, promotion postponed: {e}")
                result = ReconcileResult(trigger=trigger, finished_at=datetime.now(UTC))
                result.conflicts = [
                    Conflict(p, effective_id(p), f"Server unavailable: {e}") for p in local_points
                ]
                self._errors = [c.reason for c in result.conflicts]
                return result

            result = await self.reconcile(local_points, remote_points, trigger=trigger)
            self._errors = [f"{c.effective_id}: {c.reason}" for c in result.conflicts]
            logger.debug(f"Reconcile stats: {result.to_dict()}")
            self._record_last_sync(result.finished_at or datetime.now(UTC))
            for listener in self._listeners:
                listener(result)
            return result
        finally:
            self._syncing = False

    def start(self, trigger: SyncTrigger) -> asyncio.Task[ReconcileResult | None]:
        """Run ``sync_pending`` in the background (reuses a running task)."""
        if self._task is not None and not self._task.done():
            return self._task
        logger.debug(f"Starting background reconcile ({trigger.value})")
        self._task = asyncio.create_task(self.sync_pending(trigger))
        return self._task

    async def cancel(self) -> None:
        """Cancel a running background reconcile and wait for it to stop."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Background reconcile cancelled")

    def on_authenticated(self) -> asyncio.Task[ReconcileResult | None]:
        return self.start(SyncTrigger.LOGIN)

    def on_refresh(self) -> asyncio.Task[ReconcileResult | None]:
        return self.start(SyncTrigger.REFRESH)

    def on_foreground(self, background_seconds: float) -> asyncio.Task[ReconcileResult | None] | None:
        """Start a run if the app stayed in the background long enough."""
        if background_seconds < self.foreground_threshold_seconds:
            return None
        return self.start(SyncTrigger.FOREGROUND)

    def should_auto_sync(self, now: datetime | None = None) -> bool:
        """Authenticated, something pending, and the last run is old enough."""
        if not self._remote.authenticated or self.pending_count() == 0:
            return False
        if self._last_sync is None:
            return True
        if now is None:
            now = datetime.now(UTC)
        return (now - self._last_sync).total_seconds() >= self.auto_sync_interval_seconds

    def maybe_auto_sync(self, now: datetime | None = None) -> asyncio.Task[ReconcileResult | None] | None:
        if not self.should_auto_sync(now):
            return None
        return self.start(SyncTrigger.AUTO)
