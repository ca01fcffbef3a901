"""
Service wiring.

Builds the object graph once from settings and hands it out explicitly;
nothing in the core reaches for a global instance.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from config import Settings
from linker.core.mastery import MasteryEngine
from linker.db.local_store import LocalStore
from linker.repository import KnowledgePointRepository
from linker.sync.platform_client import PlatformClient
from linker.sync.reconciliation import ReconcileResult, ReconciliationService


@dataclass
class Services:
    """Everything a front end needs, already connected."""

    settings: Settings
    local_store: LocalStore
    client: PlatformClient
    mastery: MasteryEngine
    repository: KnowledgePointRepository
    reconciliation: ReconciliationService

    async def login(self, token: str) -> asyncio.Task[ReconcileResult | None]:
        """Adopt a token and start promoting guest points in the background."""
        self.client.set_token(token)
        self.repository.invalidate()
        return self.reconciliation.on_authenticated()

    async def logout(self) -> None:
        await self.reconciliation.cancel()
        self.client.clear_token()
        self.repository.invalidate()

    async def aclose(self) -> None:
        await self.reconciliation.cancel()
        await self.client.close()
        self.local_store.close()


def build_services(settings: Settings, token: str | None = None) -> Services:
    """
    Construct the core services.

    Args:
        settings: Application settings
        token: Bearer token; falls back to ``settings.api_token``
    """
    local_store = LocalStore(
        settings.local_database_url,
        max_points=settings.guest_knowledge_point_limit,
    )
    client = PlatformClient(
        settings.api_base_url,
        api=settings.api,
        token=token or settings.api_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    mastery = MasteryEngine(**settings.get_mastery_config())
    repository = KnowledgePointRepository(
        local_store,
        client,
        mastery,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )
    reconciliation = ReconciliationService(
        local_store,
        client,
        promotion_delay_seconds=settings.promotion_delay_seconds,
        auto_sync_interval_seconds=settings.auto_sync_interval_seconds,
        foreground_threshold_seconds=settings.foreground_threshold_seconds,
        mutation_lock=repository.mutation_lock,
    )
    reconciliation.add_listener(repository.on_reconciled)

    logger.debug(
        f"Services ready (authenticated={client.authenticated}, db={settings.local_database_url})"
    )
    return Services(
        settings=settings,
        local_store=local_store,
        client=client,
        mastery=mastery,
        repository=repository,
        reconciliation=reconciliation,
    )
