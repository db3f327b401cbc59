"""Application-level owner of the source registry and enabled orchestrators."""

from __future__ import annotations

import logging

from passport_sync.config import Settings, settings as default_settings
from passport_sync.services.sync.orchestrators import (
    DirectDatabaseSyncOrchestrator,
    MultiHospitalSyncOrchestrator,
    RestApiSyncOrchestrator,
    SyncOrchestrator,
)
from passport_sync.services.sync.registry import SourceConnectionRegistry
from passport_sync.services.sync.state import SQLSyncStateStore, SyncStateStore
from passport_sync.services.sync.types import SyncStatus

logger = logging.getLogger("passport_sync.sync")


class SyncService:
    """Builds, starts and stops the orchestrators enabled by configuration."""

    def __init__(
        self,
        *,
        config: Settings | None = None,
        registry: SourceConnectionRegistry | None = None,
        state_store: SyncStateStore | None = None,
        orchestrators: list[SyncOrchestrator] | None = None,
    ):
        self.config = config or default_settings
        self.registry = registry or SourceConnectionRegistry.from_settings(self.config)
        self.state_store = state_store or SQLSyncStateStore()
        if orchestrators is None:
            orchestrators = self._build_orchestrators()
        self.orchestrators: dict[str, SyncOrchestrator] = {
            orchestrator.variant.value: orchestrator for orchestrator in orchestrators
        }

    def _build_orchestrators(self) -> list[SyncOrchestrator]:
        config = self.config
        orchestrators: list[SyncOrchestrator] = []
        if config.multi_hospital_sync_enabled:
            orchestrators.append(
                MultiHospitalSyncOrchestrator(
                    self.registry, state_store=self.state_store, config=config
                )
            )
        if config.direct_db_sync_enabled:
            if config.multi_hospital_sync_enabled and config.direct_db_hospital_id:
                logger.warning(
                    "Hospital %s is covered by both multi-hospital and direct sync; "
                    "keep only one enabled to preserve a single cursor writer",
                    config.direct_db_hospital_id,
                )
            orchestrators.append(
                DirectDatabaseSyncOrchestrator(
                    self.registry, state_store=self.state_store, config=config
                )
            )
        if config.rest_sync_enabled:
            orchestrators.append(
                RestApiSyncOrchestrator(state_store=self.state_store, config=config)
            )
        return orchestrators

    def get(self, variant: str) -> SyncOrchestrator | None:
        return self.orchestrators.get(variant)

    async def start(self) -> None:
        if not self.orchestrators:
            logger.info("No sync orchestrators enabled by configuration")
            return
        await self.registry.init()
        for orchestrator in self.orchestrators.values():
            await orchestrator.start()

    async def stop(self) -> None:
        for orchestrator in self.orchestrators.values():
            try:
                await orchestrator.stop()
            except Exception:
                logger.exception("Failed to stop %s sync", orchestrator.variant.value)
        await self.registry.close_all()

    async def status(self) -> list[SyncStatus]:
        return [await orchestrator.get_status() for orchestrator in self.orchestrators.values()]


_service_instance: SyncService | None = None


def get_sync_service() -> SyncService:
    """Get singleton sync service instance."""
    global _service_instance
    if _service_instance is None:
        _service_instance = SyncService()
    return _service_instance
