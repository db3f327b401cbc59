"""Timer-driven sync orchestrators.

All variants share the fetch, resolve, categorize, dedup and write pipeline and
differ only in how they reach a source and how fine-grained their cursor is.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from passport_sync.config import Settings, settings as default_settings
from passport_sync.exceptions import CursorStoreError, SourceConnectionError
from passport_sync.logging import new_sync_run_id, sync_run_var
from passport_sync.services.sync.categorizer import ConceptCategorizer
from passport_sync.services.sync.fetcher import (
    ObservationFetcher,
    ObsIdFetcher,
    TimestampRefFetcher,
)
from passport_sync.services.sync.pipeline import ObservationPipeline
from passport_sync.services.sync.registry import SourceConnectionRegistry
from passport_sync.services.sync.repository import RepositoryScope, session_repository_scope
from passport_sync.services.sync.rest_source import RestSourceGateway
from passport_sync.services.sync.source import SourceGateway
from passport_sync.services.sync.state import SyncStateStore
from passport_sync.services.sync.types import (
    CursorMarker,
    HospitalRunStats,
    ObservationOutcome,
    SyncCycleStats,
    SyncNowResult,
    SyncStatus,
    SyncVariant,
)

logger = logging.getLogger("passport_sync.sync")


class SyncOrchestrator:
    """Base orchestrator: timer loop, overlap guard and per-hospital isolation."""

    variant: SyncVariant

    def __init__(
        self,
        *,
        state_store: SyncStateStore,
        fetcher: ObservationFetcher,
        interval_seconds: float,
        repository_scope: RepositoryScope = session_repository_scope,
        categorizer: ConceptCategorizer | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.state_store = state_store
        self.fetcher = fetcher
        self.interval_seconds = interval_seconds
        self.repository_scope = repository_scope
        self.categorizer = categorizer or ConceptCategorizer()
        self.clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._last_run_at: datetime | None = None

    def hospital_ids(self) -> list[str]:
        raise NotImplementedError

    def hospital_name(self, hospital_id: str) -> str:
        return hospital_id

    async def get_gateway(self, hospital_id: str) -> SourceGateway:
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources owned by this orchestrator."""

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background timer loop."""
        if self.is_scheduled:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run_loop(),
            name=f"{self.variant.value}-sync",
        )
        logger.info(
            "%s sync started (interval=%ss batch=%s hospitals=%s)",
            self.variant.value,
            self.interval_seconds,
            self.fetcher.batch_size,
            ",".join(self.hospital_ids()) or "-",
        )

    async def stop(self) -> None:
        """Stop the timer loop, wait for the current cycle and close pools."""
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None
        await self.close()
        logger.info("%s sync stopped", self.variant.value)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started_at = asyncio.get_running_loop().time()
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s sync cycle failed", self.variant.value)

            elapsed = asyncio.get_running_loop().time() - started_at
            sleep_seconds = max(1.0, self.interval_seconds - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except TimeoutError:
                continue

    async def run_once(
        self, trigger: str = "timer", hospital_id: str | None = None
    ) -> SyncCycleStats | None:
        """Run one cycle; returns None when a cycle is already in progress."""
        if self._running:
            logger.info("%s sync still running; dropping %s tick", self.variant.value, trigger)
            return None
        self._running = True
        try:
            stats = SyncCycleStats(variant=self.variant.value, trigger=trigger)
            targets = [hospital_id] if hospital_id else self.hospital_ids()
            for target in targets:
                stats.hospitals.append(await self._sync_hospital(target, trigger))
            self._last_run_at = self.clock()
            created = stats.created
            if created or stats.failed_hospitals:
                logger.info(
                    "%s sync cycle: hospitals=%s created=%s failed_hospitals=%s",
                    self.variant.value,
                    len(stats.hospitals),
                    created,
                    ",".join(stats.failed_hospitals) or "-",
                )
            return stats
        finally:
            self._running = False

    async def _sync_hospital(self, hospital_id: str, trigger: str) -> HospitalRunStats:
        stats = HospitalRunStats(hospital_id=hospital_id, started_at=self.clock())
        token = sync_run_var.set(new_sync_run_id(self.variant.value, hospital_id))
        try:
            await self._sync_batch(hospital_id, stats)
        except SourceConnectionError as exc:
            stats.error = str(exc)
            logger.warning("Skipping hospital %s this cycle: %s", hospital_id, exc)
        except CursorStoreError:
            raise
        except Exception as exc:
            stats.error = f"{exc.__class__.__name__}: {exc}"
            logger.exception("Sync failed for hospital %s", hospital_id)
        finally:
            stats.finished_at = self.clock()
            try:
                await self._record_run(stats, trigger)
            finally:
                sync_run_var.reset(token)
        return stats

    async def _sync_batch(self, hospital_id: str, stats: HospitalRunStats) -> None:
        gateway = await self.get_gateway(hospital_id)
        stored = await self.state_store.get_cursor(hospital_id, self.variant.value)
        marker = stored
        if marker is None:
            marker = await self.fetcher.initial_marker(gateway, self.clock())
        stats.marker_before = marker

        batch = await self.fetcher.fetch(gateway, marker)
        stats.fetched = len(batch)
        advance_to: CursorMarker | None = None
        if batch:
            async with self.repository_scope() as repository:
                pipeline = ObservationPipeline(
                    repository,
                    hospital_id,
                    hospital_name=self.hospital_name(hospital_id),
                    categorizer=self.categorizer,
                )
                blocked = False
                for raw in batch:
                    outcome = await pipeline.process(gateway, raw)
                    stats.count(outcome)
                    if outcome == ObservationOutcome.failed:
                        blocked = True
                    elif not blocked:
                        advance_to = self.fetcher.marker_for(raw)

        # Seeded markers are persisted so a restart does not re-seed
        if advance_to is None and stored is None and marker is not None:
            advance_to = marker
        if advance_to is not None:
            stats.marker_after = await self.state_store.advance_cursor(
                hospital_id, self.variant.value, advance_to
            )
        else:
            stats.marker_after = marker

        logger.info(
            "Hospital %s: fetched=%s created=%s duplicates=%s skipped=%s failed=%s marker=%s",
            hospital_id,
            stats.fetched,
            stats.created,
            stats.duplicates,
            stats.skipped,
            stats.failed,
            stats.marker_after.describe() if stats.marker_after else "-",
        )

    async def _record_run(self, stats: HospitalRunStats, trigger: str) -> None:
        try:
            await self.state_store.record_run(self.variant.value, trigger, stats)
        except Exception:
            logger.exception("Failed to record sync run for hospital %s", stats.hospital_id)

    async def sync_now(self, hospital_id: str | None = None) -> SyncNowResult:
        """Run one cycle immediately, bypassing the timer."""
        if hospital_id is not None and hospital_id not in self.hospital_ids():
            return SyncNowResult(
                success=False,
                count=0,
                message=f"Hospital {hospital_id} is not configured for {self.variant.value} sync",
            )
        try:
            stats = await self.run_once(trigger="manual", hospital_id=hospital_id)
        except CursorStoreError as exc:
            logger.exception("Manual %s sync aborted", self.variant.value)
            return SyncNowResult(success=False, count=0, message=str(exc))
        if stats is None:
            return SyncNowResult(success=False, count=0, message="Sync already in progress")

        failed = stats.failed_hospitals
        if stats.hospitals and len(failed) == len(stats.hospitals):
            return SyncNowResult(
                success=False,
                count=stats.created,
                message=f"Sync failed for hospital(s): {', '.join(failed)}",
            )
        message = f"Synced {stats.created} new record(s) from {len(stats.hospitals)} hospital(s)"
        if failed:
            message += f"; failed: {', '.join(failed)}"
        return SyncNowResult(success=True, count=stats.created, message=message)

    async def get_status(self) -> SyncStatus:
        hospital_ids = self.hospital_ids()
        try:
            cursors = await self.state_store.list_cursors(self.variant.value)
        except CursorStoreError:
            logger.exception("Cannot read %s cursors for status", self.variant.value)
            cursors = {}
        return SyncStatus(
            variant=self.variant.value,
            is_running=self._running,
            is_scheduled=self.is_scheduled,
            last_synced_marker={
                hospital_id: cursors[hospital_id].describe() if hospital_id in cursors else None
                for hospital_id in hospital_ids
            },
            configured_interval_ms=int(self.interval_seconds * 1000),
            last_run_at=self.last_run_at,
        )


class MultiHospitalSyncOrchestrator(SyncOrchestrator):
    """One pool per configured hospital, ``(date_created, obs_id)`` cursor."""

    variant = SyncVariant.multi_hospital

    def __init__(
        self,
        registry: SourceConnectionRegistry,
        *,
        state_store: SyncStateStore,
        config: Settings | None = None,
        owns_registry: bool = False,
        **kwargs,
    ):
        config = config or default_settings
        kwargs.setdefault("interval_seconds", config.multi_hospital_sync_interval_seconds)
        super().__init__(
            state_store=state_store,
            fetcher=ObservationFetcher(config.multi_hospital_sync_batch_size),
            **kwargs,
        )
        self.registry = registry
        self.owns_registry = owns_registry

    def hospital_ids(self) -> list[str]:
        return self.registry.hospital_ids()

    def hospital_name(self, hospital_id: str) -> str:
        return self.registry.hospital_name(hospital_id)

    async def get_gateway(self, hospital_id: str) -> SourceGateway:
        return await self.registry.get_gateway(hospital_id)

    async def close(self) -> None:
        if self.owns_registry:
            await self.registry.close_all()


class DirectDatabaseSyncOrchestrator(MultiHospitalSyncOrchestrator):
    """Single hospital over its own pool with an obs id cursor."""

    variant = SyncVariant.direct_db

    def __init__(
        self,
        registry: SourceConnectionRegistry,
        *,
        state_store: SyncStateStore,
        hospital_id: str | None = None,
        config: Settings | None = None,
        owns_registry: bool = False,
        **kwargs,
    ):
        config = config or default_settings
        kwargs.setdefault("interval_seconds", config.direct_db_sync_interval_seconds)
        super().__init__(
            registry,
            state_store=state_store,
            config=config,
            owns_registry=owns_registry,
            **kwargs,
        )
        self.fetcher = ObsIdFetcher(
            config.direct_db_sync_batch_size, config.direct_db_initial_lookback_hours
        )
        enabled = registry.hospital_ids()
        self.hospital_id = hospital_id or config.direct_db_hospital_id or (
            enabled[0] if enabled else None
        )

    def hospital_ids(self) -> list[str]:
        if self.hospital_id and self.hospital_id in self.registry.hospital_ids():
            return [self.hospital_id]
        return []


class RestApiSyncOrchestrator(SyncOrchestrator):
    """Single hospital over the OpenMRS REST API, ``(timestamp, uuid)`` cursor."""

    variant = SyncVariant.rest_api

    def __init__(
        self,
        *,
        state_store: SyncStateStore,
        gateway: SourceGateway | None = None,
        hospital_id: str | None = None,
        config: Settings | None = None,
        **kwargs,
    ):
        config = config or default_settings
        kwargs.setdefault("interval_seconds", config.rest_sync_interval_seconds)
        super().__init__(
            state_store=state_store,
            fetcher=TimestampRefFetcher(
                config.rest_sync_batch_size, config.rest_initial_lookback_hours
            ),
            **kwargs,
        )
        self.hospital_id = hospital_id or config.rest_hospital_id or "openmrs-rest"
        self.gateway = gateway or RestSourceGateway(self.hospital_id, config)

    def hospital_ids(self) -> list[str]:
        return [self.hospital_id]

    async def get_gateway(self, hospital_id: str) -> SourceGateway:
        return self.gateway
