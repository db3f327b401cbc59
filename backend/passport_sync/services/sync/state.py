"""Durable sync cursors and run audit."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from passport_sync.exceptions import CursorStoreError
from passport_sync.models import SyncCursor, SyncRun
from passport_sync.services.sync.types import CursorMarker, HospitalRunStats, ensure_utc


class SyncStateStore(Protocol):
    async def get_cursor(self, hospital_id: str, variant: str) -> CursorMarker | None:
        ...

    async def advance_cursor(
        self, hospital_id: str, variant: str, marker: CursorMarker
    ) -> CursorMarker:
        ...

    async def list_cursors(self, variant: str) -> dict[str, CursorMarker]:
        ...

    async def record_run(self, variant: str, trigger: str, stats: HospitalRunStats) -> None:
        ...


def _to_marker(row: SyncCursor) -> CursorMarker:
    return CursorMarker(
        marker_id=row.marker_id,
        marker_at=ensure_utc(row.marker_at),
        marker_ref=row.marker_ref,
    )


class SQLSyncStateStore:
    """State store backed by the destination database.

    Every call runs in its own short transaction so a cursor only moves after
    the batch it describes has committed.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        if session_factory is None:
            from passport_sync.database import async_session_maker

            session_factory = async_session_maker
        self.session_factory = session_factory

    async def _find(self, db: AsyncSession, hospital_id: str, variant: str) -> SyncCursor | None:
        result = await db.execute(
            select(SyncCursor).where(
                SyncCursor.hospital_id == hospital_id,
                SyncCursor.variant == variant,
            )
        )
        return result.scalar_one_or_none()

    async def get_cursor(self, hospital_id: str, variant: str) -> CursorMarker | None:
        try:
            async with self.session_factory() as db:
                row = await self._find(db, hospital_id, variant)
                return _to_marker(row) if row else None
        except SQLAlchemyError as exc:
            raise CursorStoreError(f"Cannot read cursor {variant}/{hospital_id}: {exc}") from exc

    async def advance_cursor(
        self, hospital_id: str, variant: str, marker: CursorMarker
    ) -> CursorMarker:
        try:
            async with self.session_factory() as db:
                row = await self._find(db, hospital_id, variant)
                if row is None:
                    row = SyncCursor(hospital_id=hospital_id, variant=variant)
                    db.add(row)
                elif not _to_marker(row) < marker:
                    return _to_marker(row)
                row.marker_id = marker.marker_id
                row.marker_at = ensure_utc(marker.marker_at)
                row.marker_ref = marker.marker_ref
                await db.commit()
                return marker
        except SQLAlchemyError as exc:
            raise CursorStoreError(
                f"Cannot advance cursor {variant}/{hospital_id}: {exc}"
            ) from exc

    async def list_cursors(self, variant: str) -> dict[str, CursorMarker]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(SyncCursor).where(SyncCursor.variant == variant)
                )
                return {row.hospital_id: _to_marker(row) for row in result.scalars().all()}
        except SQLAlchemyError as exc:
            raise CursorStoreError(f"Cannot list cursors for {variant}: {exc}") from exc

    async def record_run(self, variant: str, trigger: str, stats: HospitalRunStats) -> None:
        async with self.session_factory() as db:
            db.add(
                SyncRun(
                    hospital_id=stats.hospital_id,
                    variant=variant,
                    trigger=trigger,
                    started_at=stats.started_at or datetime.now(UTC),
                    finished_at=stats.finished_at,
                    fetched=stats.fetched,
                    created=stats.created,
                    duplicates=stats.duplicates,
                    skipped=stats.skipped,
                    failed=stats.failed,
                    marker_before=stats.marker_before.describe() if stats.marker_before else None,
                    marker_after=stats.marker_after.describe() if stats.marker_after else None,
                    error=stats.error[:2000] if stats.error else None,
                )
            )
            await db.commit()


class InMemorySyncStateStore:
    """State store for tests and local demos."""

    def __init__(self):
        self.cursors: dict[tuple[str, str], CursorMarker] = {}
        self.runs: list[tuple[str, str, HospitalRunStats]] = []

    async def get_cursor(self, hospital_id: str, variant: str) -> CursorMarker | None:
        return self.cursors.get((hospital_id, variant))

    async def advance_cursor(
        self, hospital_id: str, variant: str, marker: CursorMarker
    ) -> CursorMarker:
        current = self.cursors.get((hospital_id, variant))
        if current is not None and not current < marker:
            return current
        self.cursors[(hospital_id, variant)] = marker
        return marker

    async def list_cursors(self, variant: str) -> dict[str, CursorMarker]:
        return {
            hospital_id: marker
            for (hospital_id, cursor_variant), marker in self.cursors.items()
            if cursor_variant == variant
        }

    async def record_run(self, variant: str, trigger: str, stats: HospitalRunStats) -> None:
        self.runs.append((variant, trigger, stats))
