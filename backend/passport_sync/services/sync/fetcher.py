"""Cursor-ordered observation batches, one strategy per cursor granularity."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from passport_sync.services.sync.rest_source import observation_marker
from passport_sync.services.sync.source import SourceGateway
from passport_sync.services.sync.types import CursorMarker, RawObservation


class ObservationFetcher:
    """Pull the next batch strictly after a cursor marker.

    Batches come back sorted by marker so the orchestrator can advance the
    cursor over any fully processed prefix.
    """

    def __init__(self, batch_size: int):
        self.batch_size = batch_size

    async def initial_marker(
        self, gateway: SourceGateway, now: datetime | None = None
    ) -> CursorMarker | None:
        return None

    async def _read(
        self, gateway: SourceGateway, marker: CursorMarker | None
    ) -> list[RawObservation]:
        return await gateway.fetch_observations_since(marker, self.batch_size)

    async def fetch(
        self, gateway: SourceGateway, marker: CursorMarker | None
    ) -> list[RawObservation]:
        batch = await self._read(gateway, marker)
        return sorted(batch, key=lambda raw: self.marker_for(raw).sort_key())

    def marker_for(self, raw: RawObservation) -> CursorMarker:
        marker_id = raw.marker_id if raw.marker_id is not None else int(raw.source_obs_id)
        return CursorMarker(marker_at=raw.created_at or raw.timestamp, marker_id=marker_id)


class ObsIdFetcher(ObservationFetcher):
    """Numeric obs id cursor, seeded from a lookback window on first run."""

    def __init__(self, batch_size: int, lookback_hours: int):
        super().__init__(batch_size)
        self.lookback_hours = lookback_hours

    async def initial_marker(
        self, gateway: SourceGateway, now: datetime | None = None
    ) -> CursorMarker | None:
        return CursorMarker(marker_id=await gateway.initial_marker_id(self.lookback_hours))

    async def _read(
        self, gateway: SourceGateway, marker: CursorMarker | None
    ) -> list[RawObservation]:
        after_id = marker.marker_id if marker and marker.marker_id is not None else 0
        return await gateway.fetch_observations_after_id(after_id, self.batch_size)

    def marker_for(self, raw: RawObservation) -> CursorMarker:
        marker_id = raw.marker_id if raw.marker_id is not None else int(raw.source_obs_id)
        return CursorMarker(marker_id=marker_id)


class TimestampRefFetcher(ObservationFetcher):
    """``(timestamp, uuid)`` cursor for sources without numeric ids."""

    def __init__(self, batch_size: int, lookback_hours: int):
        super().__init__(batch_size)
        self.lookback_hours = lookback_hours

    async def initial_marker(
        self, gateway: SourceGateway, now: datetime | None = None
    ) -> CursorMarker | None:
        start = (now or datetime.now(UTC)) - timedelta(hours=self.lookback_hours)
        return CursorMarker(marker_at=start)

    def marker_for(self, raw: RawObservation) -> CursorMarker:
        return observation_marker(raw)
