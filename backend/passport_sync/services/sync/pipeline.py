"""Per-observation sync pipeline: resolve, categorize, dedup, write."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from passport_sync.exceptions import PatientNotFound, SyncError, WriteFailure
from passport_sync.services.sync.categorizer import ConceptCategorizer
from passport_sync.services.sync.dedup import DedupGuard
from passport_sync.services.sync.identity import IdentityResolver
from passport_sync.services.sync.repository import SyncRepository
from passport_sync.services.sync.source import SourceGateway
from passport_sync.services.sync.types import (
    ObservationOutcome,
    RawObservation,
    ResolutionStatus,
)
from passport_sync.services.sync.writer import ProviderDirectory, RecordWriter

logger = logging.getLogger("passport_sync.pipeline")


class ObservationPipeline:
    """Process observations of one hospital inside one destination session.

    Each observation runs in its own savepoint; observation-scoped errors are
    logged and reported as an outcome, never raised.
    """

    def __init__(
        self,
        repository: SyncRepository,
        hospital_id: str,
        *,
        hospital_name: str | None = None,
        categorizer: ConceptCategorizer | None = None,
        resolver: IdentityResolver | None = None,
        dedup: DedupGuard | None = None,
        writer: RecordWriter | None = None,
    ):
        self.repository = repository
        self.hospital_id = hospital_id
        self.categorizer = categorizer or ConceptCategorizer()
        self.resolver = resolver or IdentityResolver(repository, hospital_id)
        self.dedup = dedup or DedupGuard(repository)
        self.writer = writer or RecordWriter(
            repository,
            hospital_id,
            directory=ProviderDirectory(repository, hospital_id, hospital_name),
        )

    async def process(self, gateway: SourceGateway, raw: RawObservation) -> ObservationOutcome:
        try:
            async with self.repository.observation_scope():
                outcome = await self._process(gateway, raw)
        except SyncError as exc:
            self._forget(raw)
            logger.warning("Observation %s failed: %s", raw.source_obs_id, exc)
            return ObservationOutcome.failed
        except Exception:
            self._forget(raw)
            logger.exception("Unexpected error processing observation %s", raw.source_obs_id)
            return ObservationOutcome.failed

        if outcome == ObservationOutcome.patient_not_found:
            logger.warning(
                "Skipping observation %s: %s",
                raw.source_obs_id,
                PatientNotFound(self.hospital_id, raw.source_person_id),
            )
        else:
            logger.debug("Observation %s: %s", raw.source_obs_id, outcome.value)
        return outcome

    def _forget(self, raw: RawObservation) -> None:
        self.resolver.discard(raw.source_person_id)
        self.writer.directory.reset()

    async def _process(self, gateway: SourceGateway, raw: RawObservation) -> ObservationOutcome:
        # Cheap exact check before any identity work or auto-registration
        if await self.dedup.exact_match(self.hospital_id, raw.source_obs_id):
            return ObservationOutcome.duplicate

        resolution = await self.resolver.resolve(raw.source_person_id, gateway)
        if resolution.status == ResolutionStatus.not_found:
            return ObservationOutcome.patient_not_found

        classified = self.categorizer.categorize(raw)
        decision = await self.dedup.is_duplicate(
            self.hospital_id,
            raw.source_obs_id,
            classified,
            patient_id=resolution.patient.id,
        )
        if decision.is_duplicate:
            logger.debug(
                "Observation %s duplicates record %s (%s)",
                raw.source_obs_id,
                decision.existing_record_id,
                decision.reason,
            )
            return ObservationOutcome.duplicate

        try:
            await self.writer.write(resolution.patient, classified)
        except SQLAlchemyError as exc:
            raise WriteFailure(raw.source_obs_id, str(exc)) from exc
        return ObservationOutcome.created
