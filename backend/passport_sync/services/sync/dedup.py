"""Two-tier duplicate detection for incoming observations."""

from __future__ import annotations

from passport_sync.services.sync.repository import SyncRepository
from passport_sync.services.sync.types import ClassifiedObservation, DedupDecision

EXACT = "source_obs_id"
NATURAL_KEY = "natural_key"


class DedupGuard:
    """Decide whether an observation already has a destination record."""

    def __init__(self, repository: SyncRepository):
        self.repository = repository

    async def exact_match(self, hospital_id: str, source_obs_id: str) -> bool:
        return await self.repository.record_exists(hospital_id, str(source_obs_id))

    async def is_duplicate(
        self,
        hospital_id: str,
        source_obs_id: str,
        classified: ClassifiedObservation,
        *,
        patient_id: int,
    ) -> DedupDecision:
        if await self.exact_match(hospital_id, source_obs_id):
            return DedupDecision(True, EXACT)

        # Only populated key fields take part in the match
        name = classified.natural_name
        date = classified.natural_date
        if not name and date is None:
            return DedupDecision(False)

        existing = await self.repository.find_record_by_natural_key(
            patient_id,
            classified.record_type.value,
            name,
            date,
        )
        if existing is not None:
            return DedupDecision(True, NATURAL_KEY, existing.id)
        return DedupDecision(False)
