"""Observation sync engine."""

from passport_sync.services.sync.access_window import (
    AccessWindowPolicy,
    EditInfo,
    WindowState,
    can_edit,
    evaluate,
    get_edit_info,
)
from passport_sync.services.sync.categorizer import ConceptCategorizer, categorize
from passport_sync.services.sync.orchestrators import (
    DirectDatabaseSyncOrchestrator,
    MultiHospitalSyncOrchestrator,
    RestApiSyncOrchestrator,
    SyncOrchestrator,
)
from passport_sync.services.sync.service import SyncService, get_sync_service
from passport_sync.services.sync.types import (
    ObservationOutcome,
    PatientResolution,
    RawObservation,
    RecordType,
    SyncNowResult,
    SyncStatus,
    SyncVariant,
)

__all__ = [
    "AccessWindowPolicy",
    "ConceptCategorizer",
    "DirectDatabaseSyncOrchestrator",
    "EditInfo",
    "MultiHospitalSyncOrchestrator",
    "ObservationOutcome",
    "PatientResolution",
    "RawObservation",
    "RecordType",
    "RestApiSyncOrchestrator",
    "SyncNowResult",
    "SyncOrchestrator",
    "SyncService",
    "SyncStatus",
    "SyncVariant",
    "WindowState",
    "can_edit",
    "categorize",
    "evaluate",
    "get_edit_info",
    "get_sync_service",
]
