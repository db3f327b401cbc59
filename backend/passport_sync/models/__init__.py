from passport_sync.models.base import Base, TimestampMixin, model_to_dict
from passport_sync.models.doctor import Doctor
from passport_sync.models.hospital import Hospital
from passport_sync.models.medical_record import MedicalRecord
from passport_sync.models.patient import Patient
from passport_sync.models.sync_state import SyncCursor, SyncRun
from passport_sync.models.user import User, UserRole

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "model_to_dict",
    # Identities
    "User",
    "UserRole",
    "Patient",
    "Doctor",
    "Hospital",
    # Records
    "MedicalRecord",
    # Sync bookkeeping
    "SyncCursor",
    "SyncRun",
]
