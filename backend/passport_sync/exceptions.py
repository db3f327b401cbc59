"""Error taxonomy for the observation sync engine."""


class SyncError(Exception):
    """Base class for sync engine errors."""


class SourceConnectionError(SyncError, ConnectionError):
    """A source hospital is unknown, disabled or unreachable."""

    def __init__(self, hospital_id: str, message: str):
        self.hospital_id = hospital_id
        super().__init__(f"Hospital {hospital_id}: {message}")


class PatientNotFound(SyncError):
    """The source person behind an observation does not exist."""

    def __init__(self, hospital_id: str, source_person_id: str):
        self.hospital_id = hospital_id
        self.source_person_id = source_person_id
        super().__init__(
            f"Person {source_person_id} not found in hospital {hospital_id}"
        )


class ClassificationAmbiguous(SyncError):
    """No concept keyword matched; callers fall back to a condition record."""


class WriteFailure(SyncError):
    """Persisting a single observation failed."""

    def __init__(self, source_obs_id: str | None, message: str):
        self.source_obs_id = source_obs_id
        super().__init__(f"Observation {source_obs_id}: {message}")


class CursorStoreError(SyncError):
    """The durable cursor store cannot be read or written."""


class AccessWindowClosed(SyncError):
    """A synced record is past its edit window and can no longer be changed."""

    def __init__(self, record_id: int | None):
        self.record_id = record_id
        super().__init__(f"Record {record_id} is locked for editing")
