"""Value types shared by the sync pipeline, orchestrators and API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to UTC; naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RecordType(StrEnum):
    condition = "condition"
    medication = "medication"
    test = "test"
    visit = "visit"


class SyncVariant(StrEnum):
    multi_hospital = "multi_hospital"
    direct_db = "direct_db"
    rest_api = "rest_api"


@dataclass(frozen=True)
class RawObservation:
    """One observation row as read from a source system."""

    source_obs_id: str
    source_person_id: str
    concept_label: str
    coded_value: str | None = None
    text_value: str | None = None
    numeric_value: float | None = None
    timestamp: datetime | None = None
    created_at: datetime | None = None
    comment: str | None = None
    creator_id: str | None = None
    creator_name: str | None = None
    location_id: str | None = None
    location_name: str | None = None
    provider_name: str | None = None
    provider_identifier: str | None = None
    marker_id: int | None = None


@dataclass(frozen=True)
class ClassifiedObservation:
    """A raw observation with its record type and normalized value."""

    raw: RawObservation
    record_type: RecordType
    normalized_value: str
    value_type: str
    provider_name: str
    location_name: str

    @property
    def natural_name(self) -> str | None:
        """Name half of the dedup natural key; visits match on date only."""
        if self.record_type == RecordType.visit:
            return None
        return self.raw.concept_label or None

    @property
    def natural_date(self) -> datetime | None:
        return ensure_utc(self.raw.timestamp or self.raw.created_at)


@dataclass(frozen=True)
class SourcePerson:
    """Demographics of a source person, used for matching and auto-registration."""

    person_id: str
    given_name: str = ""
    middle_name: str | None = None
    family_name: str = ""
    gender: str | None = None
    birthdate: date | None = None
    national_id: str | None = None
    address: str | None = None
    city: str | None = None
    province: str | None = None
    country: str | None = None

    @property
    def full_name(self) -> str:
        parts = [self.given_name, self.middle_name, self.family_name]
        return " ".join(" ".join(part.split()) for part in parts if part and part.strip())


class ResolutionStatus(StrEnum):
    matched = "matched"
    created = "created"
    not_found = "not_found"


@dataclass(frozen=True)
class PatientResolution:
    """Tagged outcome of identity resolution."""

    status: ResolutionStatus
    patient: Any = None
    matched_by: str | None = None

    @classmethod
    def matched(cls, patient: Any, matched_by: str) -> "PatientResolution":
        return cls(ResolutionStatus.matched, patient, matched_by)

    @classmethod
    def created(cls, patient: Any) -> "PatientResolution":
        return cls(ResolutionStatus.created, patient, "auto_registration")

    @classmethod
    def not_found(cls) -> "PatientResolution":
        return cls(ResolutionStatus.not_found)

    @property
    def patient_id(self) -> int | None:
        return getattr(self.patient, "id", None)


@dataclass(frozen=True)
class DedupDecision:
    is_duplicate: bool
    reason: str | None = None
    existing_record_id: int | None = None


class ObservationOutcome(StrEnum):
    created = "created"
    duplicate = "duplicate"
    patient_not_found = "patient_not_found"
    failed = "failed"


@dataclass(frozen=True)
class CursorMarker:
    """Watermark of the last ingested observation.

    Each variant populates the fields it orders by: ``marker_id`` alone for the
    direct database variant, ``(marker_at, marker_id)`` for the multi-hospital
    variant and ``(marker_at, marker_ref)`` for the REST variant.
    """

    marker_id: int | None = None
    marker_at: datetime | None = None
    marker_ref: str | None = None

    def sort_key(self) -> tuple[datetime, int, str]:
        return (
            ensure_utc(self.marker_at) or datetime.min.replace(tzinfo=UTC),
            self.marker_id if self.marker_id is not None else -1,
            self.marker_ref or "",
        )

    def __lt__(self, other: "CursorMarker") -> bool:
        return self.sort_key() < other.sort_key()

    def __le__(self, other: "CursorMarker") -> bool:
        return self.sort_key() <= other.sort_key()

    def describe(self) -> str:
        parts: list[str] = []
        if self.marker_at is not None:
            parts.append(ensure_utc(self.marker_at).isoformat())
        if self.marker_id is not None:
            parts.append(str(self.marker_id))
        if self.marker_ref:
            parts.append(self.marker_ref)
        return "/".join(parts) or "-"


@dataclass
class HospitalRunStats:
    """Counters for one hospital within one cycle."""

    hospital_id: str
    fetched: int = 0
    created: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    marker_before: CursorMarker | None = None
    marker_after: CursorMarker | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def count(self, outcome: ObservationOutcome) -> None:
        if outcome == ObservationOutcome.created:
            self.created += 1
        elif outcome == ObservationOutcome.duplicate:
            self.duplicates += 1
        elif outcome == ObservationOutcome.patient_not_found:
            self.skipped += 1
        else:
            self.failed += 1


@dataclass
class SyncCycleStats:
    """Telemetry emitted for one orchestrator cycle."""

    variant: str
    trigger: str = "timer"
    hospitals: list[HospitalRunStats] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(item.created for item in self.hospitals)

    @property
    def failed_hospitals(self) -> list[str]:
        return [item.hospital_id for item in self.hospitals if item.error]


@dataclass(frozen=True)
class SyncNowResult:
    success: bool
    count: int
    message: str


@dataclass(frozen=True)
class SyncStatus:
    variant: str
    is_running: bool
    is_scheduled: bool
    last_synced_marker: dict[str, str | None]
    configured_interval_ms: int
    last_run_at: datetime | None = None
