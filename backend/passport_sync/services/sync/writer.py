"""Persist classified observations as destination medical records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from passport_sync.config import settings
from passport_sync.models import Doctor, Hospital, MedicalRecord, Patient, UserRole
from passport_sync.security import generate_one_time_password, hash_password, slugify
from passport_sync.services.sync.categorizer import UNKNOWN_DOCTOR, UNKNOWN_LOCATION
from passport_sync.services.sync.repository import SyncRepository
from passport_sync.services.sync.types import ClassifiedObservation, RecordType, ensure_utc

logger = logging.getLogger("passport_sync.writer")


class ProviderDirectory:
    """Match or create the doctor and hospital behind an observation."""

    def __init__(
        self,
        repository: SyncRepository,
        hospital_id: str,
        hospital_name: str | None = None,
    ):
        self.repository = repository
        self.hospital_id = hospital_id
        self.hospital_name = hospital_name or hospital_id
        self._hospitals: dict[str, Hospital] = {}
        self._doctors: dict[str, Doctor] = {}

    def reset(self) -> None:
        """Drop cached rows after a rolled-back observation."""
        self._hospitals.clear()
        self._doctors.clear()

    async def resolve_hospital(self, location_name: str) -> Hospital:
        key = (location_name or UNKNOWN_LOCATION).lower()
        if key in self._hospitals:
            return self._hospitals[key]

        hospital = None
        if location_name and location_name != UNKNOWN_LOCATION:
            hospital = await self.repository.find_hospital_by_name(location_name, exact=True)
            if hospital is None:
                hospital = await self.repository.find_hospital_by_name(
                    f"%{location_name}%", exact=False
                )
        if hospital is None:
            hospital = await self.repository.find_hospital_by_source_id(self.hospital_id)
        if hospital is None:
            name = (
                location_name
                if location_name and location_name != UNKNOWN_LOCATION
                else self.hospital_name
            )
            hospital = await self.repository.create_hospital(
                name=name,
                license_number=f"OPENMRS-{slugify(self.hospital_id)}-{slugify(name)}",
                status="active",
                source_hospital_id=self.hospital_id,
                is_placeholder=True,
            )
            logger.info("Created placeholder hospital '%s' for %s", name, self.hospital_id)

        self._hospitals[key] = hospital
        return hospital

    async def resolve_doctor(
        self,
        provider_name: str,
        provider_identifier: str | None,
        hospital: Hospital,
    ) -> Doctor:
        name = provider_name or UNKNOWN_DOCTOR
        license_number = provider_identifier or (
            f"OPENMRS-{slugify(self.hospital_id)}-{slugify(name)}"
        )
        if license_number in self._doctors:
            return self._doctors[license_number]

        doctor = await self.repository.find_doctor_by_license(license_number)
        if doctor is None and name != UNKNOWN_DOCTOR:
            doctor = await self.repository.find_doctor_by_name(name)
        if doctor is None:
            doctor = await self._create_doctor(name, license_number, provider_identifier, hospital)

        self._doctors[license_number] = doctor
        return doctor

    async def _create_doctor(
        self,
        name: str,
        license_number: str,
        provider_identifier: str | None,
        hospital: Hospital,
    ) -> Doctor:
        email = f"doctor.{slugify(license_number)}@{settings.placeholder_doctor_email_domain}"
        user = await self.repository.find_user_by_email(email)
        if user is None:
            # Placeholder doctors never log in with this password
            user = await self.repository.create_user(
                email=email,
                hashed_password=hash_password(generate_one_time_password(24)),
                full_name=name,
                role=UserRole.doctor.value,
            )
        doctor = await self.repository.create_doctor(
            user,
            license_number=license_number,
            provider_identifier=provider_identifier,
            specialization=settings.default_doctor_specialization,
            hospital_id=hospital.id,
            is_active=True,
            is_placeholder=True,
        )
        logger.info("Created placeholder doctor '%s' (%s)", name, license_number)
        return doctor


def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def build_payload(
    classified: ClassifiedObservation,
    *,
    recorded_at: datetime,
    hospital_name: str,
) -> dict[str, Any]:
    """Type-specific record payload as consumed by the passport UI."""
    label = classified.raw.concept_label
    value = classified.normalized_value
    doctor = classified.provider_name
    when = _iso(recorded_at)
    notes = classified.raw.comment

    if classified.record_type == RecordType.condition:
        notes = notes or f"Synced from OpenMRS - Diagnosis: {label}, Treatment: {value}"
        return {
            "name": label,
            "diagnosis": label,
            "details": f"Treatment: {value}",
            "diagnosed": when,
            "date": when,
            "doctor": doctor,
            "hospital": hospital_name,
            "procedure": f"{notes} | Doctor: {doctor} | Hospital: {hospital_name}",
        }

    if classified.record_type == RecordType.medication:
        payload = {
            "medicationName": label,
            "name": label,
            "dosage": value,
            "medicationStatus": "Active",
            "startDate": when,
            "date": when,
            "doctor": doctor,
            "prescribedBy": doctor,
            "hospital": hospital_name,
        }
    elif classified.record_type == RecordType.test:
        payload = {
            "testName": label,
            "name": label,
            "result": value,
            "testDate": when,
            "date": when,
            "testStatus": "Normal",
            "doctor": doctor,
            "hospital": hospital_name,
        }
    else:
        payload = {
            "hospital": hospital_name,
            "reason": label,
            "visitDate": when,
            "date": when,
            "doctor": doctor,
        }
    if notes:
        payload["notes"] = notes
    return payload


class RecordWriter:
    """Single place where synced records and their dedup keys are written."""

    def __init__(
        self,
        repository: SyncRepository,
        hospital_id: str,
        *,
        directory: ProviderDirectory | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.hospital_id = hospital_id
        self.directory = directory or ProviderDirectory(repository, hospital_id)
        self.clock = clock or (lambda: datetime.now(UTC))

    async def write(
        self,
        patient: Patient,
        classified: ClassifiedObservation,
        doctor: Doctor | None = None,
        hospital: Hospital | None = None,
    ) -> MedicalRecord:
        raw = classified.raw
        if hospital is None:
            hospital = await self.directory.resolve_hospital(classified.location_name)
        if doctor is None:
            doctor = await self.directory.resolve_doctor(
                classified.provider_name, raw.provider_identifier, hospital
            )

        now = self.clock()
        recorded_at = classified.natural_date or now
        hospital_name = (
            classified.location_name
            if classified.location_name != UNKNOWN_LOCATION
            else hospital.name
        )
        record = MedicalRecord(
            record_type=classified.record_type.value,
            data=build_payload(classified, recorded_at=recorded_at, hospital_name=hospital_name),
            created_by_user_id=doctor.user_id,
            hospital_scope=self.hospital_id,
            source_obs_id=str(raw.source_obs_id),
            source_person_id=str(raw.source_person_id),
            source_metadata={
                "obs_id": str(raw.source_obs_id),
                "person_id": str(raw.source_person_id),
                "concept_label": raw.concept_label,
                "value_type": classified.value_type,
                "obs_datetime": _iso(raw.timestamp) if raw.timestamp else None,
                "creator_name": raw.creator_name or classified.provider_name,
                "location_name": hospital_name,
            },
            arrival_at=now,
            editable_by=[],
            natural_name=classified.natural_name,
            natural_date=classified.natural_date,
        )
        await self.repository.add_record(patient, record)
        logger.debug(
            "Wrote %s record %s for patient %s from obs %s",
            record.record_type,
            record.id,
            patient.id,
            raw.source_obs_id,
        )
        return record
