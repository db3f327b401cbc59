"""Resolve source persons to destination patients.

Resolution order, first match wins:

1. national identifier exposed by the source
2. cached ``<hospital_id>:<person_id>`` reference or the placeholder national id
   written by an earlier auto-registration
3. name: exact (case-insensitive), then ``%given%family%``, then ``%family%``
4. auto-registration from the source demographics
"""

from __future__ import annotations

import logging
from typing import Protocol

from passport_sync.config import settings
from passport_sync.models import Patient, UserRole
from passport_sync.security import generate_one_time_password, hash_password, slugify
from passport_sync.services.sync.repository import SyncRepository
from passport_sync.services.sync.types import PatientResolution, SourcePerson

logger = logging.getLogger("passport_sync.identity")

GENDER_MAP = {"M": "Male", "F": "Female"}


class PersonSource(Protocol):
    async def get_person(self, person_id: str) -> SourcePerson | None:
        ...


def external_ref(hospital_id: str, person_id: str) -> str:
    return f"{hospital_id}:{person_id}"


def placeholder_national_id(hospital_id: str, person_id: str) -> str:
    return f"OPENMRS_{hospital_id}_{person_id}"


def map_gender(value: str | None) -> str:
    return GENDER_MAP.get((value or "").strip().upper()[:1], "Other")


def _name_patterns(person: SourcePerson) -> list[tuple[str, str]]:
    patterns: list[tuple[str, str]] = []
    given = (person.given_name or "").strip()
    family = (person.family_name or "").strip()
    if given and family:
        patterns.append(("partial_name", f"%{given}%{family}%"))
    if family:
        patterns.append(("family_name", f"%{family}%"))
    return patterns


class IdentityResolver:
    """Map source persons of one hospital to destination patients.

    One resolver lives for one hospital cycle; its cache makes resolution
    idempotent per source person within that cycle.
    """

    def __init__(self, repository: SyncRepository, hospital_id: str):
        self.repository = repository
        self.hospital_id = hospital_id
        self._cache: dict[str, PatientResolution] = {}

    def discard(self, person_id: str) -> None:
        """Forget a cached resolution whose observation was rolled back."""
        self._cache.pop(str(person_id), None)

    async def resolve(self, person_id: str, source: PersonSource) -> PatientResolution:
        person_id = str(person_id)
        cached = self._cache.get(person_id)
        if cached is not None:
            return PatientResolution.matched(cached.patient, "run_cache")

        person = await source.get_person(person_id)
        if person is None:
            return PatientResolution.not_found()

        resolution = await self._match(person)
        if resolution is None:
            patient = await self._auto_register(person)
            resolution = PatientResolution.created(patient)
        self._cache[person_id] = resolution
        return resolution

    async def _match(self, person: SourcePerson) -> PatientResolution | None:
        ref = external_ref(self.hospital_id, person.person_id)

        if person.national_id:
            patient = await self.repository.find_patient_by_national_id(person.national_id)
            if patient is not None:
                await self._remember(patient, ref)
                return PatientResolution.matched(patient, "national_id")

        patient = await self.repository.find_patient_by_external_ref(ref)
        if patient is None:
            patient = await self.repository.find_patient_by_national_id(
                placeholder_national_id(self.hospital_id, person.person_id)
            )
        if patient is not None:
            return PatientResolution.matched(patient, "external_ref")

        full_name = person.full_name
        if full_name:
            patient = await self.repository.find_patient_by_name(full_name, exact=True)
            if patient is not None:
                await self._remember(patient, ref)
                return PatientResolution.matched(patient, "exact_name")
        for matched_by, pattern in _name_patterns(person):
            patient = await self.repository.find_patient_by_name(pattern, exact=False)
            if patient is not None:
                await self._remember(patient, ref)
                return PatientResolution.matched(patient, matched_by)
        return None

    async def _remember(self, patient: Patient, ref: str) -> None:
        if not patient.external_ref:
            await self.repository.set_patient_external_ref(patient, ref)

    async def _auto_register(self, person: SourcePerson) -> Patient:
        hospital_slug = slugify(self.hospital_id)
        person_slug = slugify(person.person_id)
        email = (
            f"patient.{hospital_slug}.{person_slug}"
            f"@{settings.auto_registration_email_domain}"
        )
        full_name = person.full_name or f"OpenMRS Patient {person.person_id}"
        password = generate_one_time_password()

        user = await self.repository.find_user_by_email(email)
        if user is None:
            user = await self.repository.create_user(
                email=email,
                hashed_password=hash_password(password),
                full_name=full_name,
                role=UserRole.patient.value,
            )
        else:
            password = None

        national_id = person.national_id or placeholder_national_id(
            self.hospital_id, person.person_id
        )
        patient = await self.repository.create_patient(
            user,
            national_id=national_id,
            external_ref=external_ref(self.hospital_id, person.person_id),
            first_name=(person.given_name or "").strip() or "Unknown",
            middle_name=(person.middle_name or "").strip() or None,
            last_name=(person.family_name or "").strip(),
            gender=map_gender(person.gender),
            date_of_birth=person.birthdate,
            address=person.address,
            city=person.city,
            province=person.province,
            country=person.country or settings.auto_registration_default_country,
            is_auto_registered=True,
        )
        if password:
            logger.info(
                "Auto-registered patient '%s' from hospital %s person %s: email=%s one-time password=%s",
                full_name,
                self.hospital_id,
                person.person_id,
                email,
                password,
            )
        else:
            logger.info(
                "Auto-registered patient '%s' from hospital %s person %s on existing account %s",
                full_name,
                self.hospital_id,
                person.person_id,
                email,
            )
        return patient
