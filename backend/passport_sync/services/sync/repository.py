"""Destination store repository implementations."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.database import session_scope
from passport_sync.models import Doctor, Hospital, MedicalRecord, Patient, User, UserRole
from passport_sync.services.sync.types import ensure_utc


class SyncRepository(Protocol):
    async def find_patient_by_national_id(self, national_id: str) -> Optional[Patient]:
        ...

    async def find_patient_by_external_ref(self, external_ref: str) -> Optional[Patient]:
        ...

    async def find_patient_by_name(self, value: str, *, exact: bool) -> Optional[Patient]:
        ...

    async def set_patient_external_ref(self, patient: Patient, external_ref: str) -> None:
        ...

    async def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    async def create_user(
        self, *, email: str, hashed_password: str, full_name: str, role: str
    ) -> User:
        ...

    async def create_patient(self, user: User, **fields: Any) -> Patient:
        ...

    async def find_doctor_by_license(self, license_number: str) -> Optional[Doctor]:
        ...

    async def find_doctor_by_name(self, name: str) -> Optional[Doctor]:
        ...

    async def create_doctor(self, user: User, **fields: Any) -> Doctor:
        ...

    async def find_hospital_by_name(self, value: str, *, exact: bool) -> Optional[Hospital]:
        ...

    async def find_hospital_by_source_id(self, source_hospital_id: str) -> Optional[Hospital]:
        ...

    async def create_hospital(self, **fields: Any) -> Hospital:
        ...

    async def record_exists(self, hospital_scope: str, source_obs_id: str) -> bool:
        ...

    async def find_record_by_natural_key(
        self,
        patient_id: int,
        record_type: str,
        name: Optional[str],
        date: Optional[datetime],
    ) -> Optional[MedicalRecord]:
        ...

    async def add_record(self, patient: Patient, record: MedicalRecord) -> MedicalRecord:
        ...

    async def get_record(self, record_id: int) -> Optional[MedicalRecord]:
        ...

    async def save_record(self, record: MedicalRecord) -> MedicalRecord:
        ...

    async def patient_collection(self, patient_id: int, record_type: str) -> list[MedicalRecord]:
        ...

    def observation_scope(self) -> AbstractAsyncContextManager[None]:
        ...


RepositoryScope = Callable[[], AbstractAsyncContextManager[SyncRepository]]


class SQLSyncRepository:
    """Sync repository backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _first(self, query):
        result = await self.db.execute(query.limit(1))
        return result.scalars().first()

    async def find_patient_by_national_id(self, national_id: str) -> Optional[Patient]:
        return await self._first(select(Patient).where(Patient.national_id == national_id))

    async def find_patient_by_external_ref(self, external_ref: str) -> Optional[Patient]:
        return await self._first(select(Patient).where(Patient.external_ref == external_ref))

    async def find_patient_by_name(self, value: str, *, exact: bool) -> Optional[Patient]:
        query = (
            select(Patient)
            .join(User, Patient.user_id == User.id)
            .where(User.role == UserRole.patient.value)
        )
        if exact:
            query = query.where(func.lower(User.full_name) == value.lower())
        else:
            query = query.where(func.lower(User.full_name).like(value.lower()))
        return await self._first(query.order_by(Patient.id))

    async def set_patient_external_ref(self, patient: Patient, external_ref: str) -> None:
        patient.external_ref = external_ref
        await self.db.flush()

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return await self._first(select(User).where(func.lower(User.email) == email.lower()))

    async def create_user(
        self, *, email: str, hashed_password: str, full_name: str, role: str
    ) -> User:
        user = User(
            email=email,
            hashed_password=hashed_password,
            full_name=full_name,
            role=role,
            is_active=True,
            is_email_verified=False,
        )
        self.db.add(user)
        await self.db.flush()
        return user

    async def create_patient(self, user: User, **fields: Any) -> Patient:
        patient = Patient(user_id=user.id, **fields)
        patient.user = user
        self.db.add(patient)
        await self.db.flush()
        return patient

    async def find_doctor_by_license(self, license_number: str) -> Optional[Doctor]:
        return await self._first(
            select(Doctor).where(Doctor.license_number == license_number)
        )

    async def find_doctor_by_name(self, name: str) -> Optional[Doctor]:
        return await self._first(
            select(Doctor)
            .join(User, Doctor.user_id == User.id)
            .where(func.lower(User.full_name) == name.lower())
            .order_by(Doctor.id)
        )

    async def create_doctor(self, user: User, **fields: Any) -> Doctor:
        doctor = Doctor(user_id=user.id, **fields)
        doctor.user = user
        self.db.add(doctor)
        await self.db.flush()
        return doctor

    async def find_hospital_by_name(self, value: str, *, exact: bool) -> Optional[Hospital]:
        if exact:
            clause = func.lower(Hospital.name) == value.lower()
        else:
            clause = func.lower(Hospital.name).like(value.lower())
        return await self._first(select(Hospital).where(clause).order_by(Hospital.id))

    async def find_hospital_by_source_id(self, source_hospital_id: str) -> Optional[Hospital]:
        return await self._first(
            select(Hospital)
            .where(Hospital.source_hospital_id == source_hospital_id)
            .order_by(Hospital.is_placeholder, Hospital.id)
        )

    async def create_hospital(self, **fields: Any) -> Hospital:
        hospital = Hospital(**fields)
        self.db.add(hospital)
        await self.db.flush()
        return hospital

    async def record_exists(self, hospital_scope: str, source_obs_id: str) -> bool:
        count = await self.db.scalar(
            select(func.count())
            .select_from(MedicalRecord)
            .where(
                MedicalRecord.hospital_scope == hospital_scope,
                MedicalRecord.source_obs_id == source_obs_id,
            )
        )
        return bool(count)

    async def find_record_by_natural_key(
        self,
        patient_id: int,
        record_type: str,
        name: Optional[str],
        date: Optional[datetime],
    ) -> Optional[MedicalRecord]:
        query = select(MedicalRecord).where(
            MedicalRecord.patient_id == patient_id,
            MedicalRecord.record_type == record_type,
        )
        if name:
            query = query.where(MedicalRecord.natural_name == name)
        if date is not None:
            query = query.where(MedicalRecord.natural_date == ensure_utc(date))
        return await self._first(query.order_by(MedicalRecord.id))

    async def add_record(self, patient: Patient, record: MedicalRecord) -> MedicalRecord:
        record.patient_id = patient.id
        self.db.add(record)
        await self.db.flush()
        return record

    async def get_record(self, record_id: int) -> Optional[MedicalRecord]:
        result = await self.db.execute(
            select(MedicalRecord).where(MedicalRecord.id == record_id)
        )
        return result.scalar_one_or_none()

    async def save_record(self, record: MedicalRecord) -> MedicalRecord:
        self.db.add(record)
        await self.db.flush()
        return record

    async def patient_collection(self, patient_id: int, record_type: str) -> list[MedicalRecord]:
        result = await self.db.execute(
            select(MedicalRecord)
            .where(
                MedicalRecord.patient_id == patient_id,
                MedicalRecord.record_type == record_type,
            )
            .order_by(MedicalRecord.id)
        )
        return list(result.scalars().all())

    @asynccontextmanager
    async def observation_scope(self) -> AsyncIterator[None]:
        async with self.db.begin_nested():
            yield


@asynccontextmanager
async def session_repository_scope() -> AsyncIterator[SQLSyncRepository]:
    """Open a destination session for one batch; commit on success."""
    async with session_scope() as db:
        yield SQLSyncRepository(db)


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


class InMemorySyncRepository:
    """In-memory repository for tests and local demos."""

    def __init__(self):
        self.users: list[User] = []
        self.patients: list[Patient] = []
        self.doctors: list[Doctor] = []
        self.hospitals: list[Hospital] = []
        self.records: list[MedicalRecord] = []
        self._next_id = 1
        self.saves = 0

    def _assign_id(self, instance) -> None:
        instance.id = self._next_id
        self._next_id += 1

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["InMemorySyncRepository"]:
        yield self

    async def find_patient_by_national_id(self, national_id: str) -> Optional[Patient]:
        return next((p for p in self.patients if p.national_id == national_id), None)

    async def find_patient_by_external_ref(self, external_ref: str) -> Optional[Patient]:
        return next((p for p in self.patients if p.external_ref == external_ref), None)

    async def find_patient_by_name(self, value: str, *, exact: bool) -> Optional[Patient]:
        for patient in self.patients:
            full_name = patient.user.full_name if patient.user else patient.full_name
            if exact and full_name.lower() == value.lower():
                return patient
            if not exact and _like_to_regex(value).fullmatch(full_name):
                return patient
        return None

    async def set_patient_external_ref(self, patient: Patient, external_ref: str) -> None:
        patient.external_ref = external_ref

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users if u.email.lower() == email.lower()), None)

    async def create_user(
        self, *, email: str, hashed_password: str, full_name: str, role: str
    ) -> User:
        if await self.find_user_by_email(email):
            raise IntegrityError("INSERT INTO users", None, ValueError(f"duplicate email {email}"))
        user = User(
            email=email,
            hashed_password=hashed_password,
            full_name=full_name,
            role=role,
            is_active=True,
            is_email_verified=False,
        )
        self._assign_id(user)
        self.users.append(user)
        return user

    async def create_patient(self, user: User, **fields: Any) -> Patient:
        patient = Patient(user_id=user.id, **fields)
        patient.user = user
        self._assign_id(patient)
        self.patients.append(patient)
        return patient

    async def find_doctor_by_license(self, license_number: str) -> Optional[Doctor]:
        return next((d for d in self.doctors if d.license_number == license_number), None)

    async def find_doctor_by_name(self, name: str) -> Optional[Doctor]:
        return next(
            (d for d in self.doctors if d.user and d.user.full_name.lower() == name.lower()),
            None,
        )

    async def create_doctor(self, user: User, **fields: Any) -> Doctor:
        doctor = Doctor(user_id=user.id, **fields)
        doctor.user = user
        self._assign_id(doctor)
        self.doctors.append(doctor)
        return doctor

    async def find_hospital_by_name(self, value: str, *, exact: bool) -> Optional[Hospital]:
        for hospital in self.hospitals:
            if exact and hospital.name.lower() == value.lower():
                return hospital
            if not exact and _like_to_regex(value).fullmatch(hospital.name):
                return hospital
        return None

    async def find_hospital_by_source_id(self, source_hospital_id: str) -> Optional[Hospital]:
        matches = [h for h in self.hospitals if h.source_hospital_id == source_hospital_id]
        matches.sort(key=lambda h: (bool(h.is_placeholder), h.id))
        return matches[0] if matches else None

    async def create_hospital(self, **fields: Any) -> Hospital:
        hospital = Hospital(**fields)
        self._assign_id(hospital)
        self.hospitals.append(hospital)
        return hospital

    async def record_exists(self, hospital_scope: str, source_obs_id: str) -> bool:
        return any(
            r.hospital_scope == hospital_scope and r.source_obs_id == source_obs_id
            for r in self.records
        )

    async def find_record_by_natural_key(
        self,
        patient_id: int,
        record_type: str,
        name: Optional[str],
        date: Optional[datetime],
    ) -> Optional[MedicalRecord]:
        for record in self.records:
            if record.patient_id != patient_id or record.record_type != record_type:
                continue
            if name and record.natural_name != name:
                continue
            if date is not None and ensure_utc(record.natural_date) != ensure_utc(date):
                continue
            return record
        return None

    async def add_record(self, patient: Patient, record: MedicalRecord) -> MedicalRecord:
        if record.source_obs_id is not None and await self.record_exists(
            record.hospital_scope, record.source_obs_id
        ):
            raise IntegrityError(
                "INSERT INTO medical_records",
                None,
                ValueError(f"duplicate source observation {record.source_obs_id}"),
            )
        record.patient_id = patient.id
        self._assign_id(record)
        self.records.append(record)
        return record

    async def get_record(self, record_id: int) -> Optional[MedicalRecord]:
        return next((r for r in self.records if r.id == record_id), None)

    async def save_record(self, record: MedicalRecord) -> MedicalRecord:
        self.saves += 1
        return record

    async def patient_collection(self, patient_id: int, record_type: str) -> list[MedicalRecord]:
        return [
            r for r in self.records if r.patient_id == patient_id and r.record_type == record_type
        ]

    @asynccontextmanager
    async def observation_scope(self) -> AsyncIterator[None]:
        sizes = {
            name: len(getattr(self, name))
            for name in ("users", "patients", "doctors", "hospitals", "records")
        }
        try:
            yield
        except Exception:
            for name, size in sizes.items():
                del getattr(self, name)[size:]
            raise
