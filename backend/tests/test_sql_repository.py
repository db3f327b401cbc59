from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from passport_sync.models import Base, MedicalRecord, UserRole
from passport_sync.services.sync.repository import SQLSyncRepository


@pytest.fixture()
async def db():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture()
def repo(db):
    return SQLSyncRepository(db)


async def _patient(repo, full_name="Jane Doe", national_id="NID-1", email="jane@example.com"):
    user = await repo.create_user(
        email=email,
        hashed_password="hashed",
        full_name=full_name,
        role=UserRole.patient.value,
    )
    first, _, last = full_name.partition(" ")
    return await repo.create_patient(user, national_id=national_id, first_name=first, last_name=last)


def _record(obs_id, scope="H1", **kwargs):
    kwargs.setdefault("natural_name", "Malaria Diagnosis")
    kwargs.setdefault("natural_date", datetime(2026, 10, 18, 9, 0, tzinfo=UTC))
    return MedicalRecord(
        record_type="condition",
        data={"name": "Malaria Diagnosis"},
        hospital_scope=scope,
        source_obs_id=obs_id,
        editable_by=[],
        **kwargs,
    )


@pytest.mark.anyio
async def test_patient_lookups(repo):
    patient = await _patient(repo)
    await repo.set_patient_external_ref(patient, "H1:42")

    assert (await repo.find_patient_by_national_id("NID-1")).id == patient.id
    assert (await repo.find_patient_by_external_ref("H1:42")).id == patient.id
    assert (await repo.find_patient_by_name("JANE DOE", exact=True)).id == patient.id
    assert (await repo.find_patient_by_name("%jane%doe%", exact=False)).id == patient.id
    assert await repo.find_patient_by_name("%smith%", exact=False) is None
    assert (await repo.find_user_by_email("JANE@example.com")).id == patient.user_id


@pytest.mark.anyio
async def test_name_match_ignores_non_patient_users(repo):
    user = await repo.create_user(
        email="doc@example.com",
        hashed_password="hashed",
        full_name="Jane Doe",
        role=UserRole.doctor.value,
    )
    await repo.create_doctor(user, license_number="LIC-1")

    assert await repo.find_patient_by_name("Jane Doe", exact=True) is None
    assert (await repo.find_doctor_by_name("jane doe")).license_number == "LIC-1"
    assert (await repo.find_doctor_by_license("LIC-1")).user_id == user.id


@pytest.mark.anyio
async def test_hospital_lookups_prefer_real_rows(repo):
    placeholder = await repo.create_hospital(
        name="Placeholder", license_number="OPENMRS-h1", source_hospital_id="H1", is_placeholder=True
    )
    real = await repo.create_hospital(
        name="Kigali Central Hospital", license_number="LIC-9", source_hospital_id="H1"
    )

    assert (await repo.find_hospital_by_name("kigali central hospital", exact=True)).id == real.id
    assert (await repo.find_hospital_by_name("%Central%", exact=False)).id == real.id
    assert (await repo.find_hospital_by_source_id("H1")).id == real.id
    assert placeholder.id != real.id


@pytest.mark.anyio
async def test_records_exact_and_natural_key(repo):
    patient = await _patient(repo)
    record = await repo.add_record(patient, _record("501"))

    assert await repo.record_exists("H1", "501") is True
    assert await repo.record_exists("H2", "501") is False
    found = await repo.find_record_by_natural_key(
        patient.id, "condition", "Malaria Diagnosis", datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
    )
    assert found.id == record.id
    assert (
        await repo.find_record_by_natural_key(patient.id, "medication", "Malaria Diagnosis", None)
        is None
    )
    assert [item.id for item in await repo.patient_collection(patient.id, "condition")] == [record.id]
    assert (await repo.get_record(record.id)).source_obs_id == "501"


@pytest.mark.anyio
async def test_unique_source_observation_per_hospital(repo):
    patient = await _patient(repo)
    await repo.add_record(patient, _record("501"))
    await repo.add_record(patient, _record("501", scope="H2"))

    with pytest.raises(IntegrityError):
        await repo.add_record(patient, _record("501"))


@pytest.mark.anyio
async def test_save_record_persists_editors(repo, db):
    patient = await _patient(repo)
    record = await repo.add_record(patient, _record("600"))

    record.editable_by.append(9)
    await repo.save_record(record)
    await db.commit()
    db.expire_all()

    assert (await repo.get_record(record.id)).editable_by == [9]
