from datetime import UTC, datetime

import pytest

from conftest import NOW, make_obs
from passport_sync.models import UserRole
from passport_sync.services.sync.categorizer import ConceptCategorizer, DEFAULT_RULES
from passport_sync.services.sync.dedup import DedupGuard
from passport_sync.services.sync.writer import ProviderDirectory, RecordWriter, build_payload


@pytest.fixture()
def categorizer():
    return ConceptCategorizer(DEFAULT_RULES)


async def _patient(repository):
    user = await repository.create_user(
        email="jane@example.com",
        hashed_password="hashed",
        full_name="Jane Doe",
        role=UserRole.patient.value,
    )
    return await repository.create_patient(
        user, national_id="NID-1", first_name="Jane", last_name="Doe"
    )


def test_condition_payload_carries_treatment_and_procedure(categorizer):
    classified = categorizer.categorize(
        make_obs(501, concept="Malaria Diagnosis", coded_value="Quinine")
    )
    payload = build_payload(
        classified,
        recorded_at=datetime(2026, 10, 18, 9, 0, tzinfo=UTC),
        hospital_name="Kigali Central",
    )

    assert payload["name"] == "Malaria Diagnosis"
    assert payload["diagnosis"] == "Malaria Diagnosis"
    assert payload["details"] == "Treatment: Quinine"
    assert payload["diagnosed"] == "2026-10-18T09:00:00+00:00"
    assert payload["procedure"].startswith("Synced from OpenMRS - Diagnosis: Malaria Diagnosis")
    assert "Doctor: Unknown Doctor" in payload["procedure"]


def test_medication_test_and_visit_payloads(categorizer):
    when = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
    medication = build_payload(
        categorizer.categorize(make_obs(1, concept="Drug", text_value="500mg", comment="twice daily")),
        recorded_at=when,
        hospital_name="H",
    )
    test = build_payload(
        categorizer.categorize(make_obs(2, concept="Lab Result", numeric_value=12.5)),
        recorded_at=when,
        hospital_name="H",
    )
    visit = build_payload(
        categorizer.categorize(make_obs(3, concept="Clinic Visit")),
        recorded_at=when,
        hospital_name="H",
    )

    assert medication["medicationName"] == "Drug"
    assert medication["dosage"] == "500mg"
    assert medication["medicationStatus"] == "Active"
    assert medication["notes"] == "twice daily"
    assert test["testName"] == "Lab Result"
    assert test["result"] == "12.5"
    assert test["testStatus"] == "Normal"
    assert visit["reason"] == "Clinic Visit"
    assert visit["visitDate"] == when.isoformat()
    assert "notes" not in visit


@pytest.mark.anyio
async def test_write_sets_sync_fields_and_placeholders(repository, categorizer, clock):
    patient = await _patient(repository)
    writer = RecordWriter(
        repository,
        "H1",
        directory=ProviderDirectory(repository, "H1", "Kigali Central"),
        clock=clock,
    )
    classified = categorizer.categorize(
        make_obs(501, concept="Malaria Diagnosis", coded_value="Quinine", provider_name="Dr. Ann Uwase")
    )

    record = await writer.write(patient, classified)

    assert record.id is not None
    assert record.patient_id == patient.id
    assert record.record_type == "condition"
    assert record.hospital_scope == "H1"
    assert record.source_obs_id == "501"
    assert record.source_person_id == "42"
    assert record.arrival_at == NOW
    assert record.editable_by == []
    assert record.natural_name == "Malaria Diagnosis"
    assert record.source_metadata["value_type"] == "coded"

    hospital = repository.hospitals[0]
    assert hospital.name == "Kigali Central"
    assert hospital.is_placeholder is True
    assert hospital.source_hospital_id == "H1"
    doctor = repository.doctors[0]
    assert doctor.user.full_name == "Ann Uwase"
    assert doctor.user.role == UserRole.doctor.value
    assert doctor.hospital_id == hospital.id
    assert record.created_by_user_id == doctor.user_id
    assert record.data["hospital"] == "Kigali Central"


@pytest.mark.anyio
async def test_directory_reuses_existing_hospital_and_doctor(repository, categorizer, clock):
    patient = await _patient(repository)
    existing = await repository.create_hospital(
        name="Kigali Central Hospital", license_number="LIC-1", status="active"
    )
    writer = RecordWriter(repository, "H1", clock=clock)

    first = categorizer.categorize(
        make_obs(1, location_name="Kigali Central", provider_name="Ann Uwase", provider_identifier="PRV-9")
    )
    second = categorizer.categorize(
        make_obs(2, concept="Drug", location_name="Kigali Central", provider_name="Ann Uwase", provider_identifier="PRV-9")
    )
    await writer.write(patient, first)
    await writer.write(patient, second)

    assert repository.hospitals == [existing]
    assert len(repository.doctors) == 1
    assert repository.doctors[0].license_number == "PRV-9"
    assert repository.doctors[0].provider_identifier == "PRV-9"


@pytest.mark.anyio
async def test_dedup_exact_and_natural_key(repository, categorizer, clock):
    patient = await _patient(repository)
    writer = RecordWriter(repository, "H1", clock=clock)
    guard = DedupGuard(repository)
    classified = categorizer.categorize(make_obs(501, concept="Malaria Diagnosis"))
    await writer.write(patient, classified)

    exact = await guard.is_duplicate("H1", "501", classified, patient_id=patient.id)
    assert exact.is_duplicate is True
    assert exact.reason == "source_obs_id"

    # Same fact re-keyed under another hospital scope
    natural = await guard.is_duplicate("H2", "900", classified, patient_id=patient.id)
    assert natural.is_duplicate is True
    assert natural.reason == "natural_key"
    assert natural.existing_record_id == repository.records[0].id

    other_day = categorizer.categorize(
        make_obs(502, concept="Malaria Diagnosis", created_at=datetime(2026, 10, 19, tzinfo=UTC))
    )
    assert (await guard.is_duplicate("H1", "502", other_day, patient_id=patient.id)).is_duplicate is False
    assert await guard.exact_match("H2", "501") is False
