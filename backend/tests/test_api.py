from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, FakeGateway, FixedClock, make_obs
from passport_sync.api import deps
from passport_sync.config import Settings
from passport_sync.main import app
from passport_sync.models import MedicalRecord
from passport_sync.services.sync.access_window import AccessWindowPolicy
from passport_sync.services.sync.categorizer import ConceptCategorizer, DEFAULT_RULES
from passport_sync.services.sync.orchestrators import DirectDatabaseSyncOrchestrator
from passport_sync.services.sync.service import SyncService
from passport_sync.services.sync.state import InMemorySyncStateStore


class SingleGatewayRegistry:
    def __init__(self, gateway):
        self.gateway = gateway

    def hospital_ids(self):
        return [self.gateway.hospital_id]

    def hospital_name(self, hospital_id):
        return hospital_id

    async def get_gateway(self, hospital_id):
        return self.gateway

    async def init(self):
        return 1

    async def close_all(self):
        return None


@pytest.fixture()
def service(repository, jane_doe):
    @asynccontextmanager
    async def scope():
        yield repository

    gateway = FakeGateway(
        "H1",
        [make_obs(501, concept="Malaria Diagnosis", coded_value="Quinine")],
        {"42": jane_doe},
        initial_id=500,
    )
    registry = SingleGatewayRegistry(gateway)
    config = Settings(direct_db_hospital_id="H1")
    state_store = InMemorySyncStateStore()
    orchestrator = DirectDatabaseSyncOrchestrator(
        registry,
        state_store=state_store,
        config=config,
        repository_scope=scope,
        categorizer=ConceptCategorizer(DEFAULT_RULES),
    )
    return SyncService(
        config=config,
        registry=registry,
        state_store=state_store,
        orchestrators=[orchestrator],
    )


@pytest.fixture()
def client(repository, service):
    app.dependency_overrides[deps.get_service] = lambda: service
    app.dependency_overrides[deps.get_sync_repo] = lambda: repository
    app.dependency_overrides[deps.get_access_policy] = lambda: AccessWindowPolicy(
        2, 3, clock=FixedClock()
    )
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _add_record(repository, hours_ago, record_type="medication"):
    record = MedicalRecord(
        record_type=record_type,
        data={"medicationName": "Quinine", "medicationStatus": "Active"},
        created_by_user_id=5,
        hospital_scope="H1",
        source_obs_id=f"obs-{hours_ago}",
        arrival_at=NOW - timedelta(hours=hours_ago),
        editable_by=[],
    )
    record.patient_id = 1
    repository._assign_id(record)
    repository.records.append(record)
    return record


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "passport-sync"


def test_run_sync_and_status(client, repository):
    response = client.post("/api/v1/sync/direct_db/run")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["count"] == 1
    assert repository.records[0].source_obs_id == "501"

    status = client.get("/api/v1/sync/status").json()
    assert status == [
        {
            "variant": "direct_db",
            "is_running": False,
            "is_scheduled": False,
            "last_synced_marker": {"H1": "501"},
            "configured_interval_ms": 30000,
            "last_run_at": status[0]["last_run_at"],
        }
    ]
    assert status[0]["last_run_at"] is not None


def test_run_unknown_variant_returns_error_envelope(client):
    response = client.post("/api/v1/sync/rest_api/run", headers={"X-Request-Id": "req-1"})

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["type"] == "http_error"
    assert error["request_id"] == "req-1"
    assert "rest_api" in error["message"]


def test_run_for_unconfigured_hospital_reports_failure(client):
    response = client.post("/api/v1/sync/direct_db/run", params={"hospital_id": "H9"})

    assert response.status_code == 200
    assert response.json()["success"] is False


def test_api_key_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(deps.settings, "api_key", "s3cret")

    assert client.get("/api/v1/sync/status").status_code == 401
    assert client.get("/api/v1/sync/status", headers={"X-API-Key": "s3cret"}).status_code == 200


def test_edit_info_reconciles_medication_status(client, repository):
    record = _add_record(repository, 2.5)

    response = client.get(f"/api/v1/records/{record.id}/edit-info", params={"actor_id": 8})

    assert response.status_code == 200
    body = response.json()
    assert body["can_edit"] is False
    assert body["is_editable"] is True
    assert body["state"] == "aging"
    assert body["medication_status"] == "Past"
    assert record.data["medicationStatus"] == "Past"
    assert repository.saves == 1

    author = client.get(f"/api/v1/records/{record.id}/edit-info", params={"actor_id": 5}).json()
    assert author["can_edit"] is True


def test_grant_editor_and_locked_conflict(client, repository):
    aging = _add_record(repository, 2.5)
    locked = _add_record(repository, 4)

    granted = client.post(f"/api/v1/records/{aging.id}/editors", json={"actor_id": 8})
    assert granted.status_code == 200
    assert granted.json() == {"record_id": aging.id, "granted": True, "editable_by": [8]}

    refused = client.post(f"/api/v1/records/{locked.id}/editors", json={"actor_id": 8})
    assert refused.status_code == 409
    assert "locked" in refused.json()["error"]["message"]


def test_missing_record_and_invalid_body(client):
    assert client.get("/api/v1/records/999/edit-info").status_code == 404

    invalid = client.post("/api/v1/records/1/editors", json={"actor_id": 0})
    assert invalid.status_code == 422
    assert invalid.json()["error"]["type"] == "validation_error"
