from datetime import UTC, date, datetime

import pytest
import requests

import passport_sync.services.sync.rest_source as rest_source
from passport_sync.config import Settings
from passport_sync.exceptions import SourceConnectionError
from passport_sync.services.sync.fetcher import TimestampRefFetcher
from passport_sync.services.sync.rest_source import (
    RestSourceGateway,
    clean_display_name,
    map_observation,
    map_person,
    parse_openmrs_datetime,
)
from passport_sync.services.sync.types import CursorMarker


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _obs(uuid, when, *, concept="Malaria Diagnosis", value=None, voided=False, created=None):
    return {
        "uuid": uuid,
        "concept": {"display": concept},
        "person": {"uuid": "person-uuid"},
        "obsDatetime": when,
        "value": value if value is not None else {"display": "Quinine", "uuid": "c-1"},
        "voided": voided,
        "encounter": {
            "location": {"uuid": "loc-1", "display": "Kigali Central"},
            "encounterProviders": [
                {"provider": {"display": "PRV-1 - Ann Uwase", "identifier": "PRV-1"}}
            ],
        },
        "auditInfo": {
            "creator": {"uuid": "u-1", "display": "admin"},
            "dateCreated": created or when,
        },
    }


@pytest.fixture()
def config():
    return Settings(
        rest_base_url="http://openmrs.test/openmrs/",
        rest_username="sync",
        rest_password="secret",
        rest_timeout_seconds=5,
    )


@pytest.fixture()
def calls(monkeypatch):
    recorded = []
    responses = {}

    def fake_get(url, params=None, auth=None, headers=None, timeout=None, verify=None):
        recorded.append({"url": url, "params": params, "auth": auth, "timeout": timeout})
        response = responses.get(url)
        if isinstance(response, Exception):
            raise response
        return response or FakeResponse({}, 404)

    monkeypatch.setattr(rest_source.requests, "get", fake_get)
    return recorded, responses


def test_parse_openmrs_datetime_formats():
    expected = datetime(2026, 10, 18, 7, 0, tzinfo=UTC)
    assert parse_openmrs_datetime("2026-10-18T09:00:00.000+0200") == expected
    assert parse_openmrs_datetime("2026-10-18T07:00:00Z") == expected
    assert parse_openmrs_datetime("not a date") is None
    assert parse_openmrs_datetime(None) is None


def test_clean_display_name():
    assert clean_display_name("PRV-1 - Ann Uwase") == "Ann Uwase"
    assert clean_display_name("Jane Doe (100-8)") == "Jane Doe"
    assert clean_display_name(None) == ""


def test_map_observation_reads_nested_fields():
    raw = map_observation(_obs("o-1", "2026-10-18T09:00:00.000+0000"))

    assert raw.source_obs_id == "o-1"
    assert raw.source_person_id == "person-uuid"
    assert raw.concept_label == "Malaria Diagnosis"
    assert raw.coded_value == "Quinine"
    assert raw.location_name == "Kigali Central"
    assert raw.provider_name == "Ann Uwase"
    assert raw.provider_identifier == "PRV-1"
    assert raw.creator_name == "admin"

    numeric = map_observation(_obs("o-2", "2026-10-18T09:00:00Z", value=37.5))
    assert numeric.numeric_value == 37.5
    assert numeric.coded_value is None


def test_map_person_prefers_structured_names_and_national_id():
    payload = {
        "identifiers": [
            {"identifier": "MRN-1", "identifierType": {"display": "OpenMRS ID"}},
            {"identifier": "1199780012345678", "identifierType": {"display": "National ID"}},
        ],
        "person": {
            "gender": "F",
            "birthdate": "1990-05-01T00:00:00.000+0000",
            "preferredName": {"givenName": "Jane", "familyName": "Doe"},
            "preferredAddress": {"cityVillage": "Kigali", "country": "Rwanda"},
        },
    }

    person = map_person(payload, "person-uuid")

    assert person.full_name == "Jane Doe"
    assert person.national_id == "1199780012345678"
    assert person.birthdate == date(1990, 5, 1)
    assert person.city == "Kigali"


def test_map_person_falls_back_to_display():
    person = map_person({"person": {"display": "100-8 - Eric Nkusi"}}, "p-1")

    assert person.given_name == "Eric"
    assert person.family_name == "Nkusi"
    assert person.national_id is None


@pytest.mark.anyio
async def test_fetch_since_filters_sorts_and_caps(config, calls):
    recorded, responses = calls
    responses["http://openmrs.test/openmrs/ws/rest/v1/obs"] = FakeResponse(
        {
            "results": [
                _obs("c", "2026-10-18T10:00:00Z"),
                _obs("b", "2026-10-18T09:00:00Z"),
                _obs("a", "2026-10-18T09:00:00Z"),
                _obs("z", "2026-10-18T08:00:00Z"),
                _obs("v", "2026-10-18T11:00:00Z", voided=True),
            ]
        }
    )
    gateway = RestSourceGateway("REST", config)
    marker = CursorMarker(marker_at=datetime(2026, 10, 18, 9, 0, tzinfo=UTC), marker_ref="a")

    rows = await gateway.fetch_observations_since(marker, 100)

    assert [raw.source_obs_id for raw in rows] == ["b", "c"]
    call = recorded[0]
    assert call["params"]["fromdate"] == "2026-10-11T09:00:00.000+0000"
    assert call["params"]["startIndex"] == 0
    assert call["params"]["v"] == "full"
    assert call["auth"] == ("sync", "secret")
    assert call["timeout"] == 5


@pytest.mark.anyio
async def test_get_person_returns_none_on_404(config, calls):
    _, responses = calls
    gateway = RestSourceGateway("REST", config)

    assert await gateway.get_person("missing") is None

    responses["http://openmrs.test/openmrs/ws/rest/v1/patient/p-1"] = FakeResponse(
        {"person": {"display": "Eric Nkusi"}}
    )
    assert (await gateway.get_person("p-1")).full_name == "Eric Nkusi"


@pytest.mark.anyio
async def test_transport_and_http_errors_raise_source_connection_error(config, calls):
    _, responses = calls
    gateway = RestSourceGateway("REST", config)
    responses["http://openmrs.test/openmrs/ws/rest/v1/session"] = requests.ConnectionError("refused")
    with pytest.raises(SourceConnectionError, match="request failed"):
        await gateway.ping()

    responses["http://openmrs.test/openmrs/ws/rest/v1/obs"] = FakeResponse(None, 500, "boom")
    with pytest.raises(SourceConnectionError, match="HTTP 500"):
        await gateway.fetch_observations_since(None, 10)


@pytest.mark.anyio
async def test_obs_id_cursor_is_not_supported(config):
    with pytest.raises(NotImplementedError):
        await RestSourceGateway("REST", config).fetch_observations_after_id(0, 10)


class FakeObsServer:
    """OpenMRS obs endpoint honouring ``fromdate`` on obsDatetime and paging."""

    def __init__(self, observations):
        self.observations = list(observations)
        self.requests = []

    def __call__(self, url, params=None, **_kwargs):
        params = dict(params or {})
        self.requests.append(params)
        since = parse_openmrs_datetime(params.get("fromdate"))
        rows = [
            obs
            for obs in self.observations
            if since is None or parse_openmrs_datetime(obs["obsDatetime"]) >= since
        ]
        start = int(params.get("startIndex", 0))
        end = start + int(params["limit"])
        links = [{"rel": "next", "uri": f"{url}?startIndex={end}"}] if end < len(rows) else []
        return FakeResponse({"results": rows[start:end], "links": links})


async def _sync_cycle(gateway, fetcher, marker, synced):
    batch = await fetcher.fetch(gateway, marker)
    synced.extend(raw.source_obs_id for raw in batch)
    return fetcher.marker_for(batch[-1]) if batch else marker


@pytest.mark.anyio
async def test_cursor_moves_past_a_timestamp_shared_by_more_than_a_batch(config, monkeypatch):
    server = FakeObsServer(
        _obs(f"o-{index:03d}", "2026-10-18T09:00:00Z", concept=f"Concept {index}")
        for index in range(150)
    )
    monkeypatch.setattr(rest_source.requests, "get", server)
    gateway = RestSourceGateway("REST", config)
    fetcher = TimestampRefFetcher(100, 24)

    synced = []
    marker = None
    for _ in range(3):
        marker = await _sync_cycle(gateway, fetcher, marker, synced)

    assert len(synced) == 150
    assert len(set(synced)) == 150
    assert marker == CursorMarker(
        marker_at=datetime(2026, 10, 18, 9, 0, tzinfo=UTC), marker_ref="o-149"
    )
    assert {params["startIndex"] for params in server.requests} == {0, 100}


@pytest.mark.anyio
async def test_back_dated_observation_created_after_cursor_is_synced(config, monkeypatch):
    server = FakeObsServer([_obs("a", "2026-10-18T10:00:00Z")])
    monkeypatch.setattr(rest_source.requests, "get", server)
    gateway = RestSourceGateway("REST", config)
    fetcher = TimestampRefFetcher(100, 24)
    synced = []

    marker = await _sync_cycle(gateway, fetcher, None, synced)
    assert marker == CursorMarker(
        marker_at=datetime(2026, 10, 18, 10, 0, tzinfo=UTC), marker_ref="a"
    )

    # Entered at 11:00 for a 09:00 clinical event
    server.observations.append(
        _obs("b", "2026-10-18T09:00:00Z", created="2026-10-18T11:00:00Z")
    )
    marker = await _sync_cycle(gateway, fetcher, marker, synced)

    assert synced == ["a", "b"]
    assert marker == CursorMarker(
        marker_at=datetime(2026, 10, 18, 11, 0, tzinfo=UTC), marker_ref="b"
    )


@pytest.mark.anyio
async def test_paging_stops_when_server_repeats_a_page(config, calls):
    recorded, responses = calls
    responses["http://openmrs.test/openmrs/ws/rest/v1/obs"] = FakeResponse(
        {"results": [_obs("a", "2026-10-18T09:00:00Z"), _obs("b", "2026-10-18T09:00:00Z")]}
    )
    gateway = RestSourceGateway("REST", config)

    rows = await gateway.fetch_observations_since(None, 2)

    assert [raw.source_obs_id for raw in rows] == ["a", "b"]
    assert len(recorded) == 2
