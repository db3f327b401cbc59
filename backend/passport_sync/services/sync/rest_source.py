"""OpenMRS REST source gateway.

Requests run through ``requests`` in a worker thread so the event loop is never
blocked by the source API.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any

import requests

from passport_sync.config import Settings, settings as default_settings
from passport_sync.exceptions import SourceConnectionError
from passport_sync.services.sync.source import is_national_id_type, join_name
from passport_sync.services.sync.types import (
    CursorMarker,
    RawObservation,
    SourcePerson,
    ensure_utc,
)

logger = logging.getLogger("passport_sync.rest_source")

_LEADING_ID = re.compile(r"^\s*[^\s]+\s+-\s+")
_TRAILING_ID = re.compile(r"\s*\([^)]*\)\s*$")
_BASIC_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def clean_display_name(value: str | None) -> str:
    """Strip identifiers from display names like ``ID - Given Family``."""
    text = (value or "").strip()
    text = _LEADING_ID.sub("", text)
    text = _TRAILING_ID.sub("", text)
    return " ".join(text.split())


def parse_openmrs_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    text = _BASIC_OFFSET.sub(r"\1:\2", text)
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _display(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("display") or value.get("name")
    if value is None:
        return None
    return str(value)


def _extract_value(value: Any) -> tuple[str | None, str | None, float | None]:
    """Split an obs value into ``(coded, text, numeric)``."""
    if isinstance(value, dict):
        return _display(value), None, None
    if isinstance(value, bool):
        return None, str(value).lower(), None
    if isinstance(value, (int, float)):
        return None, None, float(value)
    if value is None:
        return None, None, None
    return None, str(value), None


def _provider(obs: dict[str, Any]) -> tuple[str | None, str | None]:
    encounter = obs.get("encounter") or {}
    for item in encounter.get("encounterProviders") or []:
        provider = item.get("provider") or {}
        name = clean_display_name(provider.get("display") or provider.get("name"))
        if name:
            return name, provider.get("identifier")
    creator = (obs.get("auditInfo") or {}).get("creator") or {}
    name = clean_display_name(_display(creator))
    return name or None, None


def map_observation(obs: dict[str, Any]) -> RawObservation:
    coded, text_value, numeric = _extract_value(obs.get("value"))
    encounter = obs.get("encounter") or {}
    audit = obs.get("auditInfo") or {}
    person = obs.get("person") or {}
    provider_name, provider_identifier = _provider(obs)
    location = encounter.get("location") or obs.get("location")
    concept = obs.get("concept") or {}
    return RawObservation(
        source_obs_id=str(obs.get("uuid")),
        source_person_id=str(person.get("uuid") or ""),
        concept_label=_display(concept) or "Unknown Concept",
        coded_value=coded,
        text_value=text_value,
        numeric_value=numeric,
        timestamp=parse_openmrs_datetime(obs.get("obsDatetime")),
        created_at=parse_openmrs_datetime(audit.get("dateCreated")),
        comment=obs.get("comment"),
        creator_id=((audit.get("creator") or {}).get("uuid")),
        creator_name=clean_display_name(_display(audit.get("creator"))) or None,
        location_id=(location or {}).get("uuid") if isinstance(location, dict) else None,
        location_name=_display(location),
        provider_name=provider_name,
        provider_identifier=provider_identifier,
    )


def observation_marker(raw: RawObservation) -> CursorMarker:
    return CursorMarker(marker_at=raw.created_at or raw.timestamp, marker_ref=raw.source_obs_id)


def _has_next_page(payload: dict[str, Any], page_size: int, limit: int) -> bool:
    links = payload.get("links") or []
    if any(isinstance(link, dict) and link.get("rel") == "next" for link in links):
        return True
    return page_size >= limit


def map_person(payload: dict[str, Any], person_id: str) -> SourcePerson:
    person = payload.get("person") or payload
    preferred = person.get("preferredName") or {}
    given = preferred.get("givenName")
    middle = preferred.get("middleName")
    family = preferred.get("familyName")
    if not (given or family):
        parts = clean_display_name(person.get("display") or payload.get("display")).split()
        given = parts[0] if parts else ""
        family = " ".join(parts[1:])
    national_id = None
    for identifier in payload.get("identifiers") or []:
        type_name = _display(identifier.get("identifierType"))
        if identifier.get("identifier") and is_national_id_type(type_name):
            national_id = identifier["identifier"]
            break
    address = person.get("preferredAddress") or {}
    birthdate = parse_openmrs_datetime(person.get("birthdate"))
    return SourcePerson(
        person_id=person_id,
        given_name=join_name(given),
        middle_name=join_name(middle) or None,
        family_name=join_name(family),
        gender=person.get("gender"),
        birthdate=birthdate.date() if birthdate else _date_only(person.get("birthdate")),
        national_id=national_id,
        address=address.get("address1"),
        city=address.get("cityVillage"),
        province=address.get("stateProvince"),
        country=address.get("country"),
    )


def _date_only(value: Any) -> date | None:
    try:
        return date.fromisoformat(str(value)[:10]) if value else None
    except ValueError:
        return None


class RestSourceGateway:
    """Source gateway over the OpenMRS REST web services."""

    def __init__(self, hospital_id: str, config: Settings | None = None):
        config = config or default_settings
        self.hospital_id = hospital_id
        self.base_url = config.rest_base_url.rstrip("/")
        self.auth = (config.rest_username, config.rest_password.get_secret_value())
        self.timeout_seconds = config.rest_timeout_seconds
        self.verify_ssl = config.rest_verify_ssl
        self.backdate_window = timedelta(hours=config.rest_backdate_window_hours)

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        url = f"{self.base_url}{path}"

        def _request() -> dict[str, Any] | None:
            try:
                response = requests.get(
                    url,
                    params=params,
                    auth=self.auth,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout_seconds,
                    verify=self.verify_ssl,
                )
            except requests.RequestException as exc:
                raise SourceConnectionError(
                    self.hospital_id, f"request failed for {url}: {exc}"
                ) from exc

            if allow_missing and response.status_code == 404:
                return None
            if response.status_code >= 400:
                snippet = response.text.strip().replace("\n", " ")[:240]
                raise SourceConnectionError(
                    self.hospital_id,
                    f"HTTP {response.status_code} for {url}: {snippet}",
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise SourceConnectionError(
                    self.hospital_id, f"response for {url} is not valid JSON"
                ) from exc
            if not isinstance(payload, dict):
                raise SourceConnectionError(
                    self.hospital_id, f"response for {url} is not a JSON object"
                )
            return payload

        return await asyncio.to_thread(_request)

    async def ping(self) -> None:
        await self._get_json("/ws/rest/v1/session")

    async def fetch_observations_after_id(self, after_id: int, limit: int) -> list[RawObservation]:
        raise NotImplementedError("The REST source orders observations by timestamp and uuid")

    async def fetch_observations_since(
        self, marker: CursorMarker | None, limit: int
    ) -> list[RawObservation]:
        """Return up to ``limit`` observations created strictly after ``marker``.

        ``fromdate`` filters on obsDatetime, so the window is widened by the
        back-date allowance and every page of it is read before sorting by
        ``(dateCreated, uuid)``.
        """
        params: dict[str, Any] = {"limit": limit, "v": "full"}
        if marker is not None and marker.marker_at is not None:
            since = ensure_utc(marker.marker_at) - self.backdate_window
            params["fromdate"] = since.strftime("%Y-%m-%dT%H:%M:%S.000%z")

        observations: list[RawObservation] = []
        seen: set[str] = set()
        start_index = 0
        while True:
            payload = await self._get_json("/ws/rest/v1/obs", {**params, "startIndex": start_index})
            results = [item for item in payload.get("results") or [] if isinstance(item, dict)]
            fresh = [item for item in results if str(item.get("uuid")) not in seen]
            seen.update(str(item.get("uuid")) for item in fresh)
            for item in fresh:
                if item.get("voided"):
                    continue
                raw = map_observation(item)
                if not raw.source_person_id or (raw.created_at or raw.timestamp) is None:
                    logger.debug("Skipping REST observation %s without person or time", raw.source_obs_id)
                    continue
                if marker is None or marker < observation_marker(raw):
                    observations.append(raw)
            start_index += len(results)
            # A server that ignores startIndex repeats the same page
            if not fresh or not _has_next_page(payload, len(results), limit):
                break

        observations.sort(key=lambda raw: observation_marker(raw).sort_key())
        return observations[:limit]

    async def initial_marker_id(self, lookback_hours: int) -> int:
        return 0

    async def get_person(self, person_id: str) -> SourcePerson | None:
        payload = await self._get_json(
            f"/ws/rest/v1/patient/{person_id}", {"v": "full"}, allow_missing=True
        )
        if payload is None:
            return None
        return map_person(payload, person_id)
