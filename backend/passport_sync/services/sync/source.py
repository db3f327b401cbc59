"""Read observations and persons from an OpenMRS database."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from passport_sync.exceptions import SourceConnectionError
from passport_sync.services.sync.types import CursorMarker, RawObservation, SourcePerson

NATIONAL_ID_PATTERNS = (
    "NATIONAL ID",
    "NATIONAL_ID",
    "NID",
    "CITIZEN ID",
    "NATIONAL IDENTIFICATION",
)


class SourceGateway(Protocol):
    """Read side of one source hospital."""

    hospital_id: str

    async def ping(self) -> None:
        ...

    async def fetch_observations_after_id(self, after_id: int, limit: int) -> list[RawObservation]:
        ...

    async def fetch_observations_since(
        self, marker: CursorMarker | None, limit: int
    ) -> list[RawObservation]:
        ...

    async def initial_marker_id(self, lookback_hours: int) -> int:
        ...

    async def get_person(self, person_id: str) -> SourcePerson | None:
        ...


_OBSERVATION_SELECT = """
SELECT
    o.obs_id,
    o.person_id,
    o.concept_id,
    o.obs_datetime,
    o.date_created,
    o.value_coded,
    o.value_text,
    o.value_numeric,
    o.comments,
    o.creator,
    o.location_id,
    cn.name AS concept_name,
    vcn.name AS value_coded_name,
    el.name AS encounter_location_name,
    ol.name AS obs_location_name,
    pr.identifier AS provider_identifier,
    ppn.given_name AS provider_given_name,
    ppn.middle_name AS provider_middle_name,
    ppn.family_name AS provider_family_name,
    cu.username AS creator_username,
    cpn.given_name AS creator_given_name,
    cpn.middle_name AS creator_middle_name,
    cpn.family_name AS creator_family_name
FROM obs o
LEFT JOIN concept_name cn
    ON cn.concept_id = o.concept_id
    AND cn.locale = 'en'
    AND cn.concept_name_type = 'FULLY_SPECIFIED'
    AND cn.voided = 0
LEFT JOIN concept_name vcn
    ON vcn.concept_id = o.value_coded
    AND vcn.locale = 'en'
    AND vcn.concept_name_type = 'FULLY_SPECIFIED'
    AND vcn.voided = 0
LEFT JOIN encounter e ON e.encounter_id = o.encounter_id AND e.voided = 0
LEFT JOIN location el ON el.location_id = e.location_id
LEFT JOIN location ol ON ol.location_id = o.location_id
LEFT JOIN encounter_provider ep ON ep.encounter_id = e.encounter_id AND ep.voided = 0
LEFT JOIN provider pr ON pr.provider_id = ep.provider_id AND pr.retired = 0
LEFT JOIN person_name ppn
    ON ppn.person_id = pr.person_id AND ppn.voided = 0 AND ppn.preferred = 1
LEFT JOIN users cu ON cu.user_id = COALESCE(e.creator, o.creator)
LEFT JOIN person_name cpn
    ON cpn.person_id = cu.person_id AND cpn.voided = 0 AND cpn.preferred = 1
WHERE o.voided = 0
"""

_AFTER_ID_QUERY = (
    text(
        _OBSERVATION_SELECT
        + """
  AND o.obs_id > :after_id
ORDER BY o.obs_id ASC, ep.encounter_provider_id ASC
LIMIT :limit
"""
    )
    .columns(obs_datetime=DateTime(), date_created=DateTime())
)

_SINCE_QUERY = (
    text(
        _OBSERVATION_SELECT
        + """
  AND (o.date_created > :marker_at OR (o.date_created = :marker_at AND o.obs_id > :marker_id))
ORDER BY o.date_created ASC, o.obs_id ASC, ep.encounter_provider_id ASC
LIMIT :limit
"""
    )
    .bindparams(bindparam("marker_at", type_=DateTime()))
    .columns(obs_datetime=DateTime(), date_created=DateTime())
)

_FROM_START_QUERY = (
    text(
        _OBSERVATION_SELECT
        + """
ORDER BY o.date_created ASC, o.obs_id ASC, ep.encounter_provider_id ASC
LIMIT :limit
"""
    )
    .columns(obs_datetime=DateTime(), date_created=DateTime())
)

_MIN_OBS_SINCE_QUERY = text(
    "SELECT MIN(obs_id) FROM obs WHERE voided = 0 AND date_created >= :since"
).bindparams(bindparam("since", type_=DateTime()))

_MAX_OBS_QUERY = text("SELECT MAX(obs_id) FROM obs WHERE voided = 0")

_PERSON_QUERY = text(
    """
SELECT
    p.person_id,
    p.gender,
    p.birthdate,
    pn.given_name,
    pn.middle_name,
    pn.family_name,
    pa.address1,
    pa.city_village,
    pa.state_province,
    pa.country
FROM person p
LEFT JOIN person_name pn
    ON pn.person_id = p.person_id AND pn.voided = 0 AND pn.preferred = 1
LEFT JOIN person_address pa
    ON pa.person_id = p.person_id AND pa.voided = 0 AND pa.preferred = 1
WHERE p.person_id = :person_id AND p.voided = 0
LIMIT 1
"""
)

_IDENTIFIERS_QUERY = text(
    """
SELECT pi.identifier, pit.name AS identifier_type
FROM patient_identifier pi
JOIN patient_identifier_type pit
    ON pit.patient_identifier_type_id = pi.identifier_type
WHERE pi.patient_id = :person_id AND pi.voided = 0
ORDER BY pi.preferred DESC, pi.patient_identifier_id ASC
"""
)


def join_name(*parts: str | None) -> str:
    return " ".join(" ".join(part.split()) for part in parts if part and part.strip())


def is_national_id_type(type_name: str | None) -> bool:
    value = (type_name or "").upper()
    return any(
        re.search(rf"(?<![A-Z]){re.escape(pattern)}(?![A-Z])", value)
        for pattern in NATIONAL_ID_PATTERNS
    )


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _coerce_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _row_to_observation(row: Any) -> RawObservation:
    provider_name = join_name(
        row["provider_given_name"], row["provider_middle_name"], row["provider_family_name"]
    )
    creator_name = (
        join_name(
            row["creator_given_name"], row["creator_middle_name"], row["creator_family_name"]
        )
        or row["creator_username"]
    )
    concept_label = row["concept_name"] or f"Unknown Concept ({row['concept_id']})"
    coded = row["value_coded_name"]
    if coded is None and row["value_coded"] is not None:
        coded = str(row["value_coded"])
    return RawObservation(
        source_obs_id=str(row["obs_id"]),
        source_person_id=str(row["person_id"]),
        concept_label=concept_label,
        coded_value=coded,
        text_value=row["value_text"],
        numeric_value=float(row["value_numeric"]) if row["value_numeric"] is not None else None,
        timestamp=row["obs_datetime"],
        created_at=row["date_created"],
        comment=row["comments"],
        creator_id=str(row["creator"]) if row["creator"] is not None else None,
        creator_name=creator_name or None,
        location_id=str(row["location_id"]) if row["location_id"] is not None else None,
        location_name=row["encounter_location_name"] or row["obs_location_name"],
        provider_name=provider_name or None,
        provider_identifier=row["provider_identifier"],
        marker_id=int(row["obs_id"]),
    )


def collapse_rows(rows: list[Any]) -> list[RawObservation]:
    """One observation per obs id; joins can multiply rows and the first wins."""
    seen: set[int] = set()
    observations: list[RawObservation] = []
    for row in rows:
        obs_id = int(row["obs_id"])
        if obs_id in seen:
            continue
        seen.add(obs_id)
        observations.append(_row_to_observation(row))
    return observations


class SQLSourceGateway:
    """OpenMRS schema access over one pooled async engine."""

    def __init__(self, hospital_id: str, engine: AsyncEngine):
        self.hospital_id = hospital_id
        self.engine = engine

    async def _fetch(self, statement, params: dict[str, Any]) -> list[Any]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(statement, params)
                return list(result.mappings().all())
        except (SQLAlchemyError, OSError) as exc:
            raise SourceConnectionError(self.hospital_id, f"query failed: {exc}") from exc

    async def _scalar(self, statement, params: dict[str, Any]) -> Any:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(statement, params)
                return result.scalar()
        except (SQLAlchemyError, OSError) as exc:
            raise SourceConnectionError(self.hospital_id, f"query failed: {exc}") from exc

    async def ping(self) -> None:
        await self._scalar(text("SELECT 1"), {})

    async def fetch_observations_after_id(self, after_id: int, limit: int) -> list[RawObservation]:
        rows = await self._fetch(_AFTER_ID_QUERY, {"after_id": int(after_id), "limit": limit})
        return collapse_rows(rows)

    async def fetch_observations_since(
        self, marker: CursorMarker | None, limit: int
    ) -> list[RawObservation]:
        if marker is None or marker.marker_at is None:
            rows = await self._fetch(_FROM_START_QUERY, {"limit": limit})
        else:
            rows = await self._fetch(
                _SINCE_QUERY,
                {
                    "marker_at": _naive_utc(marker.marker_at),
                    "marker_id": marker.marker_id if marker.marker_id is not None else -1,
                    "limit": limit,
                },
            )
        return collapse_rows(rows)

    async def initial_marker_id(self, lookback_hours: int) -> int:
        """Marker just before the oldest observation of the lookback window."""
        since = datetime.now(UTC).replace(tzinfo=None) - timedelta(hours=lookback_hours)
        oldest = await self._scalar(_MIN_OBS_SINCE_QUERY, {"since": since})
        if oldest is not None:
            return int(oldest) - 1
        newest = await self._scalar(_MAX_OBS_QUERY, {})
        return int(newest or 0)

    async def get_person(self, person_id: str) -> SourcePerson | None:
        try:
            numeric_id = int(person_id)
        except (TypeError, ValueError):
            return None
        rows = await self._fetch(_PERSON_QUERY, {"person_id": numeric_id})
        if not rows:
            return None
        row = rows[0]
        identifiers = await self._fetch(_IDENTIFIERS_QUERY, {"person_id": numeric_id})
        national_id = next(
            (
                item["identifier"]
                for item in identifiers
                if item["identifier"] and is_national_id_type(item["identifier_type"])
            ),
            None,
        )
        return SourcePerson(
            person_id=str(row["person_id"]),
            given_name=join_name(row["given_name"]),
            middle_name=join_name(row["middle_name"]) or None,
            family_name=join_name(row["family_name"]),
            gender=row["gender"],
            birthdate=_coerce_date(row["birthdate"]),
            national_id=national_id,
            address=row["address1"],
            city=row["city_village"],
            province=row["state_province"],
            country=row["country"],
        )
