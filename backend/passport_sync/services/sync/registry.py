"""Per-hospital source connection pools."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from passport_sync.config import HospitalSourceConfig, Settings, settings as default_settings
from passport_sync.exceptions import SourceConnectionError
from passport_sync.services.sync.source import SQLSourceGateway

logger = logging.getLogger("passport_sync.registry")

EngineFactory = Callable[[HospitalSourceConfig], AsyncEngine]


class SourceConnectionRegistry:
    """Owns one pooled engine per configured source hospital.

    Pools are created lazily and cached. A hospital that fails to connect is
    not cached, so the next cycle retries it without affecting the others.
    """

    def __init__(
        self,
        hospitals: list[HospitalSourceConfig],
        *,
        config: Settings | None = None,
        engine_factory: EngineFactory | None = None,
    ):
        self.config = config or default_settings
        self._hospitals = {hospital.hospital_id: hospital for hospital in hospitals}
        self._engine_factory = engine_factory or self._create_engine
        self._engines: dict[str, AsyncEngine] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "SourceConnectionRegistry":
        config = config or default_settings
        return cls(config.openmrs_hospitals, config=config)

    def _create_engine(self, hospital: HospitalSourceConfig) -> AsyncEngine:
        url = URL.create(
            self.config.openmrs_driver,
            username=hospital.user,
            password=hospital.password.get_secret_value(),
            host=hospital.host,
            port=hospital.port,
            database=hospital.database,
        )
        return create_async_engine(
            url,
            pool_size=hospital.pool_size or self.config.openmrs_pool_size,
            pool_pre_ping=True,
            pool_recycle=self.config.database_pool_recycle,
            connect_args={"connect_timeout": self.config.openmrs_connect_timeout_seconds},
        )

    def hospital_ids(self) -> list[str]:
        return [hospital_id for hospital_id, item in self._hospitals.items() if item.enabled]

    def hospital_config(self, hospital_id: str) -> HospitalSourceConfig | None:
        return self._hospitals.get(hospital_id)

    def hospital_name(self, hospital_id: str) -> str:
        hospital = self._hospitals.get(hospital_id)
        return hospital.hospital_name if hospital else hospital_id

    @property
    def connected(self) -> list[str]:
        return sorted(self._engines)

    async def init(self) -> int:
        """Connect every enabled hospital; failures are logged and skipped."""
        for hospital_id in self.hospital_ids():
            try:
                await self.get_connection(hospital_id)
            except SourceConnectionError as exc:
                logger.warning("%s; it will be skipped until it is reachable", exc)
        logger.info(
            "Initialized %d of %d source connections",
            len(self._engines),
            len(self.hospital_ids()),
        )
        return len(self._engines)

    async def get_connection(self, hospital_id: str) -> AsyncEngine:
        hospital = self._hospitals.get(hospital_id)
        if hospital is None:
            raise SourceConnectionError(hospital_id, "not configured")
        if not hospital.enabled:
            raise SourceConnectionError(hospital_id, "disabled")

        async with self._locks.setdefault(hospital_id, asyncio.Lock()):
            engine = self._engines.get(hospital_id)
            if engine is not None:
                return engine
            engine = self._engine_factory(hospital)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as exc:
                await engine.dispose()
                raise SourceConnectionError(
                    hospital_id, f"unreachable ({exc.__class__.__name__}: {exc})"
                ) from exc
            self._engines[hospital_id] = engine
            logger.info("Connected to %s source database", hospital.hospital_name)
            return engine

    async def get_gateway(self, hospital_id: str) -> SQLSourceGateway:
        return SQLSourceGateway(hospital_id, await self.get_connection(hospital_id))

    async def close_all(self) -> None:
        engines, self._engines = self._engines, {}
        for hospital_id, engine in engines.items():
            try:
                await engine.dispose()
            except Exception:
                logger.exception("Failed to close source pool for %s", hospital_id)
        if engines:
            logger.info("Closed %d source connection pools", len(engines))
