"""Shared API dependencies."""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.config import settings
from passport_sync.database import get_db
from passport_sync.services.sync.access_window import AccessWindowPolicy
from passport_sync.services.sync.repository import SQLSyncRepository, SyncRepository
from passport_sync.services.sync.service import SyncService, get_sync_service


async def require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")):
    """Require API key when one is configured."""
    if not settings.api_key:
        return None
    if x_api_key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return None


def get_service() -> SyncService:
    return get_sync_service()


def get_sync_repo(db: AsyncSession = Depends(get_db)) -> SyncRepository:
    return SQLSyncRepository(db)


def get_access_policy() -> AccessWindowPolicy:
    return AccessWindowPolicy()
