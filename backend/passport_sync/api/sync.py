from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from passport_sync.api.deps import get_service, require_api_key
from passport_sync.schemas.sync import SyncNowResponse, SyncStatusResponse
from passport_sync.services.sync.service import SyncService

router = APIRouter(
    prefix="/sync",
    tags=["Sync"],
    dependencies=[Depends(require_api_key)],
)


@router.post("/{variant}/run", response_model=SyncNowResponse)
async def run_sync(
    variant: str,
    hospital_id: Optional[str] = Query(None, description="Limit the run to one hospital"),
    service: SyncService = Depends(get_service),
):
    """Run one sync cycle immediately for operational recovery."""
    orchestrator = service.get(variant)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync variant '{variant}' is not enabled",
        )
    result = await orchestrator.sync_now(hospital_id)
    return SyncNowResponse.model_validate(result)


@router.get("/status", response_model=list[SyncStatusResponse])
async def sync_status(service: SyncService = Depends(get_service)):
    """Status of every enabled orchestrator."""
    return [SyncStatusResponse.model_validate(item) for item in await service.status()]
