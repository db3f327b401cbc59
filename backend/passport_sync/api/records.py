from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from passport_sync.api.deps import get_access_policy, get_sync_repo, require_api_key
from passport_sync.exceptions import AccessWindowClosed
from passport_sync.schemas.sync import (
    EditInfoResponse,
    GrantEditorRequest,
    GrantEditorResponse,
)
from passport_sync.services.sync.access_window import AccessWindowPolicy
from passport_sync.services.sync.repository import SyncRepository

router = APIRouter(
    prefix="/records",
    tags=["Medical Records"],
    dependencies=[Depends(require_api_key)],
)


async def _get_record_or_404(repo: SyncRepository, record_id: int):
    record = await repo.get_record(record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record


@router.get("/{record_id}/edit-info", response_model=EditInfoResponse)
async def get_edit_info(
    record_id: int,
    actor_id: Optional[int] = Query(None, description="User asking to edit"),
    repo: SyncRepository = Depends(get_sync_repo),
    policy: AccessWindowPolicy = Depends(get_access_policy),
):
    """Whether the actor may edit the record right now, and why."""
    record = await _get_record_or_404(repo, record_id)
    await policy.reconcile_medication_status(record, repo)
    info = policy.get_edit_info(record, actor_id)
    return EditInfoResponse(
        record_id=record_id,
        can_edit=info.can_edit,
        is_editable=info.is_editable,
        hours_since_sync=info.hours_since_sync,
        medication_status=info.medication_status,
        reason=info.reason,
        state=info.state.value,
        arrival_at=info.arrival_at,
        editable_by=info.editable_by,
    )


@router.post("/{record_id}/editors", response_model=GrantEditorResponse)
async def grant_editor(
    record_id: int,
    request: GrantEditorRequest,
    repo: SyncRepository = Depends(get_sync_repo),
    policy: AccessWindowPolicy = Depends(get_access_policy),
):
    """Allow another user to edit the record while it is not locked."""
    record = await _get_record_or_404(repo, record_id)
    try:
        granted = await policy.grant_edit_access(record, request.actor_id, repo)
    except AccessWindowClosed as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return GrantEditorResponse(
        record_id=record_id,
        granted=granted,
        editable_by=list(record.editable_by or []),
    )
