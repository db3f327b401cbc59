from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncNowResponse(BaseModel):
    """Result of a manual sync trigger."""

    model_config = ConfigDict(from_attributes=True)

    success: bool
    count: int = Field(default=0, ge=0)
    message: str


class SyncStatusResponse(BaseModel):
    """Status of one orchestrator variant."""

    model_config = ConfigDict(from_attributes=True)

    variant: str
    is_running: bool
    is_scheduled: bool
    last_synced_marker: dict[str, Optional[str]] = Field(default_factory=dict)
    configured_interval_ms: int
    last_run_at: Optional[datetime] = None


class EditInfoResponse(BaseModel):
    """Edit gate answer for one record and actor."""

    model_config = ConfigDict(from_attributes=True)

    record_id: int
    can_edit: bool
    is_editable: bool
    hours_since_sync: Optional[float] = None
    medication_status: Optional[str] = None
    reason: str
    state: str
    arrival_at: Optional[datetime] = None
    editable_by: list[int] = Field(default_factory=list)


class GrantEditorRequest(BaseModel):
    actor_id: int = Field(..., ge=1)


class GrantEditorResponse(BaseModel):
    record_id: int
    granted: bool
    editable_by: list[int]
