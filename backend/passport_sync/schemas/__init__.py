from passport_sync.schemas.sync import (
    EditInfoResponse,
    GrantEditorRequest,
    GrantEditorResponse,
    SyncNowResponse,
    SyncStatusResponse,
)

__all__ = [
    "EditInfoResponse",
    "GrantEditorRequest",
    "GrantEditorResponse",
    "SyncNowResponse",
    "SyncStatusResponse",
]
