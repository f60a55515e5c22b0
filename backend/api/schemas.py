from pydantic import BaseModel
from typing import Optional, Any, List
from common.schemas import ListItem, SyncStatusResponse, SyncTriggerResponse

class SnapshotChangedRequest(BaseModel):
    state_id: Optional[str] = None
    # raw JSON state value; the worker reads it from the transport when omitted
    raw: Optional[Any] = None

class MessageUpdatedRequest(BaseModel):
    ref: Optional[str] = None
    items: Optional[List[ListItem]] = None

__all__ = [
    "MessageUpdatedRequest",
    "SnapshotChangedRequest",
    "SyncStatusResponse",
    "SyncTriggerResponse",
]
