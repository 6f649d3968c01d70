"""Remote sync schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SyncConfigResponse(BaseModel):
    """Resolved sync configuration. The token itself is never returned."""

    provider: str | None = None
    repository: str | None = None
    branch: str
    auto_sync: bool
    has_token: bool
    configured: bool
    available_providers: list[str]


class SyncConfigUpdate(BaseModel):
    """Partial update of sync settings. Empty strings clear a value."""

    provider: str | None = Field(default=None, description="'github' or 'gitlab'")
    repository: str | None = Field(default=None, description="'owner/repo' or GitLab project path")
    token: str | None = Field(default=None, description="Personal access token")
    branch: str | None = None
    auto_sync: bool | None = None


class ConnectionTestResponse(BaseModel):
    success: bool


class SyncConflictResponse(BaseModel):
    """A collection changed both locally and on the remote."""

    collection_id: str
    collection_name: str
    local_updated_at: str | None = None
    paths: list[str] = Field(default_factory=list)


class SyncResultResponse(BaseModel):
    """Outcome of a pull, push or push-all."""

    success: bool
    message: str
    pulled: int = 0
    pushed: int = 0
    conflicts: list[SyncConflictResponse] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class PullCollectionResponse(BaseModel):
    pulled: bool


class PushRequestResponse(BaseModel):
    pushed: bool


class DeleteRemoteResponse(BaseModel):
    deleted: bool


class ResolveConflictRequest(BaseModel):
    """Request to resolve a collection conflict."""

    resolution: Literal["keep-local", "keep-remote"]


class SensitiveFindingResponse(BaseModel):
    """A plain-text secret found in a collection; the value is masked."""

    source: str
    request_name: str | None = None
    request_id: str | None = None
    field: str
    key: str
    masked_value: str


class SyncLogEntryResponse(BaseModel):
    id: str
    category: str
    type: str
    target: str
    message: str
    success: bool
    timestamp: str
