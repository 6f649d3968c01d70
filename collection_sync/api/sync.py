"""Remote sync API endpoints.

The service listens on the local host only and has no authentication layer;
``workspace_id`` selects which workspace's sync settings apply.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collection_sync.api.deps import get_session, get_settings, get_sync_service
from collection_sync.config import Settings
from collection_sync.models.collection import Collection, Request
from collection_sync.schemas.sync import (
    ConnectionTestResponse,
    DeleteRemoteResponse,
    PullCollectionResponse,
    PushRequestResponse,
    ResolveConflictRequest,
    SensitiveFindingResponse,
    SyncConfigResponse,
    SyncConfigUpdate,
    SyncConflictResponse,
    SyncLogEntryResponse,
    SyncResultResponse,
)
from collection_sync.services.sensitive_data_scanner import scan_collection
from collection_sync.services.settings_service import (
    SYNC_AUTO_SYNC,
    SYNC_BRANCH,
    SYNC_PROVIDER,
    SYNC_REPOSITORY,
    SYNC_TOKEN,
    set_setting,
)
from collection_sync.services.sync_service import RemoteSyncService, SyncResult
from collection_sync.services.yaml_serializer import decode_json_list, request_document
from collection_sync.sync.registry import list_providers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

WorkspaceParam = Annotated[str | None, Query(description="Workspace whose settings apply")]


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        success=result.success,
        message=result.message,
        pulled=result.pulled,
        pushed=result.pushed,
        conflicts=[
            SyncConflictResponse(
                collection_id=c.collection_id,
                collection_name=c.collection_name,
                local_updated_at=c.local_updated_at,
                paths=c.paths,
            )
            for c in result.conflicts
        ],
        errors=result.errors,
    )


# ── Configuration ────────────────────────────────────


@router.get("/config", response_model=SyncConfigResponse)
async def get_sync_config(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncConfigResponse:
    """Return the resolved sync settings for a workspace (or the global ones)."""
    config = await sync_service.load_config(workspace_id)
    return SyncConfigResponse(
        provider=config.provider,
        repository=config.repository,
        branch=config.branch,
        auto_sync=config.auto_sync,
        has_token=bool(config.token),
        configured=await sync_service.is_configured(workspace_id),
        available_providers=list_providers(),
    )


@router.put("/config", response_model=SyncConfigResponse)
async def update_sync_config(
    body: SyncConfigUpdate,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncConfigResponse:
    """Update sync settings. Fields left out are unchanged; empty strings clear them."""
    if body.provider and body.provider not in list_providers():
        raise HTTPException(
            status_code=422,
            detail=f"Unknown provider: {body.provider}",
        )

    updates: dict[str, str | None] = {}
    for key, value in (
        (SYNC_PROVIDER, body.provider),
        (SYNC_REPOSITORY, body.repository),
        (SYNC_TOKEN, body.token),
        (SYNC_BRANCH, body.branch),
    ):
        if value is not None:
            updates[key] = value.strip() or None
    if body.auto_sync is not None:
        updates[SYNC_AUTO_SYNC] = "true" if body.auto_sync else "false"

    for key, value in updates.items():
        await set_setting(session, key, value, settings.secret_key, workspace_id)
    await session.commit()
    logger.info("Updated sync settings %s (workspace=%s)", sorted(updates), workspace_id)

    return await get_sync_config(sync_service, workspace_id)


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> ConnectionTestResponse:
    """Check that the configured repository is reachable with the stored token."""
    return ConnectionTestResponse(success=await sync_service.test_connection(workspace_id))


# ── Sync operations ──────────────────────────────────


@router.post("/pull", response_model=SyncResultResponse)
async def pull(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncResultResponse:
    """Pull every remote collection that changed since the last sync."""
    return _result_response(await sync_service.pull(workspace_id))


@router.post("/push-all", response_model=SyncResultResponse)
async def push_all(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncResultResponse:
    """Push every dirty or never-pushed collection."""
    return _result_response(await sync_service.push_all(workspace_id))


@router.post("/auto-sync", response_model=SyncResultResponse)
async def auto_sync(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncResultResponse:
    """Pull, then push everything pending."""
    return _result_response(await sync_service.auto_sync(workspace_id))


@router.post("/collections/{collection_id}/push", response_model=SyncResultResponse)
async def push_collection(
    collection_id: str,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    sanitize: bool = False,
    workspace_id: WorkspaceParam = None,
) -> SyncResultResponse:
    """Push one collection. Remote drift is reported as 409 with the drifted paths."""
    committed = await sync_service.push_collection(
        collection_id, sanitize=sanitize, workspace_id=workspace_id
    )
    return SyncResultResponse(
        success=True,
        message="Pushed successfully" if committed else "Everything up to date",
        pushed=1 if committed else 0,
    )


@router.post("/collections/{collection_id}/pull", response_model=PullCollectionResponse)
async def pull_collection(
    collection_id: str,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> PullCollectionResponse:
    """Pull one collection. Local changes plus remote drift are reported as 409."""
    pulled = await sync_service.pull_single_collection(collection_id, workspace_id)
    return PullCollectionResponse(pulled=pulled)


@router.post("/collections/{collection_id}/resolve", response_model=SyncResultResponse)
async def resolve_conflict(
    collection_id: str,
    body: ResolveConflictRequest,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> SyncResultResponse:
    """Resolve a conflict by keeping either the local or the remote collection."""
    if body.resolution == "keep-local":
        await sync_service.force_keep_local(collection_id, workspace_id)
    else:
        await sync_service.force_keep_remote(collection_id, workspace_id)
    return SyncResultResponse(success=True, message=f"Conflict resolved ({body.resolution})")


@router.delete("/collections/{collection_id}/remote", response_model=DeleteRemoteResponse)
async def delete_remote_collection(
    collection_id: str,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    workspace_id: WorkspaceParam = None,
) -> DeleteRemoteResponse:
    """Delete the collection's directory from the remote repository."""
    deleted = await sync_service.delete_remote_collection(collection_id, workspace_id)
    return DeleteRemoteResponse(deleted=deleted)


@router.post("/collections/{collection_id}/disable", status_code=status.HTTP_204_NO_CONTENT)
async def disable_sync(
    collection_id: str,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
) -> None:
    """Stop syncing a collection and forget its remote state."""
    await sync_service.disable_sync(collection_id)


@router.post(
    "/collections/{collection_id}/requests/{request_id}/push",
    response_model=PushRequestResponse,
)
async def push_request(
    collection_id: str,
    request_id: str,
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
    sanitize: bool = False,
    workspace_id: WorkspaceParam = None,
) -> PushRequestResponse:
    """Push a single request file. On failure the collection is marked dirty."""
    pushed = await sync_service.push_single_request(
        collection_id, request_id, sanitize=sanitize, workspace_id=workspace_id
    )
    return PushRequestResponse(pushed=pushed)


@router.get(
    "/collections/{collection_id}/sensitive", response_model=list[SensitiveFindingResponse]
)
async def scan_sensitive_data(
    collection_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[SensitiveFindingResponse]:
    """List plain-text secrets that a push would publish."""
    collection = await session.get(Collection, collection_id)
    if collection is None:
        raise HTTPException(status_code=404, detail="Collection not found")

    result = await session.scalars(
        select(Request).where(Request.collection_id == collection_id).order_by(Request.order)
    )
    requests = [request_document(request) for request in result.all()]
    variables = decode_json_list(collection.variables) or []
    return [
        SensitiveFindingResponse(**finding.to_dict())
        for finding in scan_collection(requests, variables)
    ]


# ── Log ──────────────────────────────────────────────


@router.get("/log", response_model=list[SyncLogEntryResponse])
async def get_sync_log(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
) -> list[SyncLogEntryResponse]:
    """Recent sync operations, newest first."""
    return [SyncLogEntryResponse(**entry.to_dict()) for entry in sync_service.sync_log.entries()]


@router.delete("/log", status_code=status.HTTP_204_NO_CONTENT)
async def clear_sync_log(
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
) -> None:
    sync_service.sync_log.clear()
