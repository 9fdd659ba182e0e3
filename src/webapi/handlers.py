"""
Route handlers for ``/channels/{channel_id}/permissions``.

Every handler resolves the caller from the ``X-Telegram-User-Id``
header and the service from ``app.state.service``.  Creator-only
operations are checked by the service itself; the handlers only map its
exceptions to status codes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from permsync.models import Capability
from permsync.service import PermissionDenied, PermissionSyncService, SelfRemovalError

logger = logging.getLogger("webapi.handlers")

router = APIRouter(prefix="/channels", tags=["Channel permissions"])


class SyncRequest(BaseModel):
    force: bool = Field(False, validation_alias="force_sync")

    model_config = {"populate_by_name": True}


class CheckRequest(BaseModel):
    permission: Capability


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_service(request: Request) -> PermissionSyncService:
    return request.app.state.service


def get_current_user_id(
    x_telegram_user_id: Optional[int] = Header(None),
) -> int:
    if x_telegram_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_telegram_user_id


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/{channel_id}/permissions")
async def sync_permissions(
    channel_id: int,
    body: Optional[SyncRequest] = None,
    user_id: int = Depends(get_current_user_id),
    service: PermissionSyncService = Depends(get_service),
) -> Dict[str, Any]:
    """Run a reconciliation pass for the channel."""
    force = body.force if body is not None else False
    logger.info("Sync requested channel=%s by user=%s force=%s", channel_id, user_id, force)
    result = await service.sync_channel(channel_id, force=force)

    if result.failure is not None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="; ".join(result.errors),
        )

    return {
        "success": result.success,
        "channel_id": channel_id,
        "synced_permissions": result.synced_permissions,
        "removed_permissions": result.removed_permissions,
        "errors": result.errors,
        "skipped": result.skipped,
    }


@router.get("/{channel_id}/permissions")
async def get_permissions(
    channel_id: int,
    user_id: int = Depends(get_current_user_id),
    service: PermissionSyncService = Depends(get_service),
) -> Dict[str, Any]:
    """The caller's own record; the channel summary is shown to the creator only."""
    record = await service.get_user_permission(user_id, channel_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Channel not found or you have no access to it",
        )

    summary = None
    if record.is_creator:
        summary = (await service.get_channel_summary(channel_id)).to_dict()

    return {
        "success": True,
        "user_permissions": record.to_dict(),
        "channel_summary": summary,
    }


@router.put("/{channel_id}/permissions")
async def check_permission(
    channel_id: int,
    body: CheckRequest,
    user_id: int = Depends(get_current_user_id),
    service: PermissionSyncService = Depends(get_service),
) -> Dict[str, Any]:
    """Check one capability for the caller."""
    check = await service.check_user_permission(user_id, channel_id, body.permission)
    return {
        "success": True,
        "permission": body.permission.value,
        "has_permission": check.has_permission,
        "access_level": check.access_level.value,
        "reason": check.reason,
    }


@router.delete("/{channel_id}/permissions")
async def remove_permission(
    channel_id: int,
    target_user_id: int = Query(..., alias="user_id"),
    user_id: int = Depends(get_current_user_id),
    service: PermissionSyncService = Depends(get_service),
) -> Dict[str, Any]:
    """Creator-only removal of another user's record."""
    try:
        deleted = await service.remove_user_permission(user_id, channel_id, target_user_id)
    except SelfRemovalError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No permissions found for this user",
        )
    return {"success": True, "removed_user_id": target_user_id}
