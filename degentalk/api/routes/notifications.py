"""
degentalk.api.routes.notifications — In-app notification inbox
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from degentalk.api.deps import get_current_user, get_engine
from degentalk.services import notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {
        "notifications": notification_service.list_notifications(
            engine, user["id"], unread_only=unread_only, limit=limit, offset=offset,
        ),
    }


@router.get("/unread-count")
def unread_count(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return {"unread": notification_service.unread_count(engine, user["id"])}


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    notification_service.mark_read(engine, user["id"], notification_id)
    return {"id": notification_id, "is_read": True}


@router.post("/read-all")
def mark_all_read(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return {"updated": notification_service.mark_all_read(engine, user["id"])}
