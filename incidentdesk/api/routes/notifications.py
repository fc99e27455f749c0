"""Notification feed routes for the signed-in user."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...auth.session import SessionContext
from ...dependencies import get_notification_dispatcher, get_session_context

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/")
async def list_notifications(
    limit: Optional[int] = Query(None, ge=1, le=200),
    session: SessionContext = Depends(get_session_context),
):
    """Newest first."""
    return await get_notification_dispatcher().list_for_user(session.user_id, limit=limit)


@router.get("/unread-count")
async def unread_count(session: SessionContext = Depends(get_session_context)):
    return {"unread": await get_notification_dispatcher().unread_count(session.user_id)}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    session: SessionContext = Depends(get_session_context),
):
    await get_notification_dispatcher().mark_read(notification_id, session)
    return {"id": notification_id, "read": True}


@router.post("/read-all")
async def mark_all_read(session: SessionContext = Depends(get_session_context)):
    return {"marked": await get_notification_dispatcher().mark_all_read(session)}
