"""In-app notification inbox and delivery preferences."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.db.session import get_db
from kalypso_api.schemas import NotificationOut, NotificationPreferencesOut, NotificationPreferencesRequest
from kalypso_api.services.notifications import NotificationService

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)


@router.get("", response_model=list[NotificationOut])
async def list_notifications(
    unread_only: bool = Query(False),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return service.list_notifications(
        auth.user_id, unread_only=unread_only, category=category, priority=priority, limit=limit
    )


@router.get("/unread-count")
async def get_unread_count(
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict[str, int]:
    return {"unread_count": service.unread_count(auth.user_id)}


@router.post("/read-all")
async def mark_all_read(
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict[str, int]:
    return {"updated": service.mark_all_read(auth.user_id)}


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return service.mark_read(auth.user_id, notification_id)


@router.delete("/read")
async def clear_read(
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict[str, int]:
    """Delete every read notification."""
    return {"deleted": service.clear_read(auth.user_id)}


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> None:
    service.delete_notification(auth.user_id, notification_id)


@router.get("/preferences", response_model=NotificationPreferencesOut)
async def get_preferences(
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    prefs = service.get_preferences(auth.user_id)
    return prefs if prefs is not None else NotificationPreferencesOut()


@router.put("/preferences", response_model=NotificationPreferencesOut)
async def update_preferences(
    body: NotificationPreferencesRequest,
    auth: AuthContext = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return service.update_preferences(auth.user_id, body.model_dump(exclude_none=True))
