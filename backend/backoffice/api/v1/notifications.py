"""
Notifications API Routes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from backoffice.core.database import get_db
from backoffice.core.security import get_current_active_user
from backoffice.schemas import NotificationResponse, NotificationReadRequest, MessageResponse
from backoffice.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Unread notifications addressed to the user or to their role"""
    return NotificationService(db).list_unread(current_user.role, current_user.username, limit)


@router.post("/read", response_model=MessageResponse)
async def mark_notifications_read(
    read_data: NotificationReadRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    updated = NotificationService(db).mark_read(read_data.ids, current_user.role, current_user.username)
    db.commit()
    return MessageResponse(message=f"{updated} notifications marked as read")
