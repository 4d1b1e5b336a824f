"""
Notification Service - Status change messages for users and roles
"""
from typing import List, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
import logging

from backoffice.models import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, db: Session):
        self.db = db

    def emit(
        self,
        message: str,
        event: str,
        target_role: Optional[str] = None,
        target_user_name: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> Notification:
        """Queue a notification; it is delivered with the surrounding transaction"""
        if not target_role and not target_user_name:
            raise ValueError("A notification needs a target role or a target user")

        notification = Notification(
            message=message,
            event=event,
            target_role=target_role,
            target_user_name=target_user_name,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        self.db.add(notification)
        self.db.flush()
        logger.info(f"Notification {event} -> role={target_role} user={target_user_name}")
        return notification

    def list_unread(self, role: str, user_name: str, limit: int = 50) -> List[Notification]:
        limit = min(max(limit, 1), 200)
        return self.db.query(Notification).filter(
            Notification.read == False,  # noqa: E712
            or_(Notification.target_role == role, Notification.target_user_name == user_name)
        ).order_by(Notification.created_at.asc(), Notification.id.asc()).limit(limit).all()

    def mark_read(self, ids: List[int], role: str, user_name: str) -> int:
        """Mark the caller's notifications as read; returns the number updated"""
        if not ids:
            return 0
        updated = self.db.query(Notification).filter(
            Notification.id.in_(ids),
            or_(Notification.target_role == role, Notification.target_user_name == user_name)
        ).update({"read": True}, synchronize_session=False)
        self.db.flush()
        return updated
