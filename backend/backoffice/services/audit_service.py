"""
Audit Logging Service
Provides an audit trail for sensitive operations
"""
from sqlalchemy.orm import Session
from sqlalchemy import desc
from typing import Optional, List, Dict
from datetime import date, datetime, timedelta
import json
import logging

from backoffice.models import AuditLog

logger = logging.getLogger(__name__)


class AuditAction:
    """Constants for audit actions"""
    # Authentication
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"

    # CRUD Operations
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    # Financial Operations
    CARD_DISTRIBUTION = "CARD_DISTRIBUTION"
    CARD_DISTRIBUTION_CANCELLED = "CARD_DISTRIBUTION_CANCELLED"
    CARD_RECHARGE = "CARD_RECHARGE"
    CARD_USAGE_RESET = "CARD_USAGE_RESET"
    EXPENSE_VALIDATED = "EXPENSE_VALIDATED"
    EXPENSE_BYPASS = "EXPENSE_BYPASS"
    VAULT_MOVEMENT = "VAULT_MOVEMENT"
    EXCESS_DECLARED = "EXCESS_DECLARED"
    TILL_ADJUSTED = "TILL_ADJUSTED"

    # Administration
    USER_CREATED = "USER_CREATED"
    AGENCY_CREATED = "AGENCY_CREATED"
    SETTINGS_CHANGED = "SETTINGS_CHANGED"


class AuditService:
    """Service for recording and retrieving audit logs"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[int] = None,
        description: Optional[str] = None,
        old_values: Optional[Dict] = None,
        new_values: Optional[Dict] = None,
        user=None,
        ip_address: Optional[str] = None,
        request_path: Optional[str] = None,
        status: str = "success",
    ) -> Optional[AuditLog]:
        """
        Create an audit log entry.

        Args:
            action: The action being performed (use AuditAction constants)
            resource_type: Type of resource being affected (e.g., 'Card', 'Expense')
            resource_id: ID of the affected resource
            description: Human-readable description of the action
            old_values: Dictionary of values before the change
            new_values: Dictionary of values after the change
            user: User performing the action, if any
            ip_address: Client IP address
            request_path: API endpoint path
            status: 'success' or 'failure'

        Returns:
            The created AuditLog instance
        """
        try:
            audit_log = AuditLog(
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                description=description,
                old_values=json.dumps(old_values, default=str) if old_values else None,
                new_values=json.dumps(new_values, default=str) if new_values else None,
                user_id=user.id if user else None,
                username=user.username if user else None,
                agency_id=user.agency_id if user else None,
                ip_address=ip_address,
                request_path=request_path,
                status=status,
            )
            self.db.add(audit_log)
            self.db.flush()

            logger.info(
                f"Audit: {action} {resource_type}(id={resource_id}) "
                f"by user={audit_log.username} status={status}"
            )
            return audit_log

        except Exception as e:
            logger.error(f"Failed to create audit log: {e}")
            # Don't raise - audit logging should not break the main operation
            return None

    def get_logs(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        query = self.db.query(AuditLog)
        if start_date:
            query = query.filter(AuditLog.timestamp >= datetime.combine(start_date, datetime.min.time()))
        if end_date:
            query = query.filter(
                AuditLog.timestamp < datetime.combine(end_date + timedelta(days=1), datetime.min.time())
            )
        if action:
            query = query.filter(AuditLog.action == action)
        if resource_type:
            query = query.filter(AuditLog.resource_type == resource_type)
        return query.order_by(desc(AuditLog.timestamp)).limit(limit).all()
