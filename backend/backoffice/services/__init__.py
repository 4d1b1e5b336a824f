# Services Package
from backoffice.services.user_service import UserService
from backoffice.services.agency_service import AgencyService
from backoffice.services.permission_service import PermissionService
from backoffice.services.audit_service import AuditService, AuditAction
from backoffice.services.notification_service import NotificationService
from backoffice.services.cash_service import CashAccountService, CashExcessService
from backoffice.services.card_service import CardService, CountryLimitService
from backoffice.services.expense_service import ExpenseService
from backoffice.services.exchange_service import ExchangeTillService

__all__ = [
    'UserService',
    'AgencyService',
    'PermissionService',
    'AuditService',
    'AuditAction',
    'NotificationService',
    'CashAccountService',
    'CashExcessService',
    'CardService',
    'CountryLimitService',
    'ExpenseService',
    'ExchangeTillService',
]
