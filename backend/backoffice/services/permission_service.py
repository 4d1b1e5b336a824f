"""
Permission Service - Static role to permission mapping
"""
from typing import Dict, FrozenSet, Set

from backoffice.models import User, UserRole


ALL_PERMISSIONS: FrozenSet[str] = frozenset({
    # Cards
    "cards:view", "cards:create", "cards:edit", "cards:delete",
    "cards:recharge", "cards:distribute", "cards:cancel", "cards:limits",
    # Expenses
    "expenses:view", "expenses:view_all", "expenses:create", "expenses:edit",
    "expenses:delete", "expenses:validate", "expenses:bypass",
    # Cash
    "cash:view", "cash:manage", "cash:declare",
    # Exchange
    "exchange:view", "exchange:operate", "exchange:manage",
    # Administration
    "agencies:view", "agencies:manage", "users:view", "users:manage",
})

_VIEW_ONLY = {"cards:view", "expenses:view", "expenses:view_all", "cash:view",
              "exchange:view", "agencies:view", "users:view"}

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    UserRole.SUPER_ADMIN.value: ALL_PERMISSIONS,
    UserRole.DIRECTOR.value: ALL_PERMISSIONS,
    UserRole.DELEGATE.value: frozenset(_VIEW_ONLY | {
        "cards:recharge", "cards:cancel", "expenses:create", "expenses:edit", "expenses:delete",
        "exchange:operate",
    }),
    UserRole.ACCOUNTING.value: frozenset(_VIEW_ONLY | {
        "cards:create", "cards:edit", "cards:recharge", "cards:distribute", "cards:limits",
        "expenses:create", "expenses:edit", "expenses:delete", "expenses:validate",
        "cash:manage", "exchange:manage",
    }),
    UserRole.CASHIER.value: frozenset({
        "cards:view", "cards:recharge", "expenses:view", "expenses:create", "expenses:edit", "expenses:delete",
        "cash:view", "cash:declare", "exchange:view", "exchange:operate", "agencies:view",
    }),
    UserRole.AUDITOR.value: frozenset(_VIEW_ONLY),
    UserRole.EXECUTOR.value: frozenset({
        "expenses:view", "expenses:create", "expenses:edit", "expenses:delete", "agencies:view",
    }),
}


class PermissionService:

    @staticmethod
    def get_role_permissions(role: str) -> Set[str]:
        return set(ROLE_PERMISSIONS.get(role, frozenset()))

    @staticmethod
    def get_user_permissions(user: User) -> Set[str]:
        """Get all permissions granted to a user through their role"""
        if not user or not user.is_active:
            return set()
        return PermissionService.get_role_permissions(user.role)

    @staticmethod
    def user_has_permission(user: User, permission_name: str) -> bool:
        return permission_name in PermissionService.get_user_permissions(user)
