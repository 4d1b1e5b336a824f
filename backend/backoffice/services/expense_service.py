"""
Expense Service - Two-stage expense approval

An expense is validated by accounting first, then by the director.
The transition rules are plain functions; ExpenseService applies them and
runs the side effects of a final approval (cash excess deduction, notifications).
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from backoffice.core.errors import ValidationError, StateTransitionError, NotFoundError
from backoffice.models import Expense, ExpenseStatus, UserRole
from backoffice.schemas import ExpenseCreate, ExpenseUpdate
from backoffice.services.cash_service import CashExcessService
from backoffice.services.notification_service import NotificationService
from backoffice.services.permission_service import PermissionService

logger = logging.getLogger(__name__)

STAGE_ACCOUNTING = "accounting"
STAGE_DIRECTOR = "director"

# (current status, stage) -> (status when approved, status when rejected)
TRANSITIONS: Dict[Tuple[str, str], Tuple[str, str]] = {
    (ExpenseStatus.PENDING.value, STAGE_ACCOUNTING): (
        ExpenseStatus.ACCOUNTING_APPROVED.value, ExpenseStatus.ACCOUNTING_REJECTED.value
    ),
    (ExpenseStatus.ACCOUNTING_APPROVED.value, STAGE_DIRECTOR): (
        ExpenseStatus.DIRECTOR_APPROVED.value, ExpenseStatus.DIRECTOR_REJECTED.value
    ),
}

STAGE_ROLES = {
    STAGE_ACCOUNTING: {UserRole.ACCOUNTING.value, UserRole.SUPER_ADMIN.value},
    STAGE_DIRECTOR: {UserRole.DIRECTOR.value, UserRole.SUPER_ADMIN.value},
}

BYPASS_ROLES = {UserRole.DIRECTOR.value, UserRole.SUPER_ADMIN.value}

TERMINAL_STATUSES = {
    ExpenseStatus.ACCOUNTING_REJECTED.value,
    ExpenseStatus.DIRECTOR_APPROVED.value,
    ExpenseStatus.DIRECTOR_REJECTED.value,
    ExpenseStatus.APPROVED.value,
    ExpenseStatus.REJECTED.value,
}

# Final approvals freeze the expense
LOCKED_STATUSES = {ExpenseStatus.DIRECTOR_APPROVED.value, ExpenseStatus.APPROVED.value}

# Editable columns an explicit null may clear
EXPENSE_NULLABLE_FIELDS = {"comment"}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_modify(status: str) -> bool:
    """Edit and delete share the same rule"""
    return status not in LOCKED_STATUSES


def reachable_statuses(status: str) -> set:
    reachable = set()
    for (current, _stage), targets in TRANSITIONS.items():
        if current == status:
            reachable.update(targets)
    return reachable


def next_status(current: str, stage: str, approved: bool) -> str:
    """Status after a stage decision; raises StateTransitionError when not allowed"""
    targets = TRANSITIONS.get((current, stage))
    if targets is None:
        raise StateTransitionError(
            f"{stage.capitalize()} validation is not allowed in current state '{current}'"
        )
    return targets[0] if approved else targets[1]


def clean_rejection_reason(approved: bool, reason: Optional[str]) -> Optional[str]:
    if approved:
        return None
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    return reason


class ExpenseService:
    def __init__(self, db: Session):
        self.db = db
        self.excess = CashExcessService(db)
        self.notifications = NotificationService(db)

    def get_by_id(self, expense_id: int, for_update: bool = False) -> Optional[Expense]:
        query = self.db.query(Expense).filter(Expense.id == expense_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _get_or_404(self, expense_id: int, for_update: bool = False) -> Expense:
        expense = self.get_by_id(expense_id, for_update=for_update)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    # ---------- listing ----------

    def list_for_user(self, user, status: str = None, category: str = None, agency: str = None,
                      requested_by: str = None, start_date: date = None,
                      end_date: date = None) -> List[Expense]:
        """Everything for roles allowed to see all expenses, otherwise the user's own"""
        query = self.db.query(Expense)
        if not PermissionService.user_has_permission(user, "expenses:view_all"):
            query = query.filter(Expense.requester_id == user.id)
        elif requested_by:
            query = query.filter(Expense.requested_by.ilike(f"%{requested_by}%"))

        if status:
            query = query.filter(Expense.status == status)
        if category:
            query = query.filter(Expense.category == category)
        if agency:
            query = query.filter(Expense.agency == agency)
        if start_date:
            query = query.filter(Expense.expense_date >= start_date)
        if end_date:
            query = query.filter(Expense.expense_date <= end_date)

        return query.order_by(Expense.created_at.desc(), Expense.id.desc()).all()

    def pending_for_user(self, user) -> List[Expense]:
        """Expenses waiting on the user's validation stage"""
        statuses = []
        if user.role in STAGE_ROLES[STAGE_ACCOUNTING]:
            statuses.append(ExpenseStatus.PENDING.value)
        if user.role in STAGE_ROLES[STAGE_DIRECTOR]:
            statuses.append(ExpenseStatus.ACCOUNTING_APPROVED.value)
        if not statuses:
            return []
        return self.db.query(Expense).filter(
            Expense.status.in_(statuses)
        ).order_by(Expense.created_at.asc(), Expense.id.asc()).all()

    def get_summary(self, start_date: date = None, end_date: date = None) -> Dict:
        """Counts and totals by status and by category"""
        filters = []
        if start_date:
            filters.append(Expense.expense_date >= start_date)
        if end_date:
            filters.append(Expense.expense_date <= end_date)

        def grouped(column):
            rows = self.db.query(
                column, func.count(Expense.id), func.coalesce(func.sum(Expense.amount), 0)
            ).filter(*filters).group_by(column).all()
            return {
                key: {"count": count, "amount": Decimal(str(total))}
                for key, count, total in rows
            }

        by_status = grouped(Expense.status)
        return {
            "start_date": start_date,
            "end_date": end_date,
            "count": sum(v["count"] for v in by_status.values()),
            "total_amount": sum((v["amount"] for v in by_status.values()), Decimal("0")),
            "by_status": by_status,
            "by_category": grouped(Expense.category),
        }

    # ---------- lifecycle ----------

    def _resolve_excess_cashier(self, data: ExpenseCreate, actor) -> Optional[int]:
        if not data.deduct_from_excess:
            return None

        cashier_id = data.deducted_cashier_id
        if actor.role == UserRole.CASHIER.value:
            if cashier_id is not None and cashier_id != actor.id:
                raise PermissionError("A cashier can only use their own cash excess")
            cashier_id = actor.id
        if cashier_id is None:
            raise ValidationError("Select the cashier whose cash excess pays this expense")

        self.excess.get_cashier(cashier_id)
        self.excess.check_available(cashier_id, data.amount)
        return cashier_id

    def create(self, data: ExpenseCreate, actor) -> Expense:
        cashier_id = self._resolve_excess_cashier(data, actor)
        agency = data.agency or (actor.agency.name if actor.agency else "Head office")

        expense = Expense(
            description=data.description,
            amount=data.amount,
            category=data.category.value,
            status=ExpenseStatus.PENDING.value,
            expense_date=date.today(),
            requested_by=actor.display_name,
            requester_id=actor.id,
            agency=agency,
            comment=data.comment,
            deduct_from_excess=data.deduct_from_excess,
            deducted_cashier_id=cashier_id,
        )
        self.db.add(expense)
        self.db.flush()

        self.notifications.emit(
            message=f"New expense #{expense.id} from {expense.requested_by}: {expense.description}",
            event="expense_created",
            target_role=UserRole.ACCOUNTING.value,
            resource_type="expense",
            resource_id=expense.id,
        )
        logger.info(f"Expense {expense.id} created by {actor.username} ({expense.amount})")
        return expense

    def _check_owner(self, expense: Expense, actor):
        if expense.requester_id != actor.id and not PermissionService.user_has_permission(actor, "expenses:view_all"):
            raise PermissionError("You can only change your own expenses")

    def update(self, expense_id: int, data: ExpenseUpdate, actor) -> Expense:
        expense = self._get_or_404(expense_id, for_update=True)
        self._check_owner(expense, actor)
        if not can_modify(expense.status):
            raise StateTransitionError(f"Edit is not allowed in current state '{expense.status}'")

        update_data = data.model_dump(exclude_unset=True)
        if "category" in update_data and update_data["category"] is not None:
            update_data["category"] = update_data["category"].value
        for key, value in update_data.items():
            if value is not None or key in EXPENSE_NULLABLE_FIELDS:
                setattr(expense, key, value)
        self.db.flush()
        return expense

    def delete(self, expense_id: int, actor) -> bool:
        expense = self._get_or_404(expense_id, for_update=True)
        self._check_owner(expense, actor)
        if not can_modify(expense.status):
            raise StateTransitionError(f"Delete is not allowed in current state '{expense.status}'")
        self.db.delete(expense)
        self.db.flush()
        return True

    # ---------- validation ----------

    def _requester_target(self, expense: Expense) -> str:
        return expense.requester.username if expense.requester else expense.requested_by

    def validate(self, expense_id: int, approved: bool, stage: str, rejection_reason: Optional[str],
                 actor) -> Expense:
        """
        Apply one stage decision.

        A director approval with the excess flag set writes the cashier
        deduction in the same transaction; if the excess no longer covers the
        amount the whole validation fails.
        """
        reason = clean_rejection_reason(approved, rejection_reason)
        if stage not in STAGE_ROLES:
            raise ValidationError(f"Unknown validation stage '{stage}'")
        if actor.role not in STAGE_ROLES[stage]:
            raise PermissionError(f"Your role cannot validate at the {stage} stage")

        expense = self._get_or_404(expense_id, for_update=True)
        new_status = next_status(expense.status, stage, approved)
        now = datetime.utcnow()

        if stage == STAGE_ACCOUNTING:
            expense.accounting_validated_by = actor.display_name
            expense.accounting_validated_at = now
            expense.accounting_rejection_reason = reason
            expense.status = new_status
            self.db.flush()
            self._notify(expense, other_role=UserRole.DIRECTOR.value)
        else:
            self._apply_director_decision(expense, new_status, reason, actor, now)

        logger.info(f"Expense {expense.id} -> {expense.status} by {actor.username}")
        return expense

    def bypass_accounting(self, expense_id: int, approved: bool, rejection_reason: Optional[str],
                          actor) -> Expense:
        """Director decision taken directly on a pending expense"""
        reason = clean_rejection_reason(approved, rejection_reason)
        if actor.role not in BYPASS_ROLES:
            raise PermissionError("Only a director can bypass the accounting validation")

        expense = self._get_or_404(expense_id, for_update=True)
        if expense.status != ExpenseStatus.PENDING.value:
            raise StateTransitionError(
                f"Bypassing accounting is not allowed in current state '{expense.status}'"
            )

        new_status = ExpenseStatus.DIRECTOR_APPROVED.value if approved else ExpenseStatus.DIRECTOR_REJECTED.value
        expense.accounting_bypassed = True
        self._apply_director_decision(expense, new_status, reason, actor, datetime.utcnow())
        logger.info(f"Expense {expense.id} -> {expense.status} by {actor.username} (accounting bypassed)")
        return expense

    def _apply_director_decision(self, expense: Expense, new_status: str, reason: Optional[str],
                                 actor, now: datetime):
        expense.director_validated_by = actor.display_name
        expense.director_validated_at = now
        expense.director_rejection_reason = reason
        expense.status = new_status

        if new_status == ExpenseStatus.DIRECTOR_APPROVED.value and expense.deduct_from_excess:
            self.excess.commit_deduction(expense, actor)

        self.db.flush()
        self._notify(expense, other_role=UserRole.ACCOUNTING.value)

    def _notify(self, expense: Expense, other_role: str):
        message = f"Expense #{expense.id} ({expense.description}) is now {expense.status.replace('_', ' ')}"
        self.notifications.emit(
            message=message,
            event=f"expense_{expense.status}",
            target_user_name=self._requester_target(expense),
            resource_type="expense",
            resource_id=expense.id,
        )
        self.notifications.emit(
            message=message,
            event=f"expense_{expense.status}",
            target_role=other_role,
            resource_type="expense",
            resource_id=expense.id,
        )
