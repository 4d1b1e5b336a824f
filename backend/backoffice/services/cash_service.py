"""
Cash Service - Central vault and cashier cash-excess ledger
"""
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import ValidationError, NotFoundError
from backoffice.models import (
    CashAccount, CashTransaction, CashExcessEntry, Expense, User, UserRole
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class CashAccountService:
    """Running balances of cash accounts; every change writes a CashTransaction"""

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, account_type: str, for_update: bool = False) -> Optional[CashAccount]:
        query = self.db.query(CashAccount).filter(CashAccount.account_type == account_type)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_vault(self, for_update: bool = False) -> CashAccount:
        """Return the vault account, creating it with a zero balance if missing"""
        vault = self.get_account(settings.VAULT_ACCOUNT_TYPE, for_update=for_update)
        if vault is None:
            vault = CashAccount(
                account_type=settings.VAULT_ACCOUNT_TYPE,
                account_name=settings.VAULT_ACCOUNT_NAME,
                current_balance=ZERO,
                updated_by="system",
            )
            self.db.add(vault)
            self.db.flush()
            logger.info("Vault account created")
        return vault

    def _record(self, account: CashAccount, transaction_type: str, amount: Decimal,
                description: str, actor, reference_type: str = None,
                reference_id: int = None) -> CashTransaction:
        transaction = CashTransaction(
            account_id=account.id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=account.current_balance,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            created_by=actor.display_name if actor else "system",
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def deposit_to_vault(self, amount, description: str = None, actor=None,
                         transaction_type: str = "deposit",
                         reference_type: str = None, reference_id: int = None) -> CashTransaction:
        amount = Decimal(str(amount))
        if amount <= ZERO:
            raise ValidationError("Deposit amount must be positive")

        vault = self.get_vault(for_update=True)
        vault.current_balance = Decimal(str(vault.current_balance)) + amount
        vault.updated_by = actor.display_name if actor else "system"
        return self._record(vault, transaction_type, amount, description or "Vault deposit", actor,
                            reference_type, reference_id)

    def withdraw_from_vault(self, amount, transaction_type: str = "withdrawal",
                            description: str = None, actor=None,
                            reference_type: str = None, reference_id: int = None) -> CashTransaction:
        """Debit the vault; raises ValidationError when the balance does not cover the amount"""
        amount = Decimal(str(amount))
        if amount <= ZERO:
            raise ValidationError("Withdrawal amount must be positive")

        vault = self.get_vault(for_update=True)
        balance = Decimal(str(vault.current_balance))
        if balance < amount:
            raise ValidationError(
                f"Insufficient vault balance. "
                f"Available balance: {float(balance):,.2f}, "
                f"Requested amount: {float(amount):,.2f}"
            )

        vault.current_balance = balance - amount
        vault.updated_by = actor.display_name if actor else "system"
        transaction = self._record(
            vault, transaction_type, -amount, description or "Vault withdrawal", actor,
            reference_type=reference_type, reference_id=reference_id,
        )
        logger.info(f"Vault debited by {amount} ({transaction_type}), balance {vault.current_balance}")
        return transaction

    def get_transactions(self, account_type: str = None, limit: int = 100) -> List[CashTransaction]:
        vault = self.get_vault() if account_type is None else self.get_account(account_type)
        if vault is None:
            raise NotFoundError(f"Cash account '{account_type}' not found")
        return self.db.query(CashTransaction).filter(
            CashTransaction.account_id == vault.id
        ).order_by(CashTransaction.created_at.desc(), CashTransaction.id.desc()).limit(limit).all()


class CashExcessService:
    """
    Cashier cash excess.

    Declarations add positive entries, director-approved expenses paid from a
    cashier's excess add negative entries. The available excess is the sum.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_cashier(self, cashier_id: int) -> User:
        cashier = self.db.query(User).filter(User.id == cashier_id).first()
        if not cashier:
            raise NotFoundError("Cashier not found")
        if cashier.role != UserRole.CASHIER.value:
            raise ValidationError(f"{cashier.display_name} is not a cashier")
        return cashier

    def available_excess(self, cashier_id: int) -> Decimal:
        total = self.db.query(func.coalesce(func.sum(CashExcessEntry.amount), 0)).filter(
            CashExcessEntry.cashier_id == cashier_id
        ).scalar()
        return Decimal(str(total or 0))

    def declare(self, amount, actor, cashier_id: int = None, declaration_date: date = None,
                comment: str = None) -> CashExcessEntry:
        """
        Record cash found in excess at a cashier's till.

        Cashiers declare for themselves; other roles must name the cashier.
        """
        amount = Decimal(str(amount))
        if amount <= ZERO:
            raise ValidationError("Declared excess must be positive")

        if actor.role == UserRole.CASHIER.value:
            if cashier_id is not None and cashier_id != actor.id:
                raise PermissionError("Cashiers can only declare their own excess")
            cashier_id = actor.id
        elif cashier_id is None:
            raise ValidationError("Select the cashier the excess belongs to")

        self.get_cashier(cashier_id)
        entry = CashExcessEntry(
            cashier_id=cashier_id,
            amount=amount,
            entry_type="declaration",
            declaration_date=declaration_date or date.today(),
            comment=comment,
            created_by=actor.display_name,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(f"Excess of {amount} declared for cashier {cashier_id}")
        return entry

    def cashiers_with_excess(self) -> List[Dict]:
        """Cashiers whose available excess is strictly positive"""
        rows = self.db.query(
            User,
            func.coalesce(func.sum(CashExcessEntry.amount), 0).label("available")
        ).join(
            CashExcessEntry, CashExcessEntry.cashier_id == User.id
        ).filter(
            User.role == UserRole.CASHIER.value,
            User.is_active == True  # noqa: E712
        ).group_by(User.id).order_by(User.username).all()

        return [
            {"id": user.id, "name": user.display_name, "available_excess": Decimal(str(available))}
            for user, available in rows
            if Decimal(str(available)) > ZERO
        ]

    def check_available(self, cashier_id: int, amount) -> Decimal:
        """Raise ValidationError unless the cashier's excess covers the amount; returns it"""
        available = self.available_excess(cashier_id)
        amount = Decimal(str(amount))
        if available <= ZERO:
            raise ValidationError("The selected cashier has no available cash excess")
        if amount > available:
            raise ValidationError(
                f"Amount exceeds the cashier's available excess of {float(available):,.2f}"
            )
        return available

    def commit_deduction(self, expense: Expense, actor) -> CashExcessEntry:
        """Write the negative entry for an approved expense, once per expense"""
        existing = self.db.query(CashExcessEntry).filter(
            CashExcessEntry.expense_id == expense.id
        ).first()
        if existing:
            return existing

        if not expense.deducted_cashier_id:
            raise ValidationError("No cashier selected for the excess deduction")
        self.get_cashier(expense.deducted_cashier_id)
        self.check_available(expense.deducted_cashier_id, expense.amount)

        entry = CashExcessEntry(
            cashier_id=expense.deducted_cashier_id,
            amount=-Decimal(str(expense.amount)),
            entry_type="deduction",
            declaration_date=date.today(),
            comment=f"Expense #{expense.id}: {expense.description}",
            expense_id=expense.id,
            created_by=actor.display_name,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(f"Excess of cashier {expense.deducted_cashier_id} reduced by {expense.amount} (expense {expense.id})")
        return entry

    def get_entries(self, cashier_id: int = None, limit: int = 100) -> List[CashExcessEntry]:
        query = self.db.query(CashExcessEntry)
        if cashier_id:
            query = query.filter(CashExcessEntry.cashier_id == cashier_id)
        return query.order_by(CashExcessEntry.created_at.desc(), CashExcessEntry.id.desc()).limit(limit).all()
