"""
SQLAlchemy Models for the Back-Office
"""
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Date, Numeric, JSON,
    ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
import enum

from backoffice.core.database import Base


# ==================== ENUMS ====================

class UserRole(enum.Enum):
    SUPER_ADMIN = "super_admin"
    DIRECTOR = "director"
    DELEGATE = "delegate"
    ACCOUNTING = "accounting"
    CASHIER = "cashier"
    AUDITOR = "auditor"
    EXECUTOR = "executor"


class CardStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExpenseStatus(enum.Enum):
    PENDING = "pending"
    ACCOUNTING_APPROVED = "accounting_approved"
    ACCOUNTING_REJECTED = "accounting_rejected"
    DIRECTOR_APPROVED = "director_approved"
    DIRECTOR_REJECTED = "director_rejected"
    # Single-step statuses kept for rows created before the two-stage workflow
    APPROVED = "approved"
    REJECTED = "rejected"


class ExchangeOperationType(enum.Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    BRANCH_RESUPPLY = "branch_resupply"
    COUNTER_PURCHASE = "counter_purchase"
    COUNTER_SALE = "counter_sale"


# ==================== CORE MODELS ====================

class Agency(Base):
    """Branch office; tills with agency_id NULL belong to the central office"""
    __tablename__ = 'agencies'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    code = Column(String(20), nullable=True, unique=True)
    city = Column(String(100), nullable=True)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    users = relationship("User", back_populates="agency")
    tills = relationship("ExchangeTill", back_populates="agency", cascade="all, delete-orphan")


class User(Base):
    """User account with a single role"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=True, unique=True)
    full_name = Column(String(255), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(30), nullable=False, default=UserRole.CASHIER.value)
    is_active = Column(Boolean, default=True)
    agency_id = Column(Integer, ForeignKey('agencies.id', ondelete='SET NULL'), nullable=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    agency = relationship("Agency", back_populates="users")

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    @property
    def is_superuser(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN.value


# ==================== CARDS ====================

class Card(Base):
    """Prepaid card attached to a country"""
    __tablename__ = 'cards'

    id = Column(Integer, primary_key=True)
    cid = Column(String(50), nullable=False, unique=True)
    country = Column(String(50), nullable=False)
    status = Column(String(20), default=CardStatus.ACTIVE.value, nullable=False)
    monthly_limit = Column(Numeric(18, 2), nullable=False, default=Decimal("2000000"))
    monthly_used = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    recharge_limit = Column(Numeric(18, 2), nullable=False, default=Decimal("500000"))
    last_recharge_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_cards_country_status', 'country', 'status'),
    )


class CountryLimit(Base):
    """Default ceilings and per-card fee for a card country"""
    __tablename__ = 'country_limits'

    id = Column(Integer, primary_key=True)
    country = Column(String(50), nullable=False, unique=True)
    monthly_limit = Column(Numeric(18, 2), nullable=False)
    recharge_limit = Column(Numeric(18, 2), nullable=False)
    card_fee = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    updated_by = Column(String(255), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CardHistory(Base):
    """Append-only trail of card actions"""
    __tablename__ = 'cards_history'

    id = Column(Integer, primary_key=True)
    action = Column(String(30), nullable=False)
    card_id = Column(Integer, nullable=True)  # Kept after hard delete
    card_cid = Column(String(50), nullable=True)
    country = Column(String(50), nullable=True)
    amount = Column(Numeric(18, 2), nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    distribution_id = Column(Integer, ForeignKey('card_distributions.id', ondelete='SET NULL'), nullable=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    user_name = Column(String(255), nullable=True)
    user_role = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_cards_history_card', 'card_id'),
        Index('ix_cards_history_action', 'action'),
    )


class CardDistribution(Base):
    """One bulk distribution across the selected cards of a country"""
    __tablename__ = 'card_distributions'

    id = Column(Integer, primary_key=True)
    country = Column(String(50), nullable=False)
    requested_amount = Column(Numeric(18, 2), nullable=False)
    total_distributed = Column(Numeric(18, 2), nullable=False)
    remaining_amount = Column(Numeric(18, 2), nullable=False)
    cards_used = Column(Integer, nullable=False, default=0)
    fee_per_card = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_fees = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    deduct_from_vault = Column(Boolean, default=False, nullable=False)
    distributed_by = Column(String(255), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(255), nullable=True)

    items = relationship("CardDistributionItem", back_populates="distribution", cascade="all, delete-orphan")


class CardDistributionItem(Base):
    __tablename__ = 'card_distribution_items'

    id = Column(Integer, primary_key=True)
    distribution_id = Column(Integer, ForeignKey('card_distributions.id', ondelete='CASCADE'), nullable=False)
    card_id = Column(Integer, ForeignKey('cards.id', ondelete='SET NULL'), nullable=True)
    card_cid = Column(String(50), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    remaining_capacity = Column(Numeric(18, 2), nullable=False)

    distribution = relationship("CardDistribution", back_populates="items")


# ==================== CASH ====================

class CashAccount(Base):
    """Cash pool (vault, petty cash) with a running balance"""
    __tablename__ = 'cash_accounts'

    id = Column(Integer, primary_key=True)
    account_type = Column(String(30), nullable=False, unique=True)
    account_name = Column(String(255), nullable=False)
    current_balance = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    updated_by = Column(String(255), nullable=True)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    transactions = relationship("CashTransaction", back_populates="account", cascade="all, delete-orphan")


class CashTransaction(Base):
    """Every cash account balance change"""
    __tablename__ = 'cash_transactions'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('cash_accounts.id', ondelete='CASCADE'), nullable=False)
    transaction_type = Column(String(30), nullable=False)  # deposit, withdrawal, expense, distribution
    amount = Column(Numeric(18, 2), nullable=False)
    balance_after = Column(Numeric(18, 2), nullable=False)
    description = Column(Text, nullable=True)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    account = relationship("CashAccount", back_populates="transactions")


class CashExcessEntry(Base):
    """
    Cashier cash-excess ledger.
    Positive amounts are declared excess, negative amounts are expense deductions.
    """
    __tablename__ = 'cash_excess_entries'

    id = Column(Integer, primary_key=True)
    cashier_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    entry_type = Column(String(20), nullable=False)  # declaration, deduction
    declaration_date = Column(Date, nullable=True)
    comment = Column(Text, nullable=True)
    expense_id = Column(Integer, ForeignKey('expenses.id', ondelete='SET NULL'), nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    cashier = relationship("User")

    __table_args__ = (
        Index('ix_cash_excess_cashier', 'cashier_id'),
        UniqueConstraint('expense_id', name='uq_cash_excess_expense'),
    )


# ==================== EXPENSES ====================

class Expense(Base):
    """Expense request going through accounting then director validation"""
    __tablename__ = 'expenses'

    id = Column(Integer, primary_key=True)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    category = Column(String(100), nullable=False)
    status = Column(String(30), default=ExpenseStatus.PENDING.value, nullable=False)
    expense_date = Column(Date, default=date.today, nullable=False)
    requested_by = Column(String(255), nullable=False)
    requester_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    agency = Column(String(255), nullable=False)
    comment = Column(Text, nullable=True)

    # Accounting stage
    accounting_validated_by = Column(String(255), nullable=True)
    accounting_validated_at = Column(DateTime, nullable=True)
    accounting_rejection_reason = Column(Text, nullable=True)
    accounting_bypassed = Column(Boolean, default=False, nullable=False)

    # Director stage
    director_validated_by = Column(String(255), nullable=True)
    director_validated_at = Column(DateTime, nullable=True)
    director_rejection_reason = Column(Text, nullable=True)

    # Cash excess deduction, committed on director approval
    deduct_from_excess = Column(Boolean, default=False, nullable=False)
    deducted_cashier_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    requester = relationship("User", foreign_keys=[requester_id])
    deducted_cashier = relationship("User", foreign_keys=[deducted_cashier_id])

    __table_args__ = (
        Index('ix_expenses_status', 'status'),
        CheckConstraint('amount >= 0', name='ck_expenses_amount_positive'),
    )


# ==================== EXCHANGE ====================

class ExchangeTill(Base):
    """Currency balance of one till (agency_id NULL = central till)"""
    __tablename__ = 'exchange_tills'

    id = Column(Integer, primary_key=True)
    agency_id = Column(Integer, ForeignKey('agencies.id', ondelete='CASCADE'), nullable=True)
    currency = Column(String(3), nullable=False)
    balance = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    last_effective_rate = Column(Numeric(18, 6), nullable=True)
    accumulated_commission = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    last_manual_reason = Column(Text, nullable=True)
    updated_by = Column(String(255), nullable=False, default="system")
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    agency = relationship("Agency", back_populates="tills")

    __table_args__ = (
        UniqueConstraint('agency_id', 'currency', name='uq_exchange_till_agency_currency'),
    )


class ExchangeOperation(Base):
    """Append-only log of till operations"""
    __tablename__ = 'exchange_operations'

    id = Column(Integer, primary_key=True)
    operation_type = Column(String(30), nullable=False)
    payload = Column(JSON, nullable=False)
    created_by = Column(String(255), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    agency_id = Column(Integer, ForeignKey('agencies.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    agency = relationship("Agency")

    __table_args__ = (
        Index('ix_exchange_operations_agency', 'agency_id', 'created_at'),
        Index('ix_exchange_operations_type', 'operation_type'),
    )


# ==================== NOTIFICATIONS & AUDIT ====================

class Notification(Base):
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True)
    message = Column(Text, nullable=False)
    event = Column(String(50), nullable=True)
    target_role = Column(String(30), nullable=True)
    target_user_name = Column(String(255), nullable=True)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AuditLog(Base):
    """Audit trail for sensitive operations"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Who performed the action
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    username = Column(String(100), nullable=True)
    ip_address = Column(String(50), nullable=True)

    # What action was performed
    action = Column(String(50), nullable=False)
    resource_type = Column(String(100), nullable=False)
    resource_id = Column(Integer, nullable=True)
    agency_id = Column(Integer, ForeignKey('agencies.id', ondelete='SET NULL'), nullable=True)

    # Details
    description = Column(Text, nullable=True)
    old_values = Column(Text, nullable=True)  # JSON string
    new_values = Column(Text, nullable=True)  # JSON string
    request_path = Column(String(500), nullable=True)
    status = Column(String(20), default='success')  # success, failure

    __table_args__ = (
        Index('ix_audit_logs_timestamp', 'timestamp'),
        Index('ix_audit_logs_resource', 'resource_type', 'resource_id'),
    )
