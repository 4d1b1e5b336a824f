"""
Pydantic Schemas for API Validation
"""
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Dict, List, Literal, Optional
from datetime import datetime, date
from decimal import Decimal
from enum import Enum


# ==================== ENUMS ====================

class CountryEnum(str, Enum):
    MALI = "Mali"
    RDC = "RDC"
    FRANCE = "France"
    CONGO = "Congo"


class CurrencyEnum(str, Enum):
    XAF = "XAF"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class ForeignCurrencyEnum(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class ExpenseCategoryEnum(str, Enum):
    BUREAU = "Bureau"
    TRANSPORT = "Transport"
    COMMUNICATION = "Communication"
    FORMATION = "Formation"
    EQUIPEMENT = "Équipement"
    MAINTENANCE = "Maintenance"
    MARKETING = "Marketing"
    AUTRES = "Autres"


class ValidationStageEnum(str, Enum):
    ACCOUNTING = "accounting"
    DIRECTOR = "director"


# ==================== AUTH SCHEMAS ====================

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


# ==================== USER & AGENCY SCHEMAS ====================

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Literal["super_admin", "director", "delegate", "accounting", "cashier", "auditor", "executor"] = "cashier"
    agency_id: Optional[int] = None


class UserResponse(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: str
    agency_id: Optional[int] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class AgencyCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    code: Optional[str] = Field(None, max_length=20)
    city: Optional[str] = None


class AgencyResponse(BaseModel):
    id: int
    name: str
    code: Optional[str] = None
    city: Optional[str] = None
    status: str

    model_config = ConfigDict(from_attributes=True)


# ==================== CARD SCHEMAS ====================

def _strip_cid(value):
    return value.strip() if isinstance(value, str) else value


class CardBase(BaseModel):
    cid: str = Field(..., min_length=1, max_length=50)
    country: CountryEnum
    status: Literal["active", "inactive"] = "active"
    last_recharge_date: Optional[date] = None
    expiration_date: Optional[date] = None

    clean_cid = field_validator("cid", mode="before")(_strip_cid)


class CardCreate(CardBase):
    monthly_limit: Optional[Decimal] = Field(None, gt=0)
    recharge_limit: Optional[Decimal] = Field(None, gt=0)


class CardUpdate(BaseModel):
    cid: Optional[str] = Field(None, min_length=1, max_length=50)
    country: Optional[CountryEnum] = None
    status: Optional[Literal["active", "inactive"]] = None
    monthly_limit: Optional[Decimal] = Field(None, gt=0)
    recharge_limit: Optional[Decimal] = Field(None, gt=0)
    last_recharge_date: Optional[date] = None
    expiration_date: Optional[date] = None

    clean_cid = field_validator("cid", mode="before")(_strip_cid)


class CardResponse(CardBase):
    id: int
    monthly_limit: Decimal
    monthly_used: Decimal
    recharge_limit: Decimal
    capacity: Decimal
    usage_state: str
    selectable: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CardImportItem(BaseModel):
    cid: str = Field(..., min_length=1, max_length=50)
    country: CountryEnum = CountryEnum.MALI
    last_recharge_date: Optional[date] = None
    expiration_date: Optional[date] = None

    clean_cid = field_validator("cid", mode="before")(_strip_cid)


class CardImportRequest(BaseModel):
    cards: List[CardImportItem] = Field(..., min_length=1)


class CardBulkDeleteRequest(BaseModel):
    card_ids: List[int] = Field(..., min_length=1)


class CardRechargeRequest(BaseModel):
    card_id: int
    amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = None


class ResetUsageRequest(BaseModel):
    country: Optional[CountryEnum] = None


class CountryLimitUpdate(BaseModel):
    country: CountryEnum
    monthly_limit: Decimal = Field(..., gt=0)
    recharge_limit: Decimal = Field(..., gt=0)
    card_fee: Optional[Decimal] = Field(None, ge=0)


class CountryLimitResponse(BaseModel):
    country: str
    monthly_limit: Decimal
    recharge_limit: Decimal
    card_fee: Decimal

    model_config = ConfigDict(from_attributes=True)


class DistributionRequest(BaseModel):
    """
    Bulk distribution command.
    Amount and country stay optional here so the allocator reports its own
    validation message instead of a schema error.
    """
    amount: Optional[Decimal] = None
    country: Optional[CountryEnum] = None
    card_ids: List[int] = Field(default_factory=list)
    deduct_from_vault: bool = False


class DistributionLine(BaseModel):
    card_id: int
    cid: str
    amount: Decimal
    remaining_capacity: Decimal


class DistributionResponse(BaseModel):
    distribution_id: Optional[int] = None
    country: str
    requested_amount: Decimal
    total_capacity: Decimal
    total_distributed: Decimal
    remaining_amount: Decimal
    cards_used: int
    fee_per_card: Decimal
    total_fees: Decimal
    deduct_from_vault: bool
    distributions: List[DistributionLine]
    distributed_by: Optional[str] = None
    distributed_at: Optional[datetime] = None


# ==================== CASH SCHEMAS ====================

class VaultDepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None


class CashExcessDeclarationCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    declaration_date: date = Field(default_factory=date.today)
    comment: Optional[str] = None
    cashier_id: Optional[int] = None  # Defaults to the current cashier


class CashierExcessResponse(BaseModel):
    id: int
    name: str
    available_excess: Decimal


# ==================== EXPENSE SCHEMAS ====================

class ExpenseBase(BaseModel):
    description: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    category: ExpenseCategoryEnum = ExpenseCategoryEnum.AUTRES
    agency: Optional[str] = None
    comment: Optional[str] = None


class ExpenseCreate(ExpenseBase):
    deduct_from_excess: bool = False
    deducted_cashier_id: Optional[int] = None


class ExpenseUpdate(BaseModel):
    description: Optional[str] = Field(None, min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0)
    category: Optional[ExpenseCategoryEnum] = None
    agency: Optional[str] = None
    comment: Optional[str] = None


class ExpenseValidateRequest(BaseModel):
    approved: bool
    stage: ValidationStageEnum
    rejection_reason: Optional[str] = None


class ExpenseBypassRequest(BaseModel):
    approved: bool
    rejection_reason: Optional[str] = None


class ExpenseResponse(BaseModel):
    id: int
    description: str
    amount: Decimal
    category: str
    status: str
    expense_date: date
    requested_by: str
    agency: str
    comment: Optional[str] = None
    accounting_validated_by: Optional[str] = None
    accounting_validated_at: Optional[datetime] = None
    accounting_rejection_reason: Optional[str] = None
    accounting_bypassed: bool = False
    director_validated_by: Optional[str] = None
    director_validated_at: Optional[datetime] = None
    director_rejection_reason: Optional[str] = None
    deduct_from_excess: bool = False
    deducted_cashier_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ==================== EXCHANGE SCHEMAS ====================

class DeductFlags(BaseModel):
    """Which till the purchase is paid from; exactly the paying currency's flag must be set"""
    deduct_from_xaf: bool = False
    deduct_from_usd: bool = False
    deduct_from_eur: bool = False
    deduct_from_gbp: bool = False

    def for_currency(self, currency: str) -> bool:
        return bool(getattr(self, f"deduct_from_{currency.lower()}", False))


class PurchaseRequest(BaseModel):
    paying_currency: CurrencyEnum
    bought_currency: ForeignCurrencyEnum
    paid_amount: Decimal = Field(..., gt=0)
    purchase_rate: Decimal
    transport_fees: Decimal = Field(default=Decimal("0"), ge=0)
    handling_fees: Decimal = Field(default=Decimal("0"), ge=0)
    banknote_fees: Decimal = Field(default=Decimal("0"), ge=0)
    deduct_flags: DeductFlags = Field(default_factory=DeductFlags)


class PurchaseResponse(BaseModel):
    operation_id: int
    gross_bought: Decimal
    total_available: Decimal
    effective_rate: Decimal


class SaleRequest(BaseModel):
    sold_currency: ForeignCurrencyEnum
    sold_amount: Decimal = Field(..., gt=0)
    day_rate: Decimal
    received_currency: Optional[CurrencyEnum] = None
    beneficiary: str = Field(..., min_length=1)
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    agency_id: Optional[int] = None


class SaleResponse(BaseModel):
    operation_id: int
    received_amount: Decimal
    commission: Decimal
    baseline_rate: Decimal
    baseline_is_fallback: bool


class CounterExchangeRequest(BaseModel):
    direction: Literal["buy", "sell"]  # buy = customer sells us foreign currency
    currency: ForeignCurrencyEnum
    amount_foreign: Decimal = Field(..., gt=0)
    rate: Decimal
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_id_type: Optional[str] = None
    client_id_number: Optional[str] = None
    agency_id: Optional[int] = None  # Defaults to the user's agency


class BranchResupply(BaseModel):
    agency_id: int
    amount_xaf: Decimal = Field(default=Decimal("0"), ge=0)
    amount_usd: Decimal = Field(default=Decimal("0"), ge=0)
    amount_eur: Decimal = Field(default=Decimal("0"), ge=0)
    amount_gbp: Decimal = Field(default=Decimal("0"), ge=0)

    def amounts(self) -> Dict[str, Decimal]:
        return {
            "XAF": self.amount_xaf,
            "USD": self.amount_usd,
            "EUR": self.amount_eur,
            "GBP": self.amount_gbp,
        }


class ResupplyRequest(BaseModel):
    distributions: List[BranchResupply] = Field(..., min_length=1)

    @field_validator("distributions")
    @classmethod
    def unique_agencies(cls, value: List[BranchResupply]) -> List[BranchResupply]:
        ids = [d.agency_id for d in value]
        if len(ids) != len(set(ids)):
            raise ValueError("Each agency may appear only once per resupply")
        return value


class TillAdjustRequest(BaseModel):
    currency: CurrencyEnum
    new_balance: Decimal = Field(..., ge=0)
    reason: Optional[str] = None
    agency_id: Optional[int] = None


class TillBalanceResponse(BaseModel):
    currency: str
    balance: Decimal
    last_effective_rate: Optional[Decimal] = None
    accumulated_commission: Decimal
    last_manual_reason: Optional[str] = None
    updated_by: Optional[str] = None
    last_updated: Optional[datetime] = None
    agency_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ExchangeOperationResponse(BaseModel):
    id: int
    operation_type: str
    payload: dict
    created_by: str
    agency_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ==================== NOTIFICATION SCHEMAS ====================

class NotificationResponse(BaseModel):
    id: int
    message: str
    event: Optional[str] = None
    target_role: Optional[str] = None
    target_user_name: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationReadRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)
