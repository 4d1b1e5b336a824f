"""
Exchange Service - Currency tills, effective rates and sale commissions

compute_purchase / compute_sale hold the rate arithmetic. ExchangeTillService
moves till balances and appends exactly one ExchangeOperation per successful
operation; log rows are never updated.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
import logging

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import ValidationError, NotFoundError
from backoffice.models import Agency, ExchangeTill, ExchangeOperation, ExchangeOperationType
from backoffice.schemas import (
    PurchaseRequest, SaleRequest, CounterExchangeRequest, ResupplyRequest, TillAdjustRequest
)
from backoffice.services.audit_service import AuditService, AuditAction
from backoffice.services.permission_service import PermissionService

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

# Most recent logged operations searched for a rate before falling back to the central till
RATE_LOOKBACK = 200


def _d(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_rate(rate) -> Decimal:
    return _d(rate).quantize(CENT, rounding=ROUND_HALF_UP)


def round_amount(amount) -> Decimal:
    return _d(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PurchaseQuote:
    paid_amount: Decimal
    purchase_rate: Decimal
    total_fees: Decimal
    gross_bought: Decimal
    total_available: Decimal
    effective_rate: Decimal


@dataclass
class SaleQuote:
    sold_amount: Decimal
    day_rate: Decimal
    baseline_rate: Decimal
    baseline_is_fallback: bool
    received_amount: Decimal
    commission: Decimal


def compute_purchase(paid_amount, purchase_rate, transport_fees=ZERO, handling_fees=ZERO,
                     banknote_fees=ZERO) -> PurchaseQuote:
    """
    Quote a purchase of foreign currency.

    Fees are expressed in the bought currency and reduce what reaches the
    till. The effective rate is what one unit actually cost once fees are
    paid, rounded to 2 decimals.
    """
    paid_amount = _d(paid_amount)
    purchase_rate = _d(purchase_rate)
    if paid_amount <= ZERO:
        raise ValidationError("The paid amount must be positive")
    if purchase_rate <= ZERO:
        raise ValidationError("The purchase rate must be positive")

    total_fees = _d(transport_fees) + _d(handling_fees) + _d(banknote_fees)
    if total_fees < ZERO:
        raise ValidationError("Fees cannot be negative")

    gross_bought = paid_amount / purchase_rate
    total_available = max(ZERO, gross_bought - total_fees)
    if total_available > ZERO:
        effective_rate = round_rate(paid_amount / total_available)
    else:
        effective_rate = round_rate(purchase_rate)

    return PurchaseQuote(
        paid_amount=paid_amount,
        purchase_rate=purchase_rate,
        total_fees=total_fees,
        gross_bought=gross_bought,
        total_available=total_available,
        effective_rate=effective_rate,
    )


def compute_sale(sold_amount, day_rate, last_effective_rate=None) -> SaleQuote:
    """
    Quote a sale of foreign currency.

    Commission is the spread between the day rate and the last effective
    purchase rate, never negative. Without a known purchase rate the day rate
    is the baseline and the commission is zero.
    """
    sold_amount = _d(sold_amount)
    day_rate = _d(day_rate)
    if sold_amount <= ZERO:
        raise ValidationError("The sold amount must be positive")
    if day_rate <= ZERO:
        raise ValidationError("The day rate must be positive")

    received_amount = sold_amount * day_rate
    if last_effective_rate is None or _d(last_effective_rate) <= ZERO:
        return SaleQuote(
            sold_amount=sold_amount,
            day_rate=day_rate,
            baseline_rate=round_rate(day_rate),
            baseline_is_fallback=True,
            received_amount=round_amount(received_amount),
            commission=ZERO,
        )

    baseline = _d(last_effective_rate)
    commission = max(ZERO, received_amount - sold_amount * baseline)
    return SaleQuote(
        sold_amount=sold_amount,
        day_rate=day_rate,
        baseline_rate=baseline,
        baseline_is_fallback=False,
        received_amount=round_amount(received_amount),
        commission=round_amount(commission),
    )


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class ExchangeTillService:
    def __init__(self, db: Session):
        self.db = db
        self.local_currency = settings.LOCAL_CURRENCY

    # ---------- tills ----------

    def ensure_tills(self, agency_id: Optional[int], created_by: str = "system") -> List[ExchangeTill]:
        """Create the missing currency tills of an agency (None = central office)"""
        existing = {till.currency for till in self._query_tills(agency_id).all()}
        for currency in settings.till_currencies:
            if currency not in existing:
                self.db.add(ExchangeTill(
                    agency_id=agency_id,
                    currency=currency,
                    balance=ZERO,
                    accumulated_commission=ZERO,
                    updated_by=created_by,
                ))
        self.db.flush()
        return self.get_balances(agency_id)

    def _query_tills(self, agency_id: Optional[int]):
        query = self.db.query(ExchangeTill)
        if agency_id is None:
            return query.filter(ExchangeTill.agency_id.is_(None))
        return query.filter(ExchangeTill.agency_id == agency_id)

    def get_till(self, agency_id: Optional[int], currency: str, for_update: bool = False) -> ExchangeTill:
        if currency not in settings.till_currencies:
            raise ValidationError(f"Unsupported currency: {currency}")
        query = self._query_tills(agency_id).filter(ExchangeTill.currency == currency)
        if for_update:
            query = query.with_for_update()
        till = query.first()
        if till is None:
            self.ensure_tills(agency_id)
            till = self._query_tills(agency_id).filter(ExchangeTill.currency == currency).first()
        return till

    def get_balances(self, agency_id: Optional[int] = None) -> List[ExchangeTill]:
        order = {currency: index for index, currency in enumerate(settings.till_currencies)}
        tills = self._query_tills(agency_id).all()
        return sorted(tills, key=lambda till: order.get(till.currency, len(order)))

    def all_agencies_tills(self) -> List[Dict]:
        result = [{"agency_id": None, "agency_name": "Central", "tills": self.get_balances(None)}]
        for agency in self.db.query(Agency).order_by(Agency.name).all():
            result.append({
                "agency_id": agency.id,
                "agency_name": agency.name,
                "tills": self.get_balances(agency.id),
            })
        return result

    def _get_agency(self, agency_id: Optional[int]) -> Optional[Agency]:
        if agency_id is None:
            return None
        agency = self.db.query(Agency).filter(Agency.id == agency_id).first()
        if not agency:
            raise NotFoundError(f"Agency {agency_id} not found")
        return agency

    def resolve_agency(self, requested_agency_id: Optional[int], actor) -> Optional[int]:
        """
        Till owner for an operation started by actor.

        Users without exchange:manage work on their own agency's tills only.
        """
        if PermissionService.user_has_permission(actor, "exchange:manage"):
            agency_id = requested_agency_id
        else:
            if requested_agency_id is not None and requested_agency_id != actor.agency_id:
                raise PermissionError("You can only operate the tills of your own agency")
            agency_id = actor.agency_id
        self._get_agency(agency_id)
        return agency_id

    # ---------- rates ----------

    def _logged_rate(self, agency_id: Optional[int], currency: str) -> Optional[Decimal]:
        if agency_id is None:
            agency_filter = ExchangeOperation.agency_id.is_(None)
        else:
            agency_filter = ExchangeOperation.agency_id == agency_id
        purchases = and_(
            ExchangeOperation.operation_type == ExchangeOperationType.PURCHASE.value,
            ExchangeOperation.payload["bought_currency"].as_string() == currency,
            agency_filter,
        )
        if agency_id is None:
            query = self.db.query(ExchangeOperation).filter(purchases)
        else:
            # Resupply lines for many agencies live in one payload
            query = self.db.query(ExchangeOperation).filter(or_(
                purchases,
                ExchangeOperation.operation_type == ExchangeOperationType.BRANCH_RESUPPLY.value,
            ))

        recent = (
            query.order_by(ExchangeOperation.created_at.desc(), ExchangeOperation.id.desc())
            .limit(RATE_LOOKBACK)
            .all()
        )
        for operation in recent:
            payload = operation.payload or {}
            if operation.operation_type == ExchangeOperationType.PURCHASE.value:
                if operation.agency_id == agency_id and payload.get("bought_currency") == currency:
                    return _d(payload.get("effective_rate"))
                continue
            for line in payload.get("distributions", []):
                if line.get("agency_id") == agency_id:
                    rate = (line.get("effective_rates") or {}).get(currency)
                    if rate is not None:
                        return _d(rate)
        return None

    def last_effective_rate(self, agency_id: Optional[int], currency: str) -> Optional[Decimal]:
        """
        Baseline purchase rate for commission on a sale.

        Looked up on the till itself, then in the till's logged operations,
        then on the central till.
        """
        till = self.get_till(agency_id, currency)
        if till.last_effective_rate is not None and _d(till.last_effective_rate) > ZERO:
            return _d(till.last_effective_rate)

        rate = self._logged_rate(agency_id, currency)
        if rate is not None and rate > ZERO:
            return rate

        if agency_id is not None:
            central = self.get_till(None, currency)
            if central.last_effective_rate is not None and _d(central.last_effective_rate) > ZERO:
                return _d(central.last_effective_rate)
            rate = self._logged_rate(None, currency)
            if rate is not None and rate > ZERO:
                return rate
        return None

    # ---------- log ----------

    def _log(self, operation_type: ExchangeOperationType, payload: Dict, actor,
             agency_id: Optional[int]) -> ExchangeOperation:
        operation = ExchangeOperation(
            operation_type=operation_type.value,
            payload=_jsonable(payload),
            created_by=actor.display_name,
            user_id=actor.id,
            agency_id=agency_id,
        )
        self.db.add(operation)
        self.db.flush()
        return operation

    def _touch(self, till: ExchangeTill, actor):
        till.updated_by = actor.display_name
        till.last_updated = datetime.utcnow()

    def _debit(self, till: ExchangeTill, amount: Decimal, actor):
        balance = _d(till.balance)
        if balance < amount:
            raise ValidationError(
                f"Insufficient {till.currency} balance. "
                f"Available balance: {float(balance):,.2f}, "
                f"Requested amount: {float(amount):,.2f}"
            )
        till.balance = balance - amount
        self._touch(till, actor)

    def _credit(self, till: ExchangeTill, amount: Decimal, actor):
        till.balance = _d(till.balance) + amount
        self._touch(till, actor)

    # ---------- operations ----------

    def purchase(self, request: PurchaseRequest, actor):
        """Central till buys foreign currency; returns (operation, quote)"""
        paying = request.paying_currency.value
        bought = request.bought_currency.value
        if paying == bought:
            raise ValidationError("The paying and bought currencies must differ")
        if bought == self.local_currency:
            raise ValidationError(f"{self.local_currency} cannot be bought")
        if not request.deduct_flags.for_currency(paying):
            raise ValidationError(f"Select the {paying} till to pay for this purchase")

        quote = compute_purchase(
            request.paid_amount, request.purchase_rate,
            request.transport_fees, request.handling_fees, request.banknote_fees
        )

        paying_till = self.get_till(None, paying, for_update=True)
        bought_till = self.get_till(None, bought, for_update=True)
        self._debit(paying_till, quote.paid_amount, actor)
        credited = round_amount(quote.total_available)
        self._credit(bought_till, credited, actor)
        bought_till.last_effective_rate = quote.effective_rate

        operation = self._log(ExchangeOperationType.PURCHASE, {
            "paying_currency": paying,
            "bought_currency": bought,
            "paid_amount": quote.paid_amount,
            "purchase_rate": quote.purchase_rate,
            "transport_fees": request.transport_fees,
            "handling_fees": request.handling_fees,
            "banknote_fees": request.banknote_fees,
            "gross_bought": round_amount(quote.gross_bought),
            "total_available": credited,
            "effective_rate": quote.effective_rate,
            "paying_balance_after": paying_till.balance,
            "bought_balance_after": bought_till.balance,
        }, actor, None)
        self.db.flush()
        logger.info(
            f"Purchase #{operation.id}: {quote.paid_amount} {paying} -> {credited} {bought} "
            f"at effective rate {quote.effective_rate}"
        )
        return operation, quote

    def _sell(self, agency_id: Optional[int], currency: str, sold_amount, day_rate, actor,
              operation_type: ExchangeOperationType, received_currency: Optional[str] = None,
              details: Dict = None):
        received_currency = received_currency or self.local_currency
        if received_currency != self.local_currency:
            raise ValidationError(
                f"Sales are settled in {self.local_currency} only; {received_currency} is not supported"
            )
        if currency == self.local_currency:
            raise ValidationError(f"{self.local_currency} cannot be sold")

        baseline = self.last_effective_rate(agency_id, currency)
        quote = compute_sale(sold_amount, day_rate, baseline)

        sold_till = self.get_till(agency_id, currency, for_update=True)
        local_till = self.get_till(agency_id, self.local_currency, for_update=True)
        self._debit(sold_till, quote.sold_amount, actor)
        self._credit(local_till, quote.received_amount, actor)
        sold_till.accumulated_commission = _d(sold_till.accumulated_commission) + quote.commission

        payload = {
            "sold_currency": currency,
            "sold_amount": quote.sold_amount,
            "day_rate": quote.day_rate,
            "received_currency": received_currency,
            "received_amount": quote.received_amount,
            "baseline_rate": quote.baseline_rate,
            "baseline_is_fallback": quote.baseline_is_fallback,
            "commission": quote.commission,
            "sold_balance_after": sold_till.balance,
            "local_balance_after": local_till.balance,
        }
        payload.update(details or {})
        operation = self._log(operation_type, payload, actor, agency_id)
        logger.info(
            f"{operation_type.value} #{operation.id}: {quote.sold_amount} {currency} at {quote.day_rate}, "
            f"commission {quote.commission} (agency={agency_id})"
        )
        return operation, quote

    def sell(self, request: SaleRequest, actor):
        """Till sells foreign currency against local currency; returns (operation, quote)"""
        agency_id = self.resolve_agency(request.agency_id, actor)
        return self._sell(
            agency_id, request.sold_currency.value, request.sold_amount, request.day_rate, actor,
            ExchangeOperationType.SALE,
            received_currency=request.received_currency.value if request.received_currency else None,
            details={
                "beneficiary": request.beneficiary,
                "id_type": request.id_type,
                "id_number": request.id_number,
            },
        )

    def counter_exchange(self, request: CounterExchangeRequest, actor):
        """Walk-in exchange at an agency counter; returns (operation, quote or None)"""
        agency_id = self.resolve_agency(request.agency_id, actor)
        if agency_id is None:
            raise ValidationError("Counter exchanges are made at an agency")

        client = {
            "client_name": request.client_name,
            "client_phone": request.client_phone,
            "client_id_type": request.client_id_type,
            "client_id_number": request.client_id_number,
        }
        currency = request.currency.value
        if request.direction == "sell":
            return self._sell(
                agency_id, currency, request.amount_foreign, request.rate, actor,
                ExchangeOperationType.COUNTER_SALE, details=client,
            )

        rate = _d(request.rate)
        if rate <= ZERO:
            raise ValidationError("The rate must be positive")
        amount_foreign = _d(request.amount_foreign)
        amount_local = round_amount(amount_foreign * rate)

        local_till = self.get_till(agency_id, self.local_currency, for_update=True)
        foreign_till = self.get_till(agency_id, currency, for_update=True)
        self._debit(local_till, amount_local, actor)
        self._credit(foreign_till, amount_foreign, actor)

        payload = {
            "currency": currency,
            "amount_foreign": amount_foreign,
            "rate": rate,
            "amount_local": amount_local,
            "local_balance_after": local_till.balance,
            "foreign_balance_after": foreign_till.balance,
        }
        payload.update(client)
        operation = self._log(ExchangeOperationType.COUNTER_PURCHASE, payload, actor, agency_id)
        logger.info(f"Counter purchase #{operation.id}: {amount_foreign} {currency} for {amount_local} (agency={agency_id})")
        return operation, None

    def resupply_branches(self, request: ResupplyRequest, actor) -> ExchangeOperation:
        """
        Move funds from the central tills to branch tills.

        Totals are checked per currency against the central balances before
        any till changes. Branch foreign tills take the central effective rate.
        """
        totals = {currency: ZERO for currency in settings.till_currencies}
        for line in request.distributions:
            self._get_agency(line.agency_id)
            for currency, amount in line.amounts().items():
                totals[currency] = totals.get(currency, ZERO) + _d(amount)

        if all(total <= ZERO for total in totals.values()):
            raise ValidationError("Nothing to distribute")

        central = {currency: self.get_till(None, currency, for_update=True) for currency in totals}
        shortfalls = [
            f"{currency} (requested {float(total):,.2f}, available {float(_d(central[currency].balance)):,.2f})"
            for currency, total in totals.items()
            if total > _d(central[currency].balance)
        ]
        if shortfalls:
            raise ValidationError(f"Insufficient central balance for {', '.join(shortfalls)}")

        for currency, total in totals.items():
            if total > ZERO:
                self._debit(central[currency], total, actor)

        lines = []
        for line in request.distributions:
            rates = {}
            amounts = {}
            for currency, amount in line.amounts().items():
                amount = _d(amount)
                amounts[currency] = amount
                if amount <= ZERO:
                    continue
                branch_till = self.get_till(line.agency_id, currency, for_update=True)
                self._credit(branch_till, amount, actor)
                central_rate = central[currency].last_effective_rate
                if currency != self.local_currency and central_rate is not None:
                    branch_till.last_effective_rate = central_rate
                    rates[currency] = central_rate
            lines.append({"agency_id": line.agency_id, "amounts": amounts, "effective_rates": rates})

        operation = self._log(ExchangeOperationType.BRANCH_RESUPPLY, {
            "distributions": lines,
            "totals": totals,
            "central_balances_after": {c: till.balance for c, till in central.items()},
        }, actor, None)
        logger.info(f"Branch resupply #{operation.id} to {len(lines)} agencies")
        return operation

    def adjust_balance(self, request: TillAdjustRequest, actor) -> ExchangeOperation:
        """Set a till balance directly; only the balance and the reason change"""
        agency_id = request.agency_id
        self._get_agency(agency_id)
        currency = request.currency.value
        new_balance = _d(request.new_balance)
        if new_balance < ZERO:
            raise ValidationError("The new balance cannot be negative")

        till = self.get_till(agency_id, currency, for_update=True)
        previous = _d(till.balance)
        till.balance = new_balance
        till.last_manual_reason = request.reason
        self._touch(till, actor)

        operation = self._log(ExchangeOperationType.MANUAL_ADJUSTMENT, {
            "currency": currency,
            "previous_balance": previous,
            "new_balance": new_balance,
            "difference": new_balance - previous,
            "reason": request.reason,
        }, actor, agency_id)
        AuditService(self.db).log(
            action=AuditAction.TILL_ADJUSTED,
            resource_type="ExchangeTill",
            resource_id=till.id,
            description=f"{currency} till balance set to {new_balance}",
            old_values={"balance": previous},
            new_values={"balance": new_balance, "reason": request.reason},
            user=actor,
        )
        logger.info(f"Till {currency} (agency={agency_id}) adjusted {previous} -> {new_balance}")
        return operation

    # ---------- reporting ----------

    def get_operations(self, agency_id: Optional[int] = None, include_all: bool = False,
                       operation_type: str = None, limit: int = 100) -> List[ExchangeOperation]:
        query = self.db.query(ExchangeOperation)
        if not include_all:
            if agency_id is None:
                query = query.filter(ExchangeOperation.agency_id.is_(None))
            else:
                query = query.filter(ExchangeOperation.agency_id == agency_id)
        if operation_type:
            query = query.filter(ExchangeOperation.operation_type == operation_type)
        limit = min(max(limit, 1), 500)
        return query.order_by(
            ExchangeOperation.created_at.desc(), ExchangeOperation.id.desc()
        ).limit(limit).all()

    def get_commissions(self, agency_id: Optional[int] = None, start_date: date = None,
                        end_date: date = None) -> Dict[str, Dict]:
        """Sale commissions per currency for one till owner over an optional period"""
        query = self.db.query(ExchangeOperation).filter(
            ExchangeOperation.operation_type.in_([
                ExchangeOperationType.SALE.value, ExchangeOperationType.COUNTER_SALE.value
            ])
        )
        if agency_id is None:
            query = query.filter(ExchangeOperation.agency_id.is_(None))
        else:
            query = query.filter(ExchangeOperation.agency_id == agency_id)
        if start_date:
            query = query.filter(ExchangeOperation.created_at >= datetime.combine(start_date, datetime.min.time()))
        if end_date:
            query = query.filter(
                ExchangeOperation.created_at < datetime.combine(end_date + timedelta(days=1), datetime.min.time())
            )

        report = {
            currency: {"commission": ZERO, "sold_amount": ZERO, "operations": 0}
            for currency in settings.foreign_currencies
        }
        for operation in query.all():
            payload = operation.payload or {}
            row = report.setdefault(
                payload.get("sold_currency"), {"commission": ZERO, "sold_amount": ZERO, "operations": 0}
            )
            row["commission"] += _d(payload.get("commission"))
            row["sold_amount"] += _d(payload.get("sold_amount"))
            row["operations"] += 1
        return report
