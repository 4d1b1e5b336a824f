"""
Card Service - Prepaid cards, recharges and bulk distribution

The allocation rules are plain functions over card-like objects so they can be
used for previews without touching the database. CardService applies them to
persisted cards and writes the distribution log.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence
import logging

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import ValidationError, NotFoundError, StateTransitionError
from backoffice.models import (
    Card, CardStatus, CardHistory, CardDistribution, CardDistributionItem, CountryLimit
)
from backoffice.schemas import CardCreate, CardUpdate, CardImportItem, DistributionRequest

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

CARD_NULLABLE_FIELDS = {"last_recharge_date", "expiration_date"}

USAGE_AVAILABLE = "available"
USAGE_PARTIAL = "partial"
USAGE_EXHAUSTED = "exhausted"


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ==================== ALLOCATION RULES ====================

def compute_card_capacity(card) -> Decimal:
    """
    Amount a card can absorb right now.

    Bounded by the remaining monthly allowance and by the per-recharge ceiling,
    never negative (a card used past its monthly limit has zero capacity).
    """
    remaining_monthly = to_decimal(card.monthly_limit) - to_decimal(card.monthly_used)
    return max(ZERO, min(remaining_monthly, to_decimal(card.recharge_limit)))


def classify_card(card) -> str:
    """available (never used this month), partial (used, capacity left) or exhausted"""
    if compute_card_capacity(card) <= ZERO:
        return USAGE_EXHAUSTED
    if to_decimal(card.monthly_used) <= ZERO:
        return USAGE_AVAILABLE
    return USAGE_PARTIAL


def is_selectable(card) -> bool:
    return compute_card_capacity(card) > ZERO


def select_all(cards: Iterable) -> List[int]:
    """Ids picked by "select all": every card that still has capacity"""
    return [card.id for card in cards if is_selectable(card)]


def total_capacity(cards: Iterable) -> Decimal:
    return sum((compute_card_capacity(card) for card in cards), ZERO)


def compute_remainder(requested_amount, cards: Iterable) -> Decimal:
    """Part of the requested amount the selected cards cannot absorb"""
    return max(ZERO, to_decimal(requested_amount) - total_capacity(cards))


@dataclass
class DistributionLine:
    card_id: int
    cid: str
    amount: Decimal
    remaining_capacity: Decimal


@dataclass
class DistributionPlan:
    country: str
    requested_amount: Decimal
    total_capacity: Decimal
    remaining_amount: Decimal
    fee_per_card: Decimal
    deduct_from_vault: bool
    lines: List[DistributionLine] = field(default_factory=list)

    @property
    def cards_used(self) -> int:
        return len(self.lines)

    @property
    def total_distributed(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)

    @property
    def total_fees(self) -> Decimal:
        # Informational: reported on the receipt, never deducted
        return self.fee_per_card * self.cards_used


def plan_distribution(
    amount,
    country: Optional[str],
    cards: Sequence,
    selected_ids: Sequence[int],
    deduct_from_vault: bool = False,
    fee_per_card=ZERO,
) -> DistributionPlan:
    """
    Work out how a requested amount spreads over the selected cards.

    Cards are filled in selection order, each up to its capacity. Raises
    ValidationError when the command is incomplete or names a card that is not
    selectable in the target country.
    """
    requested = to_decimal(amount) if amount is not None else None
    if requested is None or requested <= ZERO or not country:
        raise ValidationError("Amount and country required")

    ordered_ids = list(dict.fromkeys(selected_ids or []))
    if not ordered_ids:
        raise ValidationError("Select at least one card")

    by_id: Dict[int, object] = {card.id: card for card in cards}
    unknown = [card_id for card_id in ordered_ids if card_id not in by_id]
    if unknown:
        raise ValidationError(
            f"Cards not available for distribution in {country}: {', '.join(str(i) for i in unknown)}"
        )

    selected = [by_id[card_id] for card_id in ordered_ids]
    wrong_country = [card.cid for card in selected if card.country != country]
    if wrong_country:
        raise ValidationError(f"Cards not issued in {country}: {', '.join(wrong_country)}")

    exhausted = [card.cid for card in selected if not is_selectable(card)]
    if exhausted:
        raise ValidationError(f"Cards without available capacity: {', '.join(exhausted)}")

    capacity = total_capacity(selected)
    plan = DistributionPlan(
        country=country,
        requested_amount=requested,
        total_capacity=capacity,
        remaining_amount=max(ZERO, requested - capacity),
        fee_per_card=to_decimal(fee_per_card),
        deduct_from_vault=deduct_from_vault,
    )

    to_place = requested
    for card in selected:
        if to_place <= ZERO:
            break
        card_capacity = compute_card_capacity(card)
        credit = min(card_capacity, to_place)
        plan.lines.append(DistributionLine(
            card_id=card.id,
            cid=card.cid,
            amount=credit,
            remaining_capacity=card_capacity - credit,
        ))
        to_place -= credit

    return plan


def check_recharge(card, amount, today: date = None) -> None:
    """Raise ValidationError when a single recharge would break a card ceiling"""
    today = today or date.today()
    amount = to_decimal(amount)
    if amount <= ZERO:
        raise ValidationError("Recharge amount must be positive")
    if card.status != CardStatus.ACTIVE.value:
        raise ValidationError(f"Card {card.cid} is inactive")
    if card.expiration_date and card.expiration_date <= today:
        raise ValidationError(f"Card {card.cid} expired on {card.expiration_date.isoformat()}")
    if amount > to_decimal(card.recharge_limit):
        raise ValidationError(
            f"Amount exceeds the recharge limit of {money(card.recharge_limit):,.2f}"
        )
    remaining_monthly = max(ZERO, to_decimal(card.monthly_limit) - to_decimal(card.monthly_used))
    if amount > remaining_monthly:
        raise ValidationError(
            f"Amount exceeds the remaining monthly allowance of {money(remaining_monthly):,.2f}"
        )


# ==================== SERVICES ====================

class CountryLimitService:
    def __init__(self, db: Session):
        self.db = db

    def ensure_defaults(self) -> List[CountryLimit]:
        """Create the country rows from settings when missing"""
        existing = {row.country for row in self.db.query(CountryLimit).all()}
        fees = settings.card_fee_schedule
        for country in settings.card_countries:
            if country in existing:
                continue
            self.db.add(CountryLimit(
                country=country,
                monthly_limit=Decimal(settings.CARD_DEFAULT_MONTHLY_LIMIT),
                recharge_limit=Decimal(settings.CARD_DEFAULT_RECHARGE_LIMIT),
                card_fee=fees.get(country, ZERO),
                updated_by="system",
            ))
        self.db.flush()
        return self.get_all()

    def get_all(self) -> List[CountryLimit]:
        return self.db.query(CountryLimit).order_by(CountryLimit.country).all()

    def get(self, country: str) -> Optional[CountryLimit]:
        return self.db.query(CountryLimit).filter(CountryLimit.country == country).first()

    def fee_for(self, country: str) -> Decimal:
        row = self.get(country)
        if row is not None:
            return to_decimal(row.card_fee)
        return settings.card_fee_schedule.get(country, ZERO)

    def update(self, country: str, monthly_limit, recharge_limit, card_fee=None, actor=None) -> int:
        """Update a country's ceilings and apply them to its cards; returns cards updated"""
        if country not in settings.card_countries:
            raise ValidationError(f"Unknown country: {country}")
        monthly_limit = to_decimal(monthly_limit)
        recharge_limit = to_decimal(recharge_limit)
        if monthly_limit <= ZERO or recharge_limit <= ZERO:
            raise ValidationError("Limits must be positive numbers")
        if recharge_limit > monthly_limit:
            raise ValidationError("The recharge limit cannot exceed the monthly limit")

        row = self.get(country)
        if row is None:
            row = CountryLimit(country=country, card_fee=settings.card_fee_schedule.get(country, ZERO))
            self.db.add(row)
        old_values = {
            "monthly_limit": str(row.monthly_limit) if row.monthly_limit is not None else None,
            "recharge_limit": str(row.recharge_limit) if row.recharge_limit is not None else None,
            "card_fee": str(row.card_fee) if row.card_fee is not None else None,
        }
        row.monthly_limit = monthly_limit
        row.recharge_limit = recharge_limit
        if card_fee is not None:
            row.card_fee = to_decimal(card_fee)
        row.updated_by = actor.display_name if actor else "system"

        updated = self.db.query(Card).filter(Card.country == country).update(
            {"monthly_limit": monthly_limit, "recharge_limit": recharge_limit, "updated_at": datetime.utcnow()},
            synchronize_session=False
        )
        self.db.add(CardHistory(
            action="update_limits",
            country=country,
            old_values=old_values,
            new_values={
                "monthly_limit": str(monthly_limit),
                "recharge_limit": str(recharge_limit),
                "card_fee": str(row.card_fee),
                "cards_updated": updated,
            },
            description=f"Limits updated for {country} ({updated} cards)",
            **_actor_fields(actor)
        ))
        self.db.flush()
        logger.info(f"Country limits updated for {country}: {updated} cards")
        return updated


def _actor_fields(actor) -> dict:
    if actor is None:
        return {"user_id": None, "user_name": "system", "user_role": None}
    return {"user_id": actor.id, "user_name": actor.display_name, "user_role": actor.role}


def _card_snapshot(card: Card) -> dict:
    return {
        "cid": card.cid,
        "country": card.country,
        "status": card.status,
        "monthly_limit": str(card.monthly_limit),
        "monthly_used": str(card.monthly_used),
        "recharge_limit": str(card.recharge_limit),
        "expiration_date": card.expiration_date.isoformat() if card.expiration_date else None,
    }


class CardService:
    def __init__(self, db: Session):
        self.db = db
        self.limits = CountryLimitService(db)

    # ---------- queries ----------

    def get_by_id(self, card_id: int) -> Optional[Card]:
        return self.db.query(Card).filter(Card.id == card_id).first()

    def get_by_cid(self, cid: str) -> Optional[Card]:
        return self.db.query(Card).filter(Card.cid == cid).first()

    def list_cards(self, country: str = None, status: str = None, search: str = None) -> List[Card]:
        query = self.db.query(Card)
        if country:
            query = query.filter(Card.country == country)
        if status:
            query = query.filter(Card.status == status)
        if search:
            query = query.filter(Card.cid.ilike(f"%{search}%"))
        return query.order_by(Card.created_at.desc(), Card.id.desc()).all()

    def get_candidate_cards(self, country: str, today: date = None, for_update: bool = False) -> List[Card]:
        """Active, unexpired cards of a country, least used first"""
        today = today or date.today()
        query = self.db.query(Card).filter(
            Card.country == country,
            Card.status == CardStatus.ACTIVE.value,
            or_(Card.expiration_date.is_(None), Card.expiration_date > today)
        )
        if for_update:
            query = query.with_for_update()
        return query.order_by(Card.monthly_used.asc(), Card.created_at.asc(), Card.id.asc()).all()

    def get_country_stats(self, country: str = None) -> dict:
        cards = self.list_cards(country=country)
        active = [c for c in cards if c.status == CardStatus.ACTIVE.value]
        return {
            "country": country,
            "total_cards": len(cards),
            "active_cards": len(active),
            "available_cards": len([c for c in active if is_selectable(c)]),
            "total_limit": sum((to_decimal(c.monthly_limit) for c in active), ZERO),
            "total_used": sum((to_decimal(c.monthly_used) for c in active), ZERO),
            "total_available": total_capacity(active),
            "fee_per_card": self.limits.fee_for(country) if country else None,
        }

    def get_history(self, card_id: int = None, country: str = None, action: str = None,
                    limit: int = 100) -> List[CardHistory]:
        query = self.db.query(CardHistory)
        if card_id:
            query = query.filter(CardHistory.card_id == card_id)
        if country:
            query = query.filter(CardHistory.country == country)
        if action:
            query = query.filter(CardHistory.action == action)
        return query.order_by(CardHistory.created_at.desc(), CardHistory.id.desc()).limit(limit).all()

    def get_distributions(self, country: str = None, limit: int = 50) -> List[CardDistribution]:
        query = self.db.query(CardDistribution)
        if country:
            query = query.filter(CardDistribution.country == country)
        return query.order_by(CardDistribution.created_at.desc(), CardDistribution.id.desc()).limit(limit).all()

    # ---------- lifecycle ----------

    def _log(self, action: str, card: Optional[Card], actor, amount=None, old_values=None,
             new_values=None, description: str = None, distribution_id: int = None):
        self.db.add(CardHistory(
            action=action,
            card_id=card.id if card else None,
            card_cid=card.cid if card else None,
            country=card.country if card else None,
            amount=amount,
            old_values=old_values,
            new_values=new_values,
            description=description,
            distribution_id=distribution_id,
            **_actor_fields(actor)
        ))

    def create(self, card_data: CardCreate, actor=None) -> Card:
        country = card_data.country.value
        cid = card_data.cid.strip()
        if self.get_by_cid(cid):
            raise ValidationError(f"Card {cid} already exists")

        limits = self.limits.get(country)
        monthly_limit = card_data.monthly_limit or (
            limits.monthly_limit if limits else Decimal(settings.CARD_DEFAULT_MONTHLY_LIMIT))
        recharge_limit = card_data.recharge_limit or (
            limits.recharge_limit if limits else Decimal(settings.CARD_DEFAULT_RECHARGE_LIMIT))
        if to_decimal(recharge_limit) > to_decimal(monthly_limit):
            raise ValidationError("The recharge limit cannot exceed the monthly limit")

        card = Card(
            cid=cid,
            country=country,
            status=card_data.status,
            monthly_limit=monthly_limit,
            monthly_used=ZERO,
            recharge_limit=recharge_limit,
            last_recharge_date=card_data.last_recharge_date,
            expiration_date=card_data.expiration_date,
        )
        self.db.add(card)
        self.db.flush()
        self._log("create", card, actor, new_values=_card_snapshot(card))
        self.db.flush()
        return card

    def update(self, card_id: int, card_data: CardUpdate, actor=None) -> Card:
        card = self.get_by_id(card_id)
        if not card:
            raise NotFoundError("Card not found")

        update_data = card_data.model_dump(exclude_unset=True)
        if update_data.get("cid") is not None:
            update_data["cid"] = update_data["cid"].strip()
            if update_data["cid"] != card.cid and self.get_by_cid(update_data["cid"]):
                raise ValidationError(f"Card {update_data['cid']} already exists")

        old_values = _card_snapshot(card)
        for key, value in update_data.items():
            if key == "country" and value is not None:
                value = value.value if hasattr(value, "value") else value
            if value is not None or key in CARD_NULLABLE_FIELDS:
                setattr(card, key, value)

        if to_decimal(card.recharge_limit) > to_decimal(card.monthly_limit):
            raise ValidationError("The recharge limit cannot exceed the monthly limit")

        action = "status_change" if set(update_data) == {"status"} else "update"
        self._log(action, card, actor, old_values=old_values, new_values=_card_snapshot(card))
        self.db.flush()
        return card

    def set_status(self, card_id: int, status: str, actor=None) -> Card:
        return self.update(card_id, CardUpdate(status=status), actor)

    def delete(self, card_id: int, actor=None) -> bool:
        card = self.get_by_id(card_id)
        if not card:
            return False
        self._log("delete", card, actor, old_values=_card_snapshot(card))
        self.db.delete(card)
        self.db.flush()
        return True

    def bulk_delete(self, card_ids: List[int], actor=None) -> int:
        cards = self.db.query(Card).filter(Card.id.in_(card_ids)).all()
        for card in cards:
            self._log("bulk_delete", card, actor, old_values=_card_snapshot(card))
            self.db.delete(card)
        self.db.flush()
        return len(cards)

    def bulk_import(self, items: List[CardImportItem], actor=None) -> dict:
        """Create cards from an import file; duplicates are skipped with a reason"""
        created, skipped = [], []
        seen = set()
        for item in items:
            cid = item.cid.strip()
            if cid in seen or self.get_by_cid(cid):
                skipped.append({"cid": cid, "reason": "Card already exists"})
                continue
            seen.add(cid)
            card = self.create(CardCreate(
                cid=cid,
                country=item.country,
                last_recharge_date=item.last_recharge_date,
                expiration_date=item.expiration_date,
            ), actor)
            created.append(card)

        self._log("bulk_import", None, actor, new_values={
            "created": len(created), "skipped": len(skipped), "total": len(items)
        })
        self.db.flush()
        logger.info(f"Card import: {len(created)} created, {len(skipped)} skipped")
        return {"created": created, "skipped": skipped, "total": len(items)}

    def recharge(self, card_id: int, amount, actor=None, notes: str = None) -> Card:
        card = self.db.query(Card).filter(Card.id == card_id).with_for_update().first()
        if not card:
            raise NotFoundError("Card not found")

        amount = money(amount)
        check_recharge(card, amount)

        old_used = to_decimal(card.monthly_used)
        card.monthly_used = old_used + amount
        card.last_recharge_date = date.today()
        self._log(
            "recharge", card, actor, amount=amount,
            old_values={"monthly_used": str(old_used)},
            new_values={"monthly_used": str(card.monthly_used)},
            description=notes,
        )
        self.db.flush()
        return card

    def reset_usage(self, actor=None, country: str = None) -> int:
        """Reset monthly usage to zero for all cards (or one country)"""
        query = self.db.query(Card)
        if country:
            query = query.filter(Card.country == country)
        count = query.update(
            {"monthly_used": ZERO, "updated_at": datetime.utcnow()},
            synchronize_session=False
        )
        self._log("reset_usage", None, actor, new_values={"country": country, "cards_reset": count})
        self.db.flush()
        logger.info(f"Monthly usage reset for {count} cards (country={country or 'all'})")
        return count

    # ---------- distribution ----------

    def preview_distribution(self, request: DistributionRequest) -> DistributionPlan:
        """Compute the distribution without side effects"""
        country = request.country.value if request.country else None
        cards = self.get_candidate_cards(country) if country else []
        return plan_distribution(
            request.amount, country, cards, request.card_ids,
            deduct_from_vault=request.deduct_from_vault,
            fee_per_card=self.limits.fee_for(country) if country else ZERO,
        )

    def distribute(self, request: DistributionRequest, actor):
        """
        Credit the selected cards and write the distribution log; returns (distribution, plan).

        Everything is flushed in the caller's transaction; the router commits
        once, so a failure leaves no card, vault or log change behind.
        """
        from backoffice.services.cash_service import CashAccountService

        country = request.country.value if request.country else None
        cards = self.get_candidate_cards(country, for_update=True) if country else []
        plan = plan_distribution(
            request.amount, country, cards, request.card_ids,
            deduct_from_vault=request.deduct_from_vault,
            fee_per_card=self.limits.fee_for(country) if country else ZERO,
        )

        distribution = CardDistribution(
            country=plan.country,
            requested_amount=plan.requested_amount,
            total_distributed=plan.total_distributed,
            remaining_amount=plan.remaining_amount,
            cards_used=plan.cards_used,
            fee_per_card=plan.fee_per_card,
            total_fees=plan.total_fees,
            deduct_from_vault=plan.deduct_from_vault,
            distributed_by=actor.display_name,
            user_id=actor.id,
        )
        self.db.add(distribution)
        self.db.flush()

        if plan.deduct_from_vault:
            # The full requested amount leaves the vault, not only what was placed
            CashAccountService(self.db).withdraw_from_vault(
                plan.requested_amount,
                transaction_type="distribution",
                description=f"Card distribution #{distribution.id} ({plan.country})",
                actor=actor,
                reference_type="card_distribution",
                reference_id=distribution.id,
            )

        cards_by_id = {card.id: card for card in cards}
        today = date.today()
        for line in plan.lines:
            card = cards_by_id[line.card_id]
            old_used = to_decimal(card.monthly_used)
            card.monthly_used = old_used + line.amount
            card.last_recharge_date = today
            distribution.items.append(CardDistributionItem(
                card_id=card.id,
                card_cid=card.cid,
                amount=line.amount,
                remaining_capacity=line.remaining_capacity,
            ))
            self._log(
                "distribution", card, actor, amount=line.amount,
                old_values={"monthly_used": str(old_used)},
                new_values={"monthly_used": str(card.monthly_used)},
                distribution_id=distribution.id,
            )

        self.db.flush()
        logger.info(
            f"Distribution #{distribution.id}: {plan.total_distributed} over {plan.cards_used} cards "
            f"in {plan.country}, remainder {plan.remaining_amount}"
        )
        return distribution, plan

    def _last_credit_date(self, card_id: int) -> Optional[date]:
        """Date of the latest recharge or live distribution credit on a card"""
        latest = (
            self.db.query(func.max(CardHistory.created_at))
            .outerjoin(CardDistribution, CardHistory.distribution_id == CardDistribution.id)
            .filter(
                CardHistory.card_id == card_id,
                CardHistory.action.in_(["recharge", "distribution"]),
                CardDistribution.cancelled_at.is_(None),
            )
            .scalar()
        )
        return latest.date() if latest else None

    def cancel_distribution(self, distribution_id: int, actor) -> CardDistribution:
        """
        Reverse a distribution: give back each card's credited amount and
        refund the vault when the distribution was drawn from it.

        Usage never drops below zero, so a card reset after the distribution
        ends at 0 rather than negative.
        """
        from backoffice.services.cash_service import CashAccountService

        distribution = (
            self.db.query(CardDistribution)
            .filter(CardDistribution.id == distribution_id)
            .with_for_update()
            .first()
        )
        if not distribution:
            raise NotFoundError("Distribution not found")
        if distribution.cancelled_at is not None:
            raise StateTransitionError(f"Distribution #{distribution.id} was already cancelled")

        card_ids = [item.card_id for item in distribution.items if item.card_id is not None]
        cards = (
            self.db.query(Card).filter(Card.id.in_(card_ids)).with_for_update().all()
            if card_ids else []
        )
        cards_by_id = {card.id: card for card in cards}

        distribution.cancelled_at = datetime.utcnow()
        distribution.cancelled_by = actor.display_name
        self.db.flush()

        reversed_total = ZERO
        for item in distribution.items:
            card = cards_by_id.get(item.card_id)
            if card is None:
                logger.warning(
                    f"Distribution #{distribution.id}: card {item.card_cid} no longer exists, "
                    f"{item.amount} not reversed"
                )
                continue
            old_used = to_decimal(card.monthly_used)
            card.monthly_used = max(ZERO, old_used - to_decimal(item.amount))
            card.last_recharge_date = self._last_credit_date(card.id)
            reversed_total += old_used - card.monthly_used
            self._log(
                "distribution_cancel", card, actor, amount=item.amount,
                old_values={"monthly_used": str(old_used)},
                new_values={"monthly_used": str(card.monthly_used)},
                distribution_id=distribution.id,
            )

        if distribution.deduct_from_vault:
            CashAccountService(self.db).deposit_to_vault(
                distribution.requested_amount,
                description=f"Cancelled card distribution #{distribution.id} ({distribution.country})",
                actor=actor,
                transaction_type="distribution_cancel",
                reference_type="card_distribution",
                reference_id=distribution.id,
            )

        self.db.flush()
        logger.info(
            f"Distribution #{distribution.id} cancelled by {actor.display_name}: "
            f"{reversed_total} taken back from {len(cards_by_id)} cards"
        )
        return distribution
