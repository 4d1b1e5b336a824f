"""
Cards API Routes
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from backoffice.core.database import get_db
from backoffice.core.errors import http_status_for
from backoffice.core.security import get_current_active_user, PermissionChecker
from backoffice.models import CardStatus
from backoffice.schemas import (
    CardCreate, CardUpdate, CardResponse, CardImportRequest, CardBulkDeleteRequest,
    CardRechargeRequest, ResetUsageRequest, CountryEnum, CountryLimitUpdate, CountryLimitResponse,
    DistributionRequest, DistributionResponse, DistributionLine, MessageResponse
)
from backoffice.services.card_service import (
    CardService, CountryLimitService, compute_card_capacity, classify_card, is_selectable,
    select_all, DistributionPlan
)
from backoffice.services.audit_service import AuditService, AuditAction

router = APIRouter(prefix="/cards", tags=["Cards"])


def card_to_response(card) -> CardResponse:
    return CardResponse(
        id=card.id,
        cid=card.cid,
        country=card.country,
        status=card.status,
        last_recharge_date=card.last_recharge_date,
        expiration_date=card.expiration_date,
        monthly_limit=card.monthly_limit,
        monthly_used=card.monthly_used,
        recharge_limit=card.recharge_limit,
        capacity=compute_card_capacity(card),
        usage_state=classify_card(card),
        selectable=is_selectable(card),
        created_at=card.created_at,
        updated_at=card.updated_at,
    )


def plan_to_response(plan: DistributionPlan, distribution=None) -> DistributionResponse:
    return DistributionResponse(
        distribution_id=distribution.id if distribution else None,
        country=plan.country,
        requested_amount=plan.requested_amount,
        total_capacity=plan.total_capacity,
        total_distributed=plan.total_distributed,
        remaining_amount=plan.remaining_amount,
        cards_used=plan.cards_used,
        fee_per_card=plan.fee_per_card,
        total_fees=plan.total_fees,
        deduct_from_vault=plan.deduct_from_vault,
        distributions=[
            DistributionLine(
                card_id=line.card_id,
                cid=line.cid,
                amount=line.amount,
                remaining_capacity=line.remaining_capacity,
            )
            for line in plan.lines
        ],
        distributed_by=distribution.distributed_by if distribution else None,
        distributed_at=distribution.created_at if distribution else None,
    )


def distribution_to_dict(d) -> dict:
    return {
        "id": d.id,
        "country": d.country,
        "requested_amount": d.requested_amount,
        "total_distributed": d.total_distributed,
        "remaining_amount": d.remaining_amount,
        "cards_used": d.cards_used,
        "fee_per_card": d.fee_per_card,
        "total_fees": d.total_fees,
        "deduct_from_vault": d.deduct_from_vault,
        "distributed_by": d.distributed_by,
        "created_at": d.created_at,
        "cancelled_at": d.cancelled_at,
        "cancelled_by": d.cancelled_by,
        "items": [
            {"card_id": i.card_id, "cid": i.card_cid, "amount": i.amount,
             "remaining_capacity": i.remaining_capacity}
            for i in d.items
        ],
    }


def _fail(db: Session, e: Exception):
    db.rollback()
    raise HTTPException(status_code=http_status_for(e), detail=str(e))


@router.get("", response_model=List[CardResponse],
            dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def list_cards(
    country: Optional[CountryEnum] = None,
    card_status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db)
):
    cards = CardService(db).list_cards(
        country=country.value if country else None, status=card_status, search=search
    )
    return [card_to_response(card) for card in cards]


@router.get("/stats", dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def get_card_stats(
    country: Optional[CountryEnum] = None,
    db: Session = Depends(get_db)
):
    return CardService(db).get_country_stats(country.value if country else None)


@router.get("/available", dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def list_available_cards(
    country: CountryEnum,
    db: Session = Depends(get_db)
):
    """Distribution candidates of a country and the ids "select all" would pick"""
    cards = CardService(db).get_candidate_cards(country.value)
    return {
        "country": country.value,
        "cards": [card_to_response(card) for card in cards],
        "select_all": select_all(cards),
    }


@router.get("/limits", response_model=List[CountryLimitResponse],
            dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def list_country_limits(db: Session = Depends(get_db)):
    return CountryLimitService(db).get_all()


@router.put("/limits", response_model=MessageResponse,
            dependencies=[Depends(PermissionChecker(["cards:limits"]))])
async def update_country_limits(
    limit_data: CountryLimitUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Update a country's limits and apply them to its cards"""
    try:
        updated = CountryLimitService(db).update(
            limit_data.country.value, limit_data.monthly_limit, limit_data.recharge_limit,
            card_fee=limit_data.card_fee, actor=current_user
        )
        AuditService(db).log(
            action=AuditAction.SETTINGS_CHANGED,
            resource_type="CountryLimit",
            description=f"Limits updated for {limit_data.country.value}",
            new_values=limit_data.model_dump(mode="json"),
            user=current_user,
        )
        db.commit()
        return MessageResponse(message=f"Limits updated for {updated} cards")
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.get("/history", dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def get_card_history(
    card_id: Optional[int] = None,
    country: Optional[CountryEnum] = None,
    action: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    entries = CardService(db).get_history(
        card_id=card_id, country=country.value if country else None, action=action, limit=limit
    )
    return [
        {
            "id": entry.id,
            "action": entry.action,
            "card_id": entry.card_id,
            "card_cid": entry.card_cid,
            "country": entry.country,
            "amount": entry.amount,
            "old_values": entry.old_values,
            "new_values": entry.new_values,
            "description": entry.description,
            "distribution_id": entry.distribution_id,
            "user_name": entry.user_name,
            "user_role": entry.user_role,
            "created_at": entry.created_at,
        }
        for entry in entries
    ]


@router.get("/distributions", dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def list_distributions(
    country: Optional[CountryEnum] = None,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    distributions = CardService(db).get_distributions(country.value if country else None, limit)
    return [distribution_to_dict(d) for d in distributions]


@router.post("/distributions/{distribution_id}/cancel",
             dependencies=[Depends(PermissionChecker(["cards:cancel"]))])
async def cancel_distribution(
    distribution_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Take back what a distribution credited and refund the vault if it paid for it"""
    try:
        distribution = CardService(db).cancel_distribution(distribution_id, current_user)
        AuditService(db).log(
            action=AuditAction.CARD_DISTRIBUTION_CANCELLED,
            resource_type="CardDistribution",
            resource_id=distribution.id,
            description=f"Distribution #{distribution.id} cancelled ({distribution.country})",
            old_values={"total_distributed": distribution.total_distributed,
                        "cards_used": distribution.cards_used},
            user=current_user,
        )
        db.commit()
        return distribution_to_dict(distribution)
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/distribute/preview", response_model=DistributionResponse,
             dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def preview_distribution(
    request: DistributionRequest,
    db: Session = Depends(get_db)
):
    """Compute a distribution without applying it"""
    try:
        return plan_to_response(CardService(db).preview_distribution(request))
    except ValueError as e:
        raise HTTPException(status_code=http_status_for(e), detail=str(e))


@router.post("/distribute", response_model=DistributionResponse,
             dependencies=[Depends(PermissionChecker(["cards:distribute"]))])
async def distribute(
    request: DistributionRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Credit the selected cards; all cards, the vault and the log change together or not at all"""
    card_service = CardService(db)
    try:
        distribution, plan = card_service.distribute(request, current_user)
        AuditService(db).log(
            action=AuditAction.CARD_DISTRIBUTION,
            resource_type="CardDistribution",
            resource_id=distribution.id,
            description=(
                f"{distribution.total_distributed} distributed over {distribution.cards_used} "
                f"cards in {distribution.country}"
            ),
            new_values={"requested_amount": distribution.requested_amount,
                        "remaining_amount": distribution.remaining_amount},
            user=current_user,
        )
        db.commit()
        return plan_to_response(plan, distribution)
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/import", dependencies=[Depends(PermissionChecker(["cards:create"]))])
async def import_cards(
    import_data: CardImportRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Create cards in bulk; existing CIDs are reported as skipped"""
    try:
        result = CardService(db).bulk_import(import_data.cards, current_user)
        db.commit()
        return {
            "created": [card_to_response(card) for card in result["created"]],
            "skipped": result["skipped"],
            "total": result["total"],
        }
    except ValueError as e:
        _fail(db, e)


@router.post("/bulk-delete", response_model=MessageResponse,
             dependencies=[Depends(PermissionChecker(["cards:delete"]))])
async def bulk_delete_cards(
    delete_data: CardBulkDeleteRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    count = CardService(db).bulk_delete(delete_data.card_ids, current_user)
    db.commit()
    return MessageResponse(message=f"{count} cards deleted")


@router.post("/recharge", response_model=CardResponse,
             dependencies=[Depends(PermissionChecker(["cards:recharge"]))])
async def recharge_card(
    recharge_data: CardRechargeRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        card = CardService(db).recharge(
            recharge_data.card_id, recharge_data.amount, current_user, recharge_data.notes
        )
        AuditService(db).log(
            action=AuditAction.CARD_RECHARGE,
            resource_type="Card",
            resource_id=card.id,
            description=f"Card {card.cid} recharged with {recharge_data.amount}",
            user=current_user,
        )
        db.commit()
        return card_to_response(card)
    except ValueError as e:
        _fail(db, e)


@router.post("/reset-usage", response_model=MessageResponse,
             dependencies=[Depends(PermissionChecker(["cards:limits"]))])
async def reset_usage(
    reset_data: ResetUsageRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Start a new month: monthly usage back to zero"""
    country = reset_data.country.value if reset_data.country else None
    count = CardService(db).reset_usage(current_user, country)
    AuditService(db).log(
        action=AuditAction.CARD_USAGE_RESET,
        resource_type="Card",
        description=f"Monthly usage reset for {count} cards ({country or 'all countries'})",
        user=current_user,
    )
    db.commit()
    return MessageResponse(message=f"Monthly usage reset for {count} cards")


@router.post("", response_model=CardResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(PermissionChecker(["cards:create"]))])
async def create_card(
    card_data: CardCreate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        card = CardService(db).create(card_data, current_user)
        db.commit()
        return card_to_response(card)
    except ValueError as e:
        _fail(db, e)


@router.get("/{card_id}", response_model=CardResponse,
            dependencies=[Depends(PermissionChecker(["cards:view"]))])
async def get_card(card_id: int, db: Session = Depends(get_db)):
    card = CardService(db).get_by_id(card_id)
    if not card:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")
    return card_to_response(card)


@router.put("/{card_id}", response_model=CardResponse,
            dependencies=[Depends(PermissionChecker(["cards:edit"]))])
async def update_card(
    card_id: int,
    card_data: CardUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        card = CardService(db).update(card_id, card_data, current_user)
        db.commit()
        return card_to_response(card)
    except ValueError as e:
        _fail(db, e)


@router.post("/{card_id}/toggle", response_model=CardResponse,
             dependencies=[Depends(PermissionChecker(["cards:edit"]))])
async def toggle_card_status(
    card_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    card_service = CardService(db)
    card = card_service.get_by_id(card_id)
    if not card:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")
    new_status = (
        CardStatus.INACTIVE.value if card.status == CardStatus.ACTIVE.value else CardStatus.ACTIVE.value
    )
    try:
        card = card_service.set_status(card_id, new_status, current_user)
        db.commit()
        return card_to_response(card)
    except ValueError as e:
        _fail(db, e)


@router.delete("/{card_id}", response_model=MessageResponse,
               dependencies=[Depends(PermissionChecker(["cards:delete"]))])
async def delete_card(
    card_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    if not CardService(db).delete(card_id, current_user):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")
    db.commit()
    return MessageResponse(message="Card deleted")
