"""
Exchange API Routes - Currency tills
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from backoffice.core.database import get_db
from backoffice.core.errors import http_status_for
from backoffice.core.security import get_current_active_user, PermissionChecker
from backoffice.schemas import (
    PurchaseRequest, PurchaseResponse, SaleRequest, SaleResponse, CounterExchangeRequest,
    ResupplyRequest, TillAdjustRequest, TillBalanceResponse, ExchangeOperationResponse
)
from backoffice.services.exchange_service import ExchangeTillService, round_amount
from backoffice.services.permission_service import PermissionService

router = APIRouter(prefix="/exchange", tags=["Exchange"])


def _fail(db: Session, e: Exception):
    db.rollback()
    raise HTTPException(status_code=http_status_for(e), detail=str(e))


def _sale_response(operation, quote) -> SaleResponse:
    return SaleResponse(
        operation_id=operation.id,
        received_amount=quote.received_amount,
        commission=quote.commission,
        baseline_rate=quote.baseline_rate,
        baseline_is_fallback=quote.baseline_is_fallback,
    )


@router.get("/balances", response_model=List[TillBalanceResponse],
            dependencies=[Depends(PermissionChecker(["exchange:view"]))])
async def get_balances(
    agency_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Till balances of the central office, or of an agency"""
    till_service = ExchangeTillService(db)
    try:
        agency_id = till_service.resolve_agency(agency_id, current_user)
        tills = till_service.ensure_tills(agency_id)
        db.commit()
        return tills
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.get("/balances/all", dependencies=[Depends(PermissionChecker(["exchange:manage"]))])
async def get_all_balances(db: Session = Depends(get_db)):
    return [
        {
            "agency_id": row["agency_id"],
            "agency_name": row["agency_name"],
            "tills": [TillBalanceResponse.model_validate(till) for till in row["tills"]],
        }
        for row in ExchangeTillService(db).all_agencies_tills()
    ]


@router.get("/rates/{currency}", dependencies=[Depends(PermissionChecker(["exchange:view"]))])
async def get_last_effective_rate(
    currency: str,
    agency_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Baseline rate a sale of this currency would use"""
    till_service = ExchangeTillService(db)
    try:
        agency_id = till_service.resolve_agency(agency_id, current_user)
        rate = till_service.last_effective_rate(agency_id, currency.upper())
        return {"currency": currency.upper(), "agency_id": agency_id, "last_effective_rate": rate}
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.get("/operations", response_model=List[ExchangeOperationResponse],
            dependencies=[Depends(PermissionChecker(["exchange:view"]))])
async def list_operations(
    agency_id: Optional[int] = None,
    include_all: bool = False,
    operation_type: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Operation log of one till owner, or of every till for managers"""
    till_service = ExchangeTillService(db)
    try:
        if include_all and not PermissionService.user_has_permission(current_user, "exchange:manage"):
            raise PermissionError("Only managers can list every till's operations")
        if not include_all:
            agency_id = till_service.resolve_agency(agency_id, current_user)
        return till_service.get_operations(agency_id, include_all, operation_type, limit)
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.get("/commissions", dependencies=[Depends(PermissionChecker(["exchange:view"]))])
async def get_commissions(
    agency_id: Optional[int] = None,
    start_date: date = None,
    end_date: date = None,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Sale commissions per currency over a period"""
    till_service = ExchangeTillService(db)
    try:
        agency_id = till_service.resolve_agency(agency_id, current_user)
        return {
            "agency_id": agency_id,
            "start_date": start_date,
            "end_date": end_date,
            "currencies": till_service.get_commissions(agency_id, start_date, end_date),
        }
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/purchase", response_model=PurchaseResponse,
             dependencies=[Depends(PermissionChecker(["exchange:manage"]))])
async def purchase_currency(
    request: PurchaseRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Central till buys foreign currency"""
    try:
        operation, quote = ExchangeTillService(db).purchase(request, current_user)
        db.commit()
        return PurchaseResponse(
            operation_id=operation.id,
            gross_bought=round_amount(quote.gross_bought),
            total_available=round_amount(quote.total_available),
            effective_rate=quote.effective_rate,
        )
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/sale", response_model=SaleResponse,
             dependencies=[Depends(PermissionChecker(["exchange:operate"]))])
async def sell_currency(
    request: SaleRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Sell foreign currency against local currency"""
    try:
        operation, quote = ExchangeTillService(db).sell(request, current_user)
        db.commit()
        return _sale_response(operation, quote)
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/counter", dependencies=[Depends(PermissionChecker(["exchange:operate"]))])
async def counter_exchange(
    request: CounterExchangeRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Walk-in exchange at an agency counter"""
    try:
        operation, quote = ExchangeTillService(db).counter_exchange(request, current_user)
        db.commit()
        result = {"operation_id": operation.id, "operation_type": operation.operation_type,
                  "payload": operation.payload}
        if quote is not None:
            result.update(_sale_response(operation, quote).model_dump())
        return result
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/resupply", dependencies=[Depends(PermissionChecker(["exchange:manage"]))])
async def resupply_branches(
    request: ResupplyRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Distribute central till funds to agencies, all at once or not at all"""
    try:
        operation = ExchangeTillService(db).resupply_branches(request, current_user)
        db.commit()
        return {"operation_id": operation.id, "payload": operation.payload}
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/adjust", dependencies=[Depends(PermissionChecker(["exchange:manage"]))])
async def adjust_till_balance(
    request: TillAdjustRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Set a till balance to a counted value"""
    try:
        operation = ExchangeTillService(db).adjust_balance(request, current_user)
        db.commit()
        return {"operation_id": operation.id, "payload": operation.payload}
    except (ValueError, PermissionError) as e:
        _fail(db, e)
