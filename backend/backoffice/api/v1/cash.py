"""
Cash API Routes - Vault and cashier cash excess
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from backoffice.core.database import get_db
from backoffice.core.errors import http_status_for
from backoffice.core.security import get_current_active_user, PermissionChecker
from backoffice.models import UserRole
from backoffice.schemas import VaultDepositRequest, CashExcessDeclarationCreate, CashierExcessResponse
from backoffice.services.cash_service import CashAccountService, CashExcessService
from backoffice.services.audit_service import AuditService, AuditAction

router = APIRouter(prefix="/cash", tags=["Cash"])


@router.get("/vault", dependencies=[Depends(PermissionChecker(["cash:view"]))])
async def get_vault(db: Session = Depends(get_db)):
    vault = CashAccountService(db).get_vault()
    db.commit()
    return {
        "account_type": vault.account_type,
        "account_name": vault.account_name,
        "current_balance": vault.current_balance,
        "updated_by": vault.updated_by,
        "last_updated": vault.last_updated,
    }


@router.get("/vault/transactions", dependencies=[Depends(PermissionChecker(["cash:view"]))])
async def list_vault_transactions(limit: int = 100, db: Session = Depends(get_db)):
    transactions = CashAccountService(db).get_transactions(limit=limit)
    return [
        {
            "id": t.id,
            "transaction_type": t.transaction_type,
            "amount": t.amount,
            "balance_after": t.balance_after,
            "description": t.description,
            "reference_type": t.reference_type,
            "reference_id": t.reference_id,
            "created_by": t.created_by,
            "created_at": t.created_at,
        }
        for t in transactions
    ]


@router.post("/vault/deposit", dependencies=[Depends(PermissionChecker(["cash:manage"]))])
async def deposit_to_vault(
    deposit: VaultDepositRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        transaction = CashAccountService(db).deposit_to_vault(
            deposit.amount, deposit.description, current_user
        )
        AuditService(db).log(
            action=AuditAction.VAULT_MOVEMENT,
            resource_type="CashAccount",
            resource_id=transaction.account_id,
            description=f"Vault deposit of {deposit.amount}",
            user=current_user,
        )
        db.commit()
        return {"transaction_id": transaction.id, "balance_after": transaction.balance_after}
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=http_status_for(e), detail=str(e))


@router.get("/excess/cashiers", response_model=List[CashierExcessResponse],
            dependencies=[Depends(PermissionChecker(["expenses:create"]))])
async def list_cashiers_with_excess(
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Cashiers that can pay an expense from their excess; a cashier only sees themself"""
    cashiers = CashExcessService(db).cashiers_with_excess()
    if current_user.role == UserRole.CASHIER.value:
        cashiers = [c for c in cashiers if c["id"] == current_user.id]
    return cashiers


@router.get("/excess", dependencies=[Depends(PermissionChecker(["cash:view"]))])
async def list_excess_entries(
    cashier_id: Optional[int] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    if current_user.role == UserRole.CASHIER.value:
        cashier_id = current_user.id
    excess_service = CashExcessService(db)
    entries = excess_service.get_entries(cashier_id, limit)
    return {
        "cashier_id": cashier_id,
        "available_excess": excess_service.available_excess(cashier_id) if cashier_id else None,
        "entries": [
            {
                "id": e.id,
                "cashier_id": e.cashier_id,
                "amount": e.amount,
                "entry_type": e.entry_type,
                "declaration_date": e.declaration_date,
                "comment": e.comment,
                "expense_id": e.expense_id,
                "created_by": e.created_by,
                "created_at": e.created_at,
            }
            for e in entries
        ],
    }


@router.post("/excess", status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(PermissionChecker(["cash:declare"]))])
async def declare_excess(
    declaration: CashExcessDeclarationCreate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Declare cash found in excess at a cashier's till"""
    excess_service = CashExcessService(db)
    try:
        entry = excess_service.declare(
            declaration.amount, current_user,
            cashier_id=declaration.cashier_id,
            declaration_date=declaration.declaration_date,
            comment=declaration.comment,
        )
        AuditService(db).log(
            action=AuditAction.EXCESS_DECLARED,
            resource_type="CashExcessEntry",
            resource_id=entry.id,
            description=f"Excess of {declaration.amount} declared for cashier {entry.cashier_id}",
            user=current_user,
        )
        db.commit()
        return {
            "id": entry.id,
            "cashier_id": entry.cashier_id,
            "amount": entry.amount,
            "available_excess": excess_service.available_excess(entry.cashier_id),
        }
    except (ValueError, PermissionError) as e:
        db.rollback()
        raise HTTPException(status_code=http_status_for(e), detail=str(e))
