"""
Expenses API Routes
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from backoffice.core.database import get_db
from backoffice.core.errors import http_status_for
from backoffice.core.security import get_current_active_user, PermissionChecker
from backoffice.schemas import (
    ExpenseCreate, ExpenseUpdate, ExpenseResponse, ExpenseValidateRequest, ExpenseBypassRequest,
    ExpenseCategoryEnum, MessageResponse
)
from backoffice.services.expense_service import ExpenseService
from backoffice.services.audit_service import AuditService, AuditAction

router = APIRouter(prefix="/expenses", tags=["Expenses"])


def _fail(db: Session, e: Exception):
    db.rollback()
    raise HTTPException(status_code=http_status_for(e), detail=str(e))


@router.get("", response_model=List[ExpenseResponse],
            dependencies=[Depends(PermissionChecker(["expenses:view"]))])
async def list_expenses(
    expense_status: Optional[str] = None,
    category: Optional[str] = None,
    agency: Optional[str] = None,
    requested_by: Optional[str] = None,
    start_date: date = None,
    end_date: date = None,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """List expenses; users without expenses:view_all only see their own"""
    return ExpenseService(db).list_for_user(
        current_user, status=expense_status, category=category, agency=agency,
        requested_by=requested_by, start_date=start_date, end_date=end_date
    )


@router.get("/pending", response_model=List[ExpenseResponse],
            dependencies=[Depends(PermissionChecker(["expenses:validate"]))])
async def list_pending_expenses(
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Expenses waiting on the caller's validation stage"""
    return ExpenseService(db).pending_for_user(current_user)


@router.get("/categories")
async def list_expense_categories(current_user = Depends(get_current_active_user)):
    return {"categories": [category.value for category in ExpenseCategoryEnum]}


@router.get("/summary", dependencies=[Depends(PermissionChecker(["expenses:view_all"]))])
async def get_expense_summary(
    start_date: date = None,
    end_date: date = None,
    db: Session = Depends(get_db)
):
    """Get expense totals by status and category"""
    return ExpenseService(db).get_summary(start_date, end_date)


@router.post("", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(PermissionChecker(["expenses:create"]))])
async def create_expense(
    expense_data: ExpenseCreate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Create a new expense"""
    try:
        expense = ExpenseService(db).create(expense_data, current_user)
        db.commit()
        return expense
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.get("/{expense_id}", response_model=ExpenseResponse,
            dependencies=[Depends(PermissionChecker(["expenses:view"]))])
async def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    expense = ExpenseService(db).get_by_id(expense_id)
    if not expense:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expense not found")
    return expense


@router.put("/{expense_id}", response_model=ExpenseResponse,
            dependencies=[Depends(PermissionChecker(["expenses:edit"]))])
async def update_expense(
    expense_id: int,
    expense_data: ExpenseUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        expense = ExpenseService(db).update(expense_id, expense_data, current_user)
        db.commit()
        return expense
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.delete("/{expense_id}", response_model=MessageResponse,
               dependencies=[Depends(PermissionChecker(["expenses:delete"]))])
async def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    try:
        ExpenseService(db).delete(expense_id, current_user)
        AuditService(db).log(
            action=AuditAction.DELETE,
            resource_type="Expense",
            resource_id=expense_id,
            description=f"Expense #{expense_id} deleted",
            user=current_user,
        )
        db.commit()
        return MessageResponse(message="Expense deleted")
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/{expense_id}/validate", response_model=ExpenseResponse,
             dependencies=[Depends(PermissionChecker(["expenses:validate"]))])
async def validate_expense(
    expense_id: int,
    validation: ExpenseValidateRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Accounting or director decision on an expense"""
    try:
        expense = ExpenseService(db).validate(
            expense_id, validation.approved, validation.stage.value,
            validation.rejection_reason, current_user
        )
        AuditService(db).log(
            action=AuditAction.EXPENSE_VALIDATED,
            resource_type="Expense",
            resource_id=expense.id,
            description=f"Expense #{expense.id} {expense.status}",
            new_values={"status": expense.status, "stage": validation.stage.value},
            user=current_user,
        )
        db.commit()
        return expense
    except (ValueError, PermissionError) as e:
        _fail(db, e)


@router.post("/{expense_id}/bypass", response_model=ExpenseResponse,
             dependencies=[Depends(PermissionChecker(["expenses:bypass"]))])
async def bypass_accounting(
    expense_id: int,
    decision: ExpenseBypassRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Director decision on a pending expense without the accounting stage"""
    try:
        expense = ExpenseService(db).bypass_accounting(
            expense_id, decision.approved, decision.rejection_reason, current_user
        )
        AuditService(db).log(
            action=AuditAction.EXPENSE_BYPASS,
            resource_type="Expense",
            resource_id=expense.id,
            description=f"Expense #{expense.id} {expense.status} (accounting bypassed)",
            new_values={"status": expense.status},
            user=current_user,
        )
        db.commit()
        return expense
    except (ValueError, PermissionError) as e:
        _fail(db, e)
