"""
Agencies API Routes
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Literal

from backoffice.core.database import get_db
from backoffice.core.security import get_current_active_user, PermissionChecker
from backoffice.schemas import AgencyCreate, AgencyResponse
from backoffice.services.agency_service import AgencyService
from backoffice.services.audit_service import AuditService, AuditAction

router = APIRouter(prefix="/agencies", tags=["Agencies"])


@router.get("", response_model=List[AgencyResponse],
            dependencies=[Depends(PermissionChecker(["agencies:view"]))])
async def list_agencies(
    active_only: bool = False,
    db: Session = Depends(get_db)
):
    agency_service = AgencyService(db)
    return agency_service.get_active() if active_only else agency_service.get_all()


@router.post("", response_model=AgencyResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(PermissionChecker(["agencies:manage"]))])
async def create_agency(
    agency_data: AgencyCreate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Create an agency and its currency tills"""
    try:
        agency = AgencyService(db).create(agency_data, created_by=current_user.display_name)
        AuditService(db).log(
            action=AuditAction.AGENCY_CREATED,
            resource_type="Agency",
            resource_id=agency.id,
            description=f"Agency '{agency.name}' created",
            user=current_user,
        )
        db.commit()
        return agency
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put("/{agency_id}/status", response_model=AgencyResponse,
            dependencies=[Depends(PermissionChecker(["agencies:manage"]))])
async def set_agency_status(
    agency_id: int,
    new_status: Literal["active", "inactive"],
    db: Session = Depends(get_db)
):
    agency = AgencyService(db).set_status(agency_id, new_status)
    if not agency:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")
    db.commit()
    return agency
