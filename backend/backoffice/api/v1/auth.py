"""
Authentication API Routes
"""
from fastapi import APIRouter, Depends, HTTPException, status, Response, Request
from sqlalchemy.orm import Session
from typing import List
from datetime import date, timedelta

from backoffice.core.database import get_db
from backoffice.core.security import create_access_token, get_current_active_user, PermissionChecker
from backoffice.core.config import settings
from backoffice.schemas import LoginRequest, Token, UserCreate, UserResponse, MessageResponse
from backoffice.services.user_service import UserService
from backoffice.services.permission_service import PermissionService
from backoffice.services.audit_service import AuditService, AuditAction

router = APIRouter(prefix="/auth", tags=["Authentication"])


def get_client_ip(request: Request) -> str:
    """Extract the client IP, honouring X-Forwarded-For"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@router.post("/login", response_model=Token)
async def login(
    login_data: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """Login and get access token"""
    user_service = UserService(db)
    audit_service = AuditService(db)
    ip_address = get_client_ip(request)

    user = user_service.authenticate(login_data.username, login_data.password)
    if not user:
        audit_service.log(
            action=AuditAction.LOGIN_FAILED,
            resource_type="User",
            description=f"Failed login attempt for username '{login_data.username}'",
            ip_address=ip_address,
            request_path="/api/v1/auth/login",
            status="failure",
        )
        db.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password"
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled"
        )

    access_token_expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.username, "role": user.role},
        expires_delta=access_token_expires
    )

    user_service.record_login(user)
    audit_service.log(
        action=AuditAction.LOGIN,
        resource_type="User",
        resource_id=user.id,
        description=f"User '{user.username}' logged in",
        user=user,
        ip_address=ip_address,
        request_path="/api/v1/auth/login",
    )
    db.commit()

    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        max_age=int(access_token_expires.total_seconds()),
        samesite="lax",
        secure=settings.is_production
    )
    return Token(access_token=access_token)


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    response.delete_cookie("access_token")
    return MessageResponse(message="Logged out")


@router.get("/me")
async def get_me(current_user = Depends(get_current_active_user)):
    """Current user with the permissions of their role"""
    return {
        "id": current_user.id,
        "username": current_user.username,
        "full_name": current_user.full_name,
        "email": current_user.email,
        "role": current_user.role,
        "agency_id": current_user.agency_id,
        "agency_name": current_user.agency.name if current_user.agency else None,
        "permissions": sorted(PermissionService.get_user_permissions(current_user)),
    }


@router.get("/users", response_model=List[UserResponse],
            dependencies=[Depends(PermissionChecker(["users:view"]))])
async def list_users(
    role: str = None,
    agency_id: int = None,
    db: Session = Depends(get_db)
):
    return UserService(db).get_all(role=role, agency_id=agency_id)


@router.post("/users", response_model=UserResponse,
             dependencies=[Depends(PermissionChecker(["users:manage"]))])
async def create_user(
    user_data: UserCreate,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_active_user)
):
    """Create a user account"""
    try:
        user = UserService(db).create(user_data)
        AuditService(db).log(
            action=AuditAction.USER_CREATED,
            resource_type="User",
            resource_id=user.id,
            description=f"User '{user.username}' created with role {user.role}",
            user=current_user,
        )
        db.commit()
        return user
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/audit-logs", dependencies=[Depends(PermissionChecker(["users:view"]))])
async def list_audit_logs(
    start_date: date = None,
    end_date: date = None,
    action: str = None,
    resource_type: str = None,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    logs = AuditService(db).get_logs(
        start_date=start_date, end_date=end_date, action=action,
        resource_type=resource_type, limit=min(max(limit, 1), 500),
    )
    return [
        {
            "id": log.id,
            "timestamp": log.timestamp,
            "username": log.username,
            "action": log.action,
            "resource_type": log.resource_type,
            "resource_id": log.resource_id,
            "description": log.description,
            "status": log.status,
        }
        for log in logs
    ]
