"""
Authentication routers.

This module provides FastAPI routers for:
- Registration, activation and login (/auth)
- Session, password and phone management for the current account (/auth)
- Account administration (/admin)

Handlers only translate between HTTP and AccountLifecycleManager; a failed
Result is raised as ServiceError by unwrap() and rendered by the global
error handlers.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from iam_service.auth.middleware import AuthMiddleware, Identity
from iam_service.auth.models import AccountStatus, Role
from iam_service.auth.services import AuthServices, get_auth_services
from iam_service.auth.users import (
    AccountUpdate, AdminCreateUser, AdminPasswordReset, LoginRequest,
    PasswordChange, PasswordResetConfirm, PasswordResetRequest, PhoneConfirm,
    ResendRequest, RoleChangeRequest, RoleName, UserCreate, VerifyRequest,
)
from iam_service.base_microservice import BaseMicroservice

# Create routers
router = APIRouter(tags=["auth"])
admin_router = APIRouter(tags=["admin"])

# Create service instance
base_service = BaseMicroservice(name="auth")

require_account = AuthMiddleware.require()
require_admin = AuthMiddleware.require(Role.ADMIN)


# --- Registration and login ---

@router.post("/register", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: UserCreate,
    services: AuthServices = Depends(get_auth_services),
):
    """
    Register a new account.

    The account starts pending; an activation code is sent to its email.
    """
    account = (await services.lifecycle.register(
        user_data.username, user_data.email, user_data.password, user_data.phone
    )).unwrap()

    base_service.log_event("account.registered", {
        "id": account.id,
        "username": account.username,
    })

    return base_service.mcp_response(
        data=account,
        message="Account registered. Check your email for a verification code",
        status_code=status.HTTP_201_CREATED,
    )


@router.post("/verify", response_model=Dict[str, Any])
async def verify_account(
    request: VerifyRequest,
    services: AuthServices = Depends(get_auth_services),
):
    """Activate a pending account with its email verification code."""
    account = (await services.lifecycle.activate(request.account_id, request.code)).unwrap()
    base_service.log_event("account.activated", {"id": account.id})
    return base_service.mcp_response(data=account, message="Account verified")


@router.post("/verify/resend", response_model=Dict[str, Any], status_code=status.HTTP_202_ACCEPTED)
async def resend_verification(
    request: ResendRequest,
    services: AuthServices = Depends(get_auth_services),
):
    """Send a new activation code. The response does not reveal whether the email exists."""
    (await services.lifecycle.resend_verification(request.email)).unwrap()
    return base_service.mcp_response(
        message="If a pending account exists for this email, a new code has been sent",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.post("/login", response_model=Dict[str, Any])
async def login(
    credentials: LoginRequest,
    services: AuthServices = Depends(get_auth_services),
):
    """
    Authenticate with a username or email and a password.

    Returns:
        Envelope with the bearer token
    """
    result = await services.lifecycle.login(credentials.identifier, credentials.password)
    if not result.ok:
        base_service.log_event("account.login.failed", {"reason": result.failure.value})
    token = result.unwrap()
    base_service.log_event("account.login", {"expires_at": token.expires_at})
    return base_service.mcp_response(data=token, message="Login successful")


@router.post("/token/refresh", response_model=Dict[str, Any])
async def refresh_token(
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Issue a new token for the current account."""
    token = (await services.lifecycle.refresh(identity.account_id)).unwrap()
    return base_service.mcp_response(data=token, message="Token refreshed successfully")


# --- Current account ---

@router.get("/me", response_model=Dict[str, Any])
async def get_current_account(
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Get information about the current authenticated account."""
    account = (await services.lifecycle.get_account(identity.account_id)).unwrap()
    return base_service.mcp_response(data=account, message="Account information retrieved successfully")


@router.delete("/me", response_model=Dict[str, Any])
async def delete_current_account(
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Close the current account."""
    account = (await services.lifecycle.delete(identity.account_id, identity.account_id)).unwrap()
    base_service.log_event("account.deleted", {"id": account.id, "by": identity.account_id})
    return base_service.mcp_response(data={"id": account.id}, message="Account deleted")


@router.post("/sessions/revoke", response_model=Dict[str, Any])
async def revoke_own_sessions(
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Invalidate every token of the current account, including the one used here."""
    version = (await services.tokens.revoke(identity.account_id)).unwrap()
    base_service.log_event("account.sessions.revoked", {"id": identity.account_id, "by": identity.account_id})
    return base_service.mcp_response(data={"token_version": version}, message="All sessions revoked")


@router.post("/password/change", response_model=Dict[str, Any])
async def change_password(
    request: PasswordChange,
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Change the password; other sessions are revoked and a new token is returned."""
    token = (await services.lifecycle.change_password(
        identity.account_id, request.current_password, request.new_password
    )).unwrap()
    base_service.log_event("account.password.changed", {"id": identity.account_id})
    return base_service.mcp_response(data=token, message="Password changed successfully")


@router.post("/password/reset-request", response_model=Dict[str, Any], status_code=status.HTTP_202_ACCEPTED)
async def request_password_reset(
    request: PasswordResetRequest,
    services: AuthServices = Depends(get_auth_services),
):
    """Send a password-reset code. The response does not reveal whether the email exists."""
    (await services.lifecycle.request_password_reset(request.email)).unwrap()
    return base_service.mcp_response(
        message="If an account exists for this email, a reset code has been sent",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.post("/password/reset", response_model=Dict[str, Any])
async def reset_password(
    request: PasswordResetConfirm,
    services: AuthServices = Depends(get_auth_services),
):
    """Set a new password using a password-reset code."""
    (await services.lifecycle.reset_password(request.email, request.code, request.new_password)).unwrap()
    base_service.log_event("account.password.reset", {})
    return base_service.mcp_response(message="Password reset successfully")


@router.post("/verify/phone/send", response_model=Dict[str, Any], status_code=status.HTTP_202_ACCEPTED)
async def send_phone_code(
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Send an SMS verification code to the current account's phone."""
    (await services.lifecycle.request_phone_verification(identity.account_id)).unwrap()
    return base_service.mcp_response(message="Verification code sent", status_code=status.HTTP_202_ACCEPTED)


@router.post("/verify/phone/confirm", response_model=Dict[str, Any])
async def confirm_phone(
    request: PhoneConfirm,
    identity: Identity = Depends(require_account),
    services: AuthServices = Depends(get_auth_services),
):
    """Confirm the current account's phone with an SMS code."""
    account = (await services.lifecycle.confirm_phone(identity.account_id, request.code)).unwrap()
    base_service.log_event("account.phone.verified", {"id": account.id})
    return base_service.mcp_response(data=account, message="Phone verified")


# --- Health Check ---

@router.get("/ping", response_model=Dict[str, Any])
async def ping():
    """
    Health check endpoint for the auth service.

    Returns:
        Dict with status information
    """
    return base_service.mcp_response(
        message="Auth service is alive",
        data={"timestamp": datetime.now(timezone.utc).isoformat()},
    )


# --- Administration ---

@admin_router.get("/users", response_model=Dict[str, Any])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[RoleName] = None,
    status_filter: Optional[AccountStatus] = Query(None, alias="status"),
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """
    List accounts with pagination and filters.

    Args:
        page: 1-based page number
        limit: Page size, at most 100
        role: Only accounts holding this role
        status_filter: Only accounts in this status; deleted accounts are
            excluded unless asked for

    Returns:
        Envelope with items, total, page and limit
    """
    accounts = (await services.lifecycle.list_accounts(
        page=page,
        limit=limit,
        role=Role.parse(role) if role else None,
        status=status_filter,
    )).unwrap()
    return base_service.mcp_response(data=accounts, message="Accounts retrieved successfully")


@admin_router.post("/users", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: AdminCreateUser,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Create an account directly. The new role must be below the caller's."""
    account = (await services.lifecycle.provision(
        user_data.username,
        user_data.email,
        user_data.password,
        role=user_data.role,
        status=AccountStatus(user_data.status),
        phone=user_data.phone,
        actor_id=identity.account_id,
    )).unwrap()

    base_service.log_event("account.provisioned", {
        "id": account.id,
        "role": account.role,
        "by": identity.account_id,
    })

    return base_service.mcp_response(
        data=account,
        message="Account created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@admin_router.get("/users/search", response_model=Dict[str, Any])
async def search_users(
    q: str = Query(..., max_length=100),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Search live accounts by username or email."""
    accounts = (await services.lifecycle.search_accounts(q, limit=limit)).unwrap()
    return base_service.mcp_response(
        data={"users": accounts, "count": len(accounts)},
        message="Search completed",
    )


@admin_router.get("/users/stats/dashboard", response_model=Dict[str, Any])
async def dashboard_stats(
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Account counts by role and status, verified phones and recent sign-ups."""
    stats = (await services.lifecycle.account_stats()).unwrap()
    return base_service.mcp_response(data=stats, message="Dashboard statistics retrieved successfully")


@admin_router.get("/users/{account_id}", response_model=Dict[str, Any])
async def get_user(
    account_id: int,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Get one account."""
    account = (await services.lifecycle.get_account(account_id)).unwrap()
    return base_service.mcp_response(data=account, message="Account retrieved successfully")


@admin_router.put("/users/{account_id}", response_model=Dict[str, Any])
async def update_user(
    account_id: int,
    changes: AccountUpdate,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """
    Edit an account's username, email or phone.

    The caller must outrank the account. Identifiers stay unique across live
    accounts; a new phone number must be verified again.
    """
    account = (await services.lifecycle.update_account(
        identity.account_id,
        account_id,
        username=changes.username,
        email=changes.email,
        phone=changes.phone,
    )).unwrap()

    base_service.log_event("account.updated", {
        "id": account_id,
        "fields": sorted(changes.model_dump(exclude_none=True)),
        "by": identity.account_id,
    })

    return base_service.mcp_response(data=account, message="Account updated successfully")


@admin_router.put("/users/{account_id}/password", response_model=Dict[str, Any])
async def reset_user_password(
    account_id: int,
    request: AdminPasswordReset,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Set the password of an account the caller outranks. Its tokens are revoked."""
    account = (await services.lifecycle.reset_password_for(
        identity.account_id, account_id, request.password
    )).unwrap()
    base_service.log_event("account.password.reset_by_admin", {"id": account_id, "by": identity.account_id})
    return base_service.mcp_response(data={"id": account.id}, message="Password reset successfully")


@admin_router.put("/users/{account_id}/role", response_model=Dict[str, Any])
async def change_user_role(
    account_id: int,
    request: RoleChangeRequest,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """
    Change an account's role.

    The caller must outrank both the account's current role and the new one.
    """
    change = (await services.lifecycle.change_role(
        identity.account_id, account_id, request.role
    )).unwrap()

    base_service.log_event("account.role.changed", {
        "id": account_id,
        "from": change.previous_role,
        "to": change.role,
        "by": identity.account_id,
    })

    return base_service.mcp_response(data=change, message=f"Role changed to '{change.role}'")


@admin_router.post("/users/{account_id}/suspend", response_model=Dict[str, Any])
async def suspend_user(
    account_id: int,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Suspend an active account."""
    account = (await services.lifecycle.suspend(identity.account_id, account_id)).unwrap()
    base_service.log_event("account.suspended", {"id": account_id, "by": identity.account_id})
    return base_service.mcp_response(data=account, message="Account suspended")


@admin_router.post("/users/{account_id}/reactivate", response_model=Dict[str, Any])
async def reactivate_user(
    account_id: int,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Reactivate a suspended account."""
    account = (await services.lifecycle.reactivate(identity.account_id, account_id)).unwrap()
    base_service.log_event("account.reactivated", {"id": account_id, "by": identity.account_id})
    return base_service.mcp_response(data=account, message="Account reactivated")


@admin_router.delete("/users/{account_id}", response_model=Dict[str, Any])
async def delete_user(
    account_id: int,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Delete an account. Deletion is terminal and frees its username, email and phone."""
    account = (await services.lifecycle.delete(identity.account_id, account_id)).unwrap()
    base_service.log_event("account.deleted", {"id": account_id, "by": identity.account_id})
    return base_service.mcp_response(data={"id": account.id}, message="Account deleted")


@admin_router.post("/users/{account_id}/sessions/revoke", response_model=Dict[str, Any])
async def revoke_user_sessions(
    account_id: int,
    identity: Identity = Depends(require_admin),
    services: AuthServices = Depends(get_auth_services),
):
    """Invalidate every token of another account."""
    version = (await services.lifecycle.revoke_sessions(account_id, actor_id=identity.account_id)).unwrap()
    base_service.log_event("account.sessions.revoked", {"id": account_id, "by": identity.account_id})
    return base_service.mcp_response(data={"token_version": version}, message="All sessions revoked")
