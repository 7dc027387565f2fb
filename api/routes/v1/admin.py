"""
api/routes/v1/admin.py -- Invitation and role management (Administrator only).

Routes:
  POST   /api/v1/admin/account-invites             -- invite into an account with a role
  POST   /api/v1/admin/application-invites         -- invite to create a new account
  POST   /api/v1/admin/users/{email}/roles         -- grant a role
  DELETE /api/v1/admin/users/{email}/roles/{role}  -- revoke a role

Every route requires the Administrator role (require_admin) and is confined
to the caller's own account: targets in another account get 403. Failures from
AdminService are AuthorizationError subclasses, mapped to HTTP in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    AccountInviteCreate,
    ApplicationInviteCreate,
    InviteResponse,
    RoleGrant,
    UserRolesResponse,
)
from auth.admin import AdminService
from auth.dependencies import require_admin
from auth.models import AppUser

router = APIRouter()


@router.post("/admin/account-invites", response_model=InviteResponse, status_code=201)
async def create_account_invite(
    request: Request,
    body: AccountInviteCreate,
    current_user: AppUser = Depends(require_admin),
) -> InviteResponse:
    """Invite someone into the caller's account. account_owner may only name that account."""
    admin: AdminService = request.app.state.admin
    owner = body.account_owner
    if owner is None:
        if current_user.account is None:
            raise HTTPException(
                status_code=400,
                detail={"code": "invalid_argument", "message": "account_owner is required."},
            )
        owner = current_user.account.owner
    invite = admin.invite_to_account(
        body.email,
        owner,
        body.role,
        created_by=current_user.email,
        days=body.days,
        acting_account_id=current_user.account_id,
    )
    return InviteResponse(
        id=invite.id,
        email=invite.email,
        utc_expiration=invite.utc_expiration,
        account_id=invite.account_id,
        role=invite.role.name,
    )


@router.post("/admin/application-invites", response_model=InviteResponse, status_code=201)
async def create_application_invite(
    request: Request,
    body: ApplicationInviteCreate,
    current_user: AppUser = Depends(require_admin),
) -> InviteResponse:
    admin: AdminService = request.app.state.admin
    invite = admin.invite_to_application(
        body.email, created_by=current_user.email, account_type_name=body.account_type, days=body.days
    )
    return InviteResponse(
        id=invite.id,
        email=invite.email,
        utc_expiration=invite.utc_expiration,
        account_type=invite.account_type.name,
    )


@router.post("/admin/users/{email}/roles", response_model=UserRolesResponse)
async def grant_role(
    request: Request,
    email: str,
    body: RoleGrant,
    current_user: AppUser = Depends(require_admin),
) -> UserRolesResponse:
    """Grant a role. Granting one the user already holds changes nothing."""
    admin: AdminService = request.app.state.admin
    roles = admin.grant_role(email, body.role, granted_by=current_user.email, acting_account_id=current_user.account_id)
    return UserRolesResponse(email=email.strip().lower(), roles=roles)


@router.delete("/admin/users/{email}/roles/{role}", response_model=UserRolesResponse)
async def revoke_role(
    request: Request,
    email: str,
    role: str,
    current_user: AppUser = Depends(require_admin),
) -> UserRolesResponse:
    admin: AdminService = request.app.state.admin
    roles = admin.revoke_role(email, role, revoked_by=current_user.email, acting_account_id=current_user.account_id)
    return UserRolesResponse(email=email.strip().lower(), roles=roles)
