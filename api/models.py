"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Secrets stored on the user (provider OAuth tokens) never appear here.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AppConnection, AppUser

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: Optional[str] = None
    initials: str = ""
    profile_picture_url: Optional[str] = None
    provider_type: Optional[str] = None
    account_id: Optional[int] = None
    roles: list[str] = Field(default_factory=list)
    utc_last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: AppUser) -> "MeResponse":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            initials=user.display_name_initials(),
            profile_picture_url=user.profile_picture_url,
            provider_type=user.provider_type,
            account_id=user.account_id,
            roles=user.role_names,
            utc_last_login=user.utc_last_login,
        )


class AccessTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/token. Omit duration for the default."""

    duration_seconds: Optional[int] = Field(default=None, gt=0, le=24 * 3600)


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class RefreshTokenCreate(BaseModel):
    duration_seconds: Optional[int] = Field(default=None, gt=0, le=90 * 24 * 3600)


class RefreshTokenCreatedResponse(BaseModel):
    """The raw refresh token is returned once, here, and never again."""

    model_config = ConfigDict(frozen=True)

    id: int
    refresh_token: str
    utc_expires_on: datetime


class RefreshRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=512)


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class AccountInviteCreate(BaseModel):
    """Request body for POST /api/v1/admin/account-invites.

    account_owner defaults to the calling administrator's own account, and
    naming any other account is refused with 403.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    role: str = Field(min_length=1, max_length=100)
    account_owner: Optional[str] = Field(default=None, max_length=255)
    days: int = Field(default=14, gt=0, le=3650)


class ApplicationInviteCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    account_type: str = Field(default="Free", min_length=1, max_length=100)
    days: int = Field(default=14, gt=0, le=3650)


class InviteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    utc_expiration: datetime
    account_id: Optional[int] = None
    role: Optional[str] = None
    account_type: Optional[str] = None


class RoleGrant(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=100)


class UserRolesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    roles: list[str]


# ---------------------------------------------------------------------------
# Provider connections
# ---------------------------------------------------------------------------


class ConnectionResponse(BaseModel):
    """A stored provider connection. Token values never leave the server."""

    model_config = ConfigDict(frozen=True)

    id: int
    provider_name: str
    owner_email: str
    connection_email: Optional[str] = None
    account_id: int
    scope: Optional[str] = None
    token_type: Optional[str] = None
    utc_issued_on: datetime
    utc_expires_on: Optional[datetime] = None
    has_refresh_token: bool = False
    version: int

    @classmethod
    def from_connection(cls, connection: AppConnection) -> "ConnectionResponse":
        return cls(
            id=connection.id,
            provider_name=connection.provider_name,
            owner_email=connection.owner_email,
            connection_email=connection.connection_email,
            account_id=connection.account_id,
            scope=connection.scope,
            token_type=connection.token_type,
            utc_issued_on=connection.utc_issued_on,
            utc_expires_on=connection.utc_expires_on,
            has_refresh_token=bool(connection.refresh_token),
            version=connection.version,
        )
