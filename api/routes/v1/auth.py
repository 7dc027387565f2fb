"""
api/routes/v1/auth.py -- Login, session and token REST endpoints.

Routes:
  GET    /api/v1/auth/providers           -- list enabled OAuth providers (public)
  GET    /api/v1/auth/login/{provider}    -- redirect to the provider (public)
  GET    /api/v1/auth/callback/{provider} -- code exchange -> authorize -> session
  POST   /api/v1/auth/logout              -- clears the session
  GET    /api/v1/auth/me                  -- current user (requires auth)
  POST   /api/v1/auth/token               -- issue an access token (requires auth)
  POST   /api/v1/auth/refresh-tokens      -- create a refresh token (requires auth)
  DELETE /api/v1/auth/refresh-tokens      -- revoke all refresh tokens (requires auth)
  POST   /api/v1/auth/refresh             -- redeem a refresh token (public)

Security:
  Login callback and refresh redemption are rate-limited per IP.
  Cache-Control: no-store on every response that carries a credential.
  The session cookie holds only {"uid", "roles"}; see auth/dependencies.py.
  AuthorizationError raised by the services is mapped to HTTP in api/main.py.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AccessTokenRequest,
    AccessTokenResponse,
    MeResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RefreshTokenCreate,
    RefreshTokenCreatedResponse,
    RevokeResponse,
)
from auth.authorization import AuthorizationService
from auth.dependencies import SESSION_KEY, get_current_user
from auth.device import device_info_from_request
from auth.errors import AuthorizationError
from auth.models import AppUser
from auth.oauth import get_enabled_providers, get_oauth_identity, oauth_token_info
from auth.tokens import TokenService
from core.config import get_settings

logger = logging.getLogger("tenantgate.api.auth")

_settings = get_settings()

# Auth policy:
# - GET    /auth/providers, /auth/login/*, /auth/callback/*: public
# - POST   /auth/logout:           public -- clearing a session needs no prior auth
# - POST   /auth/refresh:          public -- the refresh token is the credential
# - everything else:               requires auth (get_current_user)
router = APIRouter()


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# OAuth login flow
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/login/{provider}", name="oauth_login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot reach the registry.
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"Unknown provider {provider!r}."},
        )
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and start a session.

    Flow:
      1. Exchange the authorization code for a token (authlib checks state).
      2. Normalize the provider response into a ClaimsIdentity (verified email only).
      3. AuthorizationService.authorize(): existing user, invitation or
         pre-authorization; records last login and a login history row.
      4. Store the narrow session payload and redirect.

    Any rejection redirects to login_failed_redirect; the reason is logged,
    never reflected to the browser.
    """
    settings = get_settings()
    if provider not in {p["name"] for p in get_enabled_providers()}:
        return RedirectResponse(settings.login_failed_redirect, status_code=302)

    service: AuthorizationService = request.app.state.authorization
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse(settings.login_failed_redirect, status_code=302)

    device = device_info_from_request(
        request.client.host if request.client else None,
        request.headers.get("User-Agent"),
    )
    try:
        identity = await get_oauth_identity(client, provider, token)
        user = await service.authorize(identity, oauth_token=oauth_token_info(token), device_info=device)
    except AuthorizationError as exc:
        logger.warning("Login via %s rejected (%s): %s", provider, exc.code, exc.message)
        return RedirectResponse(settings.login_failed_redirect, status_code=302)

    request.session[SESSION_KEY] = service.session_payload(user)
    return _no_store(RedirectResponse(settings.login_success_redirect, status_code=302))


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Clear the session."""
    request.session.clear()
    return JSONResponse(content={"message": "Logged out."})


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: AppUser = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_user(current_user)


@router.post("/auth/token", response_model=AccessTokenResponse)
async def issue_token(
    request: Request,
    body: AccessTokenRequest | None = None,
    current_user: AppUser = Depends(get_current_user),
) -> JSONResponse:
    """Issue a signed access token for the current user."""
    tokens: TokenService = request.app.state.tokens
    duration = (body and body.duration_seconds) or get_settings().access_token_expire_seconds
    access_token = tokens.issue_access_token(current_user, duration)
    content = AccessTokenResponse(access_token=access_token, expires_in=duration).model_dump()
    return _no_store(JSONResponse(content=content))


@limiter.limit(_settings.token_rate_limit)
@router.post("/auth/refresh-tokens", response_model=RefreshTokenCreatedResponse, status_code=201)
async def create_refresh_token(
    request: Request,
    body: RefreshTokenCreate | None = None,
    current_user: AppUser = Depends(get_current_user),
) -> JSONResponse:
    """Create a refresh token. The raw token is shown ONCE and never stored.

    At most max_active_refresh_tokens may be valid at a time; beyond that the
    call fails with 409 until old tokens are revoked.
    """
    tokens: TokenService = request.app.state.tokens
    duration = (body and body.duration_seconds) or get_settings().refresh_token_expire_seconds
    created = tokens.create_refresh_token(current_user.email, duration)
    content = RefreshTokenCreatedResponse(
        id=created.id,
        refresh_token=created.token,
        utc_expires_on=created.utc_expires_on,
    ).model_dump(mode="json")
    return _no_store(JSONResponse(status_code=201, content=content))


@router.delete("/auth/refresh-tokens", response_model=RevokeResponse)
async def revoke_refresh_tokens(
    request: Request,
    current_user: AppUser = Depends(get_current_user),
) -> RevokeResponse:
    """Invalidate every valid refresh token of the current user."""
    tokens: TokenService = request.app.state.tokens
    return RevokeResponse(revoked=tokens.revoke_refresh_tokens(current_user.email))


@limiter.limit(_settings.token_rate_limit)
@router.post("/auth/refresh", response_model=AccessTokenResponse)
async def redeem_refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a short-lived access token.

    The refresh token is consumed; a second use returns 401 token_revoked.
    """
    tokens: TokenService = request.app.state.tokens
    access_token = tokens.redeem_refresh_token(body.refresh_token)
    content = AccessTokenResponse(
        access_token=access_token,
        expires_in=get_settings().refresh_redeem_access_seconds,
    ).model_dump()
    return _no_store(JSONResponse(content=content))
