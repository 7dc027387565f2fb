"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two auth methods are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients using access tokens.
  2. Signed session cookie -- set by the OAuth callback. Holds only
     {"uid", "roles"}; the user is re-read from the store on every request.

Both methods converge on AuthorizationService.rehydrate(), so an account that
expired or a user that was deleted after the token or session was issued is
rejected straight away.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_role(name) wraps get_current_user() and raises HTTP 403 if the user
lacks the role; require_admin is require_role("Administrator").

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because this module is part of the FastAPI dependency
injection system. It still does not import from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthorizationError
from auth.models import AppUser
from auth.provisioning import ADMINISTRATOR_ROLE

logger = logging.getLogger("tenantgate.auth")

SESSION_KEY = "user"


def try_get_current_user(request: Request) -> AppUser | None:
    """Authenticate the request via Bearer token or session.

    Returns the AppUser on success, None on any failure. Never raises --
    callers that need a hard 401 should use get_current_user().
    """
    service = request.app.state.authorization
    tokens = request.app.state.tokens

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = tokens.decode_access_token(auth_header[7:])
        if payload is None:
            return None
        try:
            return service.rehydrate({"uid": int(payload["sub"])})
        except (AuthorizationError, ValueError) as exc:
            logger.info("Bearer token rejected: %s", exc)
            return None

    session = request.session.get(SESSION_KEY)
    if session:
        try:
            return service.rehydrate(session)
        except AuthorizationError as exc:
            logger.info("Session rejected: %s", exc)
            request.session.pop(SESSION_KEY, None)
    return None


def get_current_user(request: Request) -> AppUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: AppUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Authentication required."},
        )
    return user


def require_role(role: str) -> Callable[[Request], AppUser]:
    """Build a dependency that requires the current user to hold role."""

    def dependency(request: Request) -> AppUser:
        user = get_current_user(request)
        if role not in user.role_names:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{role} role required."},
            )
        return user

    return dependency


require_admin = require_role(ADMINISTRATOR_ROLE)
