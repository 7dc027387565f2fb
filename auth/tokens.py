"""
auth/tokens.py -- Access-token issuance and the refresh-token lifecycle.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry sub (stable user id), email, name, provider, roles (one entry per
       role), iss, aud, iat and exp. Issuing an access token never writes to
       the store. decode_access_token() returns None on any failure -- the
       route layer turns that into a 401.

  Refresh tokens: 32 bytes from secrets.token_bytes(), standard base64. The
       token is pure randomness with no embedded structure; expiry lives only
       in the store row. We store HMAC-SHA256(SECRET_KEY, raw_token) so lookup
       is O(1) and a leaked database does not yield usable tokens. The raw
       value exists only on the RefreshToken returned from creation.

  Single-use rotation: a redeemed refresh token is invalidated with a
       version-checked update. Two concurrent redeemers may both pass the
       validity check, but only one update matches the expected version; the
       other fails with TokenRevokedError.

  Cap: at most max_active_refresh_tokens valid tokens per user. This is a hard
       cap with no eviction -- the caller revokes old tokens to make room. The
       count and the insert are separate statements, so parallel creates can
       briefly overshoot.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import (
    ConcurrencyConflictError,
    InvalidArgumentError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
    TooManyActiveTokensError,
)
from auth.models import AppUser, RefreshToken
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.tokens")

_ALGORITHM = "HS256"
_REFRESH_TOKEN_BYTES = 32


# ---------------------------------------------------------------------------
# Refresh token generation and hashing
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return 32 CSPRNG bytes as a standard base64 string (44 characters)."""
    return base64.b64encode(secrets.token_bytes(_REFRESH_TOKEN_BYTES)).decode("ascii")


def hash_refresh_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string.

    Deterministic, so the store can look tokens up by hash.
    """
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Mints access tokens and manages refresh tokens for a single store.

    Usage:
        tokens = TokenService(store, settings.secret_key)
        jwt_str = tokens.issue_access_token(user, 1800)
        refresh = tokens.create_refresh_token(user.email, 14 * 24 * 3600)
        ...
        jwt_str = tokens.redeem_refresh_token(refresh.token)
    """

    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        issuer: str = "tenantgate",
        audience: str = "tenantgate",
        max_active_refresh_tokens: int = 10,
        redeem_access_seconds: int = 900,
        clock: Clock = utc_now,
    ) -> None:
        if not secret_key:
            raise InvalidArgumentError("A signing secret is required.")
        self._store = store
        self._secret_key = secret_key
        self._issuer = issuer
        self._audience = audience
        self._max_active = max_active_refresh_tokens
        self._redeem_seconds = redeem_access_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user: AppUser | None, duration_seconds: int) -> str:
        """Encode a signed JWT for user, valid for duration_seconds.

        Raises:
            InvalidArgumentError: duration_seconds <= 0, or user is None or unsaved.
        """
        if duration_seconds is None or duration_seconds <= 0:
            raise InvalidArgumentError("Token duration must be a positive number of seconds.")
        if user is None or user.id is None:
            raise InvalidArgumentError("A persisted user is required to issue a token.")

        now = self._clock()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "name": user.display_name or user.email,
            "provider": user.provider_type,
            "roles": user.role_names,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + timedelta(seconds=duration_seconds),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def issue_access_token_for_email(self, email: str, duration_seconds: int) -> str:
        """Resolve the user (with roles) by email, then issue_access_token().

        Raises:
            NotFoundError: no user has this email.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with email {email!r}.")
        return self.issue_access_token(user, duration_seconds)

    def decode_access_token(self, token: str) -> dict | None:
        """Verify signature, issuer, audience and expiry. None on any failure.

        Expiry is checked against the injected clock rather than the wall
        clock, so frozen-time tests behave the same as production.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or "sub" not in payload:
            return None
        if datetime.fromtimestamp(exp, tz=timezone.utc) <= self._clock():
            return None
        return payload

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, email: str, duration_seconds: int) -> RefreshToken:
        """Create a new refresh token for the user with this email.

        The returned object carries the raw token in .token. It is the only
        time the raw value is available.

        Raises:
            NotFoundError: no user has this email.
            InvalidArgumentError: duration_seconds <= 0.
            TooManyActiveTokensError: the user already holds the maximum.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with email {email!r}.")
        if duration_seconds is None or duration_seconds <= 0:
            raise InvalidArgumentError("Refresh token duration must be a positive number of seconds.")

        active = self._store.count_valid_refresh_tokens(user.id)
        if active >= self._max_active:
            logger.warning("Refresh token cap reached for %s (%d active)", user.email, active)
            raise TooManyActiveTokensError(
                f"{user.email} already has {active} active refresh tokens; revoke some before creating more."
            )

        raw = generate_refresh_token()
        now = self._clock()
        token = RefreshToken(
            user_id=user.id,
            token_hash=hash_refresh_token(raw, self._secret_key),
            duration_seconds=duration_seconds,
            utc_expires_on=now + timedelta(seconds=duration_seconds),
            is_valid=True,
            created_by=user.email,
            updated_by=user.email,
            utc_created_on=now,
            utc_updated_on=now,
            version=1,
        )
        self._store.create_refresh_token(token)
        token.token = raw
        token.user = user
        logger.info("Created refresh token %s for %s", token.id, user.email)
        return token

    def redeem_refresh_token(self, raw_token: str) -> str:
        """Exchange a refresh token for a short-lived access token.

        The refresh token is consumed: a second redemption fails. Only the
        access token is returned; call create_refresh_token() for a new one.

        Raises:
            InvalidArgumentError: raw_token is empty.
            NotFoundError: unknown token, or its user no longer exists.
            TokenRevokedError: already used or revoked, or lost a concurrent redeem.
            TokenExpiredError: past utc_expires_on.
        """
        if not raw_token:
            raise InvalidArgumentError("A refresh token is required.")

        stored = self._store.get_refresh_token_by_hash(hash_refresh_token(raw_token, self._secret_key))
        if stored is None:
            logger.warning("Refresh token not found")
            raise NotFoundError("Refresh token not found.")
        if not stored.is_valid:
            logger.warning("Revoked refresh token %s presented", stored.id)
            raise TokenRevokedError("Refresh token has already been used or revoked.")
        if stored.utc_expires_on < self._clock():
            logger.warning("Expired refresh token %s presented", stored.id)
            raise TokenExpiredError("Refresh token has expired.")

        # Roles may have changed since the refresh token was created.
        user = self._store.get_user_by_id(stored.user_id)
        if user is None:
            raise NotFoundError("The refresh token's user no longer exists.")
        access_token = self.issue_access_token(user, self._redeem_seconds)

        try:
            self._store.invalidate_refresh_token(stored, updated_by=user.email)
        except ConcurrencyConflictError as exc:
            logger.warning("Refresh token %s was redeemed concurrently", stored.id)
            raise TokenRevokedError("Refresh token has already been used or revoked.") from exc

        logger.info("Redeemed refresh token %s for %s", stored.id, user.email)
        return access_token

    def revoke_refresh_tokens(self, email: str) -> int:
        """Invalidate every valid refresh token of a user. Returns the count.

        Raises:
            NotFoundError: no user has this email.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with email {email!r}.")
        revoked = self._store.invalidate_user_refresh_tokens(user.id, updated_by=user.email)
        logger.info("Revoked %d refresh tokens for %s", revoked, user.email)
        return revoked
