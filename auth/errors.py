"""
auth/errors.py -- Failure taxonomy for authorization and token lifecycle.

Every failure the auth layer raises is an AuthorizationError. Subclasses name
the reason; `code` is the stable machine-readable string the API layer puts in
its {"error": {"code", "message"}} body. Nothing in auth/ converts one of these
into a successful result, and nothing retries -- the caller decides.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthorizationError(Exception):
    """Base class for all auth failures. Carries a human-readable reason."""

    code = "authorization_failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidIdentityError(AuthorizationError):
    """Missing or malformed identity, or no usable email claim."""

    code = "invalid_identity"


class InvalidArgumentError(AuthorizationError):
    """A required parameter is missing or out of range (e.g. duration <= 0)."""

    code = "invalid_argument"


class NotFoundError(AuthorizationError):
    """A referenced user, role, account type, or refresh token does not exist."""

    code = "not_found"


class InvalidInvitationError(AuthorizationError):
    """An invitation row is missing its Account or Role linkage."""

    code = "invalid_invitation"


class AccountExpiredError(AuthorizationError):
    """The account is missing, or its expiration or the user's active-until date has passed."""

    code = "account_expired"


class TokenRevokedError(AuthorizationError):
    """A refresh token was presented after it had been used or revoked."""

    code = "token_revoked"


class TokenExpiredError(AuthorizationError):
    """A refresh token was presented after its expiry."""

    code = "token_expired"


class TooManyActiveTokensError(AuthorizationError):
    """The user already holds the maximum number of valid refresh tokens."""

    code = "too_many_active_tokens"


class UnauthenticatedError(AuthorizationError):
    """No existing user, invitation, or pre-authorization matched the email."""

    code = "unauthenticated"


class ConcurrencyConflictError(AuthorizationError):
    """An update lost an optimistic-concurrency race (version mismatch).

    Retryable from the caller's point of view: re-read the row and try again.
    """

    code = "concurrency_conflict"


class ForbiddenError(AuthorizationError):
    """The caller is authenticated but may not act on another account's data."""

    code = "forbidden"
