"""
auth/claims.py -- Claims bag and the identity-claims adapter.

A ClaimsIdentity is what the OAuth layer hands us: an ordered bag of
(type, value) string pairs plus the name of the scheme that produced it.
to_principal() turns that bag into an AppUser without touching the store.

Round-trip claim:
  After a successful authorization the orchestrator writes the whole resolved
  principal back into the bag under APP_USER_JSON. to_principal() short-
  circuits on that claim so later steps in the same flow do not re-query.
  The HTTP session never carries this blob -- see
  AuthorizationService.session_payload().

Email normalization:
  Emails are stripped and lower-cased here, at the boundary, so every store
  lookup downstream compares like with like.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import asdict, fields
from datetime import datetime
from typing import Any

from auth.errors import InvalidIdentityError
from auth.models import Account, AppUser, Role


class ClaimTypes:
    """Conventional claim keys read and written by the auth layer."""

    EMAIL = "email"
    NAME = "name"
    NAME_IDENTIFIER = "nameidentifier"
    PICTURE = "picture"
    ROLE = "role"
    PROVIDER_TYPE = "AppUserProviderType"
    APP_USER_JSON = "AppUserJson"


# Deliberately loose: one "@", no whitespace, a dot in the domain part.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ClaimsIdentity:
    """Ordered bag of (type, value) claims.

    Multiple claims may share a type (e.g. one "role" claim per role); get()
    returns the first.
    """

    def __init__(self, claims: Iterable[tuple[str, str]] = (), authentication_type: str | None = None) -> None:
        self.claims: list[tuple[str, str]] = [(t, v) for t, v in claims]
        self.authentication_type = authentication_type

    def get(self, claim_type: str) -> str | None:
        for t, v in self.claims:
            if t == claim_type:
                return v
        return None

    def get_all(self, claim_type: str) -> list[str]:
        return [v for t, v in self.claims if t == claim_type]

    def has(self, claim_type: str) -> bool:
        return any(t == claim_type for t, _ in self.claims)

    def add(self, claim_type: str, value: str) -> None:
        self.claims.append((claim_type, value))

    def replace(self, claim_type: str, value: str) -> None:
        """Drop every claim of claim_type, then add a single one."""
        self.claims = [(t, v) for t, v in self.claims if t != claim_type]
        self.claims.append((claim_type, value))

    def __repr__(self) -> str:
        return f"ClaimsIdentity(authentication_type={self.authentication_type!r}, claims={len(self.claims)})"


def normalize_email(email: str | None) -> str:
    """Strip and lower-case an email. None becomes ""."""
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def to_principal(identity: ClaimsIdentity | None) -> AppUser:
    """Convert a claims bag into an AppUser.

    Returns the deserialized principal as-is when an AppUserJson claim is
    present. Otherwise builds a fresh, unsaved AppUser from the conventional
    claims.

    Raises:
        InvalidIdentityError: identity is None, or the email is empty or
            malformed.
    """
    if identity is None:
        raise InvalidIdentityError("Identity is required.")

    blob = identity.get(ClaimTypes.APP_USER_JSON)
    if blob:
        return deserialize_user(blob)

    email = normalize_email(identity.get(ClaimTypes.EMAIL))
    if not email:
        raise InvalidIdentityError("Email is required and was not found on the identity.")
    if not is_valid_email(email):
        raise InvalidIdentityError(f"Email {email!r} is not a valid address.")

    return AppUser(
        email=email,
        provider_type=identity.get(ClaimTypes.PROVIDER_TYPE) or identity.authentication_type,
        provider_key=identity.get(ClaimTypes.NAME_IDENTIFIER),
        display_name=identity.get(ClaimTypes.NAME),
        profile_picture_url=identity.get(ClaimTypes.PICTURE),
    )


def principal_claims(user: AppUser) -> list[tuple[str, str]]:
    """Claims describing a resolved user: identity fields plus one role claim per role."""
    claims: list[tuple[str, str]] = [(ClaimTypes.EMAIL, user.email)]
    if user.id is not None:
        claims.append((ClaimTypes.NAME_IDENTIFIER, str(user.id)))
    if user.display_name:
        claims.append((ClaimTypes.NAME, user.display_name))
    if user.provider_type:
        claims.append((ClaimTypes.PROVIDER_TYPE, user.provider_type))
    claims.extend((ClaimTypes.ROLE, name) for name in user.role_names)
    return claims


# ---------------------------------------------------------------------------
# AppUserJson serialization
# ---------------------------------------------------------------------------


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode_into(cls, data: dict | None):
    """Rebuild a flat dataclass, parsing ISO timestamps for datetime fields."""
    if data is None:
        return None
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if isinstance(value, str) and "utc_" in f.name:
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def serialize_user(user: AppUser) -> str:
    """Serialize a principal (including account and roles) to JSON.

    account.account_type is dropped to keep the blob small; it is never read
    back through the claims path.
    """
    data = asdict(user)
    if data.get("account") is not None:
        data["account"].pop("account_type", None)
    return json.dumps(_encode(data))


def deserialize_user(blob: str) -> AppUser:
    """Inverse of serialize_user(). Raises InvalidIdentityError on a corrupt blob."""
    try:
        data = json.loads(blob)
    except ValueError as exc:
        raise InvalidIdentityError("AppUserJson claim is not valid JSON.") from exc
    if not isinstance(data, dict) or not data.get("email"):
        raise InvalidIdentityError("AppUserJson claim does not describe a user.")

    account = data.pop("account", None)
    roles = data.pop("roles", None) or []
    user = _decode_into(AppUser, data)
    user.account = _decode_into(Account, account)
    user.roles = [_decode_into(Role, r) for r in roles]
    return user
