"""
auth/models.py -- Domain dataclasses for identity, tenancy, and token entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, provisioner, and services do the work.

Conventions shared by every persisted entity:
  - id is None until the store assigns one.
  - Audit fields (created_by / updated_by / utc_created_on / utc_updated_on)
    are stamped by the code that writes the row, never by the database.
  - version is the optimistic-concurrency token. It starts at 1 and the store
    only accepts an update whose expected version matches the row.
  - All datetimes are timezone-aware UTC.

Relationship shape: a user belongs to exactly one Account (account_id foreign
key). There is no many-to-many membership table.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass
class AccountType:
    """Named tier an account is billed under (e.g. "Free")."""

    name: str
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1


@dataclass
class Account:
    """A tenant. Exactly one account exists per distinct owner email."""

    owner: str
    account_type_id: int
    name: str | None = None
    id: int | None = None
    utc_expiration_date: datetime | None = None  # None = never expires
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    account_type: AccountType | None = None  # navigation, not persisted


@dataclass
class Role:
    """Named permission grouping (Administrator, Owner, Member, Visitor...)."""

    name: str
    description: str | None = None
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1


@dataclass
class AppUser:
    """The principal: an external identity admitted into one account.

    email is unique system-wide and always stored lower-case. provider_key +
    provider_type identify the external account (OAuth "sub" + provider name)
    but are not unique on their own.

    The oauth_* fields hold the provider's token response from the most recent
    login so the host application can call provider APIs on the user's behalf.

    account and roles are navigation fields filled in by the store on reads;
    they are never written back.
    """

    email: str
    provider_key: str | None = None
    provider_type: str | None = None
    display_name: str | None = None
    profile_picture_url: str | None = None
    id: int | None = None
    account_id: int | None = None
    utc_active_until: datetime | None = None  # None = no user-level expiry
    utc_last_login: datetime | None = None
    timezone: str | None = None
    metadata: str | None = None  # JSON blob owned by the host application
    oauth_access_token: str | None = None
    oauth_refresh_token: str | None = None
    oauth_token_type: str | None = None
    oauth_token_utc_expires_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    account: Account | None = None
    roles: list[Role] = field(default_factory=list)

    @property
    def role_names(self) -> list[str]:
        return [r.name for r in self.roles]

    def display_name_initials(self) -> str:
        """Two-letter initials for avatars: first letters of the first two words.

        A single-word name yields its first two letters. Empty when there is
        no display name.
        """
        words = (self.display_name or "").split()
        if not words:
            return ""
        if len(words) == 1:
            return words[0][:2].upper()
        return "".join(w[0] for w in words[:2]).upper()


@dataclass
class AppUserRole:
    """Join row linking a user to one role."""

    user_id: int
    role_id: int
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1


@dataclass
class InviteToAccount:
    """Pending grant of a role inside an existing account.

    Consumed the first time the invited email authorizes; consumption stamps
    utc_accepted rather than deleting the row.
    """

    email: str
    account_id: int
    role_id: int
    utc_expiration: datetime
    id: int | None = None
    utc_accepted: datetime | None = None
    utc_rejected: datetime | None = None
    rejected_reason: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    account: Account | None = None
    role: Role | None = None


@dataclass
class InviteToApplication:
    """Pending application-level grant. Consumption creates a new account
    owned by the invitee, who becomes its Administrator."""

    email: str
    account_type_id: int
    utc_expiration: datetime
    id: int | None = None
    utc_accepted: datetime | None = None
    utc_rejected: datetime | None = None
    rejected_reason: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    account_type: AccountType | None = None


@dataclass
class PreAuthorizedAppUser:
    """Allow-list entry: the email may self-provision an admin account."""

    email: str
    account_type_id: int
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    account_type: AccountType | None = None


@dataclass
class AppUserLoginHistory:
    """Append-only audit row, one per successful authorization."""

    email: str
    utc_login: datetime
    os: str = "Unknown"
    browser: str = "Unknown"
    ip_address: str = "Unknown"
    id: int | None = None


@dataclass
class RefreshToken:
    """Opaque, single-use credential that mints a fresh access token.

    Security design:
    - token is the raw random string. It is populated ONLY on the object
      returned from creation; the store persists token_hash
      (HMAC-SHA256(SECRET_KEY, token)) and never the raw value.
    - Expiry lives only in this row (utc_expires_on); the token string has no
      embedded structure.
    - is_valid flips to False exactly once, when the token is redeemed or
      revoked.
    """

    user_id: int
    token_hash: str
    duration_seconds: int
    utc_expires_on: datetime
    is_valid: bool = True
    token: str | None = None
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1
    user: AppUser | None = None


@dataclass
class OAuthTokenInfo:
    """The provider's token response from the authorization-code exchange."""

    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    utc_expires_at: datetime | None = None


@dataclass
class AppConnection:
    """A user's standing grant to call a provider API on the account's behalf.

    Distinct from login: the user consents to extra scopes (offline access,
    calendar, mail...) and the resulting tokens are kept here and refreshed
    later. One row per (provider_name, owner_email).

    duration_seconds None means the provider issued a token with no expiry
    (GitHub OAuth apps do this).
    """

    provider_name: str
    owner_email: str
    account_id: int
    access_token: str
    utc_issued_on: datetime
    duration_seconds: int | None = None
    connection_email: str | None = None  # the provider-side identity, may differ from owner_email
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None
    token_id: str | None = None  # raw id_token when the provider sent one
    id: int | None = None
    created_by: str | None = None
    updated_by: str | None = None
    utc_created_on: datetime | None = None
    utc_updated_on: datetime | None = None
    version: int = 1

    @property
    def utc_expires_on(self) -> datetime | None:
        if self.duration_seconds is None:
            return None
        return self.utc_issued_on + timedelta(seconds=self.duration_seconds)

    def has_expired(self, now: datetime) -> bool:
        expires = self.utc_expires_on
        return expires is not None and expires <= now
