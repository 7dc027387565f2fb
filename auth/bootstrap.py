"""
auth/bootstrap.py -- First-run seeding of a fresh store.

A brand-new database has no roles, no account types and nobody to log in.
initialize_defaults() creates the minimum needed for the owner to get in:

  - account type "Free"
  - roles Administrator, Owner, Member, Visitor (or a caller-supplied list)
  - an InviteToApplication for the owner, valid for five years

The owner then logs in through any OAuth provider, the application invite is
consumed, and they become Administrator of their own account.

Safe to call on every startup: it does nothing unless the store has no roles,
no account types and no account invites.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from auth.claims import is_valid_email, normalize_email
from auth.errors import InvalidArgumentError
from auth.models import AccountType, InviteToApplication, Role
from auth.provisioning import ADMINISTRATOR_ROLE
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.bootstrap")

DEFAULT_ACCOUNT_TYPE = "Free"
DEFAULT_ROLES: tuple[str, ...] = (ADMINISTRATOR_ROLE, "Owner", "Member", "Visitor")
OWNER_INVITE_DAYS = 5 * 365
SYSTEM_USER = "system"


def initialize_defaults(
    store: AuthStore,
    owner_email: str,
    roles: Sequence[str] | None = None,
    clock: Clock = utc_now,
) -> bool:
    """Seed the store if it is empty. Returns True if anything was created.

    Raises:
        InvalidArgumentError: owner_email is not a valid address.
    """
    owner = normalize_email(owner_email)
    if not is_valid_email(owner):
        raise InvalidArgumentError(f"Owner email {owner_email!r} is not a valid address.")

    if store.count_roles() or store.count_account_types() or store.count_account_invites():
        logger.info("Store already initialized; skipping defaults")
        return False

    names = list(roles) if roles else list(DEFAULT_ROLES)
    now = clock()
    with store.transaction():
        account_type = store.create_account_type(
            AccountType(name=DEFAULT_ACCOUNT_TYPE, created_by=SYSTEM_USER, updated_by=SYSTEM_USER, utc_created_on=now)
        )
        for name in names:
            store.create_role(Role(name=name, created_by=SYSTEM_USER, updated_by=SYSTEM_USER, utc_created_on=now))
        store.create_application_invite(
            InviteToApplication(
                email=owner,
                account_type_id=account_type.id,
                utc_expiration=now + timedelta(days=OWNER_INVITE_DAYS),
                created_by=SYSTEM_USER,
                updated_by=SYSTEM_USER,
                utc_created_on=now,
            )
        )
    logger.info("Initialized defaults: account type %s, roles %s, owner invite for %s", DEFAULT_ACCOUNT_TYPE, names, owner)
    return True
