"""
auth/invitations.py -- Read-only lookups for the three admission paths.

A user with no existing row may still be admitted if their email matches, in
order of precedence:
  1. an InviteToAccount     (join an existing tenant with a given role)
  2. an InviteToApplication (get a new tenant of their own)
  3. a PreAuthorizedAppUser (allow-listed for a new tenant)

A miss is ordinary control flow ("try the next path"), so it is logged at
INFO and reported as None. Invitations that were already accepted, or whose
utc_expiration has passed, count as a miss.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.claims import normalize_email
from auth.models import InviteToAccount, InviteToApplication, PreAuthorizedAppUser
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.invitations")


class InvitationResolver:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def _usable(self, invite, kind: str, email: str) -> bool:
        if invite is None:
            logger.info("No %s invite for %s", kind, email)
            return False
        if invite.utc_accepted is not None:
            logger.info("%s invite for %s was already accepted", kind.capitalize(), email)
            return False
        if invite.utc_expiration < self._clock():
            logger.info("%s invite for %s expired at %s", kind.capitalize(), email, invite.utc_expiration)
            return False
        return True

    def find_account_invite(self, email: str) -> InviteToAccount | None:
        """Pending account invite for email, with account and role attached."""
        email = normalize_email(email)
        invite = self._store.get_account_invite_by_email(email)
        return invite if self._usable(invite, "account", email) else None

    def find_application_invite(self, email: str) -> InviteToApplication | None:
        """Pending application invite for email, with account type attached."""
        email = normalize_email(email)
        invite = self._store.get_application_invite_by_email(email)
        return invite if self._usable(invite, "application", email) else None

    def find_pre_authorization(self, email: str) -> PreAuthorizedAppUser | None:
        email = normalize_email(email)
        entry = self._store.get_pre_authorization_by_email(email)
        if entry is None:
            logger.info("No pre-authorization for %s", email)
        return entry
