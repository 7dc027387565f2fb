"""
auth/provisioning.py -- Create a user (and, where needed, an account) from an
invitation or pre-authorization.

Each provision_* method runs as one unit of work on the store. Write order
inside the unit is fixed:

    Account -> AppUser -> Role (only if missing) -> AppUserRole -> invite accepted

If any step raises, every write of the sequence is rolled back and the
exception propagates unchanged.

Races between concurrent first logins for the same email:
  - Account (unique owner) and Role (unique name) inserts run in a SAVEPOINT.
    On IntegrityError the savepoint is rolled back and the row that won the
    race is fetched and used instead.
  - The AppUser insert is not recovered; the loser sees IntegrityError.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidInvitationError, NotFoundError
from auth.models import (
    Account,
    AppUser,
    AppUserRole,
    InviteToAccount,
    InviteToApplication,
    PreAuthorizedAppUser,
    Role,
)
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.provisioning")

ADMINISTRATOR_ROLE = "Administrator"


class UserProvisioner:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def provision_from_account_invite(self, invite: InviteToAccount, principal: AppUser) -> AppUser:
        """Admit principal into the invite's existing account with the invite's role.

        Raises:
            InvalidInvitationError: the invite's account or role is missing.
        """
        if invite.account is None or invite.role is None:
            logger.error("Account invite %s for %s has no account or role", invite.id, invite.email)
            raise InvalidInvitationError(f"Invitation for {invite.email} is missing its account or role.")

        with self._store.transaction():
            principal.account_id = invite.account_id
            self._create_user(principal)
            self._link_role(principal, invite.role)
            self._store.mark_account_invite_accepted(invite, principal.email)

        principal.account = invite.account
        principal.roles = [invite.role]
        logger.info("Provisioned %s into account %s as %s", principal.email, invite.account_id, invite.role.name)
        return principal

    def provision_from_application_invite(self, invite: InviteToApplication, principal: AppUser) -> AppUser:
        """Give principal a brand-new account and make them its Administrator.

        Raises:
            NotFoundError: the invite's account type does not exist.
        """
        with self._store.transaction():
            self._provision_new_account(invite.account_type_id, principal)
            self._store.mark_application_invite_accepted(invite, principal.email)
        return principal

    def provision_from_pre_authorization(self, entry: PreAuthorizedAppUser, principal: AppUser) -> AppUser:
        """Same as the application-invite path, using the allow-list entry's account type."""
        with self._store.transaction():
            self._provision_new_account(entry.account_type_id, principal)
        return principal

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _provision_new_account(self, account_type_id: int, principal: AppUser) -> None:
        account_type = self._store.get_account_type(account_type_id)
        if account_type is None:
            logger.error("Account type %s not found while provisioning %s", account_type_id, principal.email)
            raise NotFoundError(f"Account type {account_type_id} does not exist.")

        account = self._ensure_account(principal.email, account_type.id)
        account.account_type = account_type
        principal.account_id = account.id
        self._create_user(principal)
        role = self._ensure_role(ADMINISTRATOR_ROLE, principal.email)
        self._link_role(principal, role)

        principal.account = account
        principal.roles = [role]
        logger.info("Provisioned %s as %s of new account %s", principal.email, ADMINISTRATOR_ROLE, account.id)

    def _create_user(self, principal: AppUser) -> None:
        now = self._clock()
        principal.created_by = principal.updated_by = principal.email
        principal.utc_created_on = principal.utc_updated_on = now
        principal.version = 1
        self._store.create_user(principal)

    def _link_role(self, user: AppUser, role: Role) -> None:
        now = self._clock()
        self._store.add_user_role(
            AppUserRole(
                user_id=user.id,
                role_id=role.id,
                created_by=user.email,
                updated_by=user.email,
                utc_created_on=now,
                utc_updated_on=now,
            )
        )

    def _ensure_account(self, owner: str, account_type_id: int) -> Account:
        now = self._clock()
        account = Account(
            owner=owner,
            name=owner,
            account_type_id=account_type_id,
            created_by=owner,
            updated_by=owner,
            utc_created_on=now,
            utc_updated_on=now,
        )
        try:
            with self._store.transaction():
                return self._store.create_account(account)
        except IntegrityError:
            existing = self._store.get_account_by_owner(owner)
            if existing is None:
                raise
            logger.info("Account for %s was created concurrently; using account %s", owner, existing.id)
            return existing

    def _ensure_role(self, name: str, created_by: str) -> Role:
        role = self._store.get_role_by_name(name)
        if role is not None:
            return role
        now = self._clock()
        try:
            with self._store.transaction():
                role = self._store.create_role(
                    Role(
                        name=name,
                        created_by=created_by,
                        updated_by=created_by,
                        utc_created_on=now,
                        utc_updated_on=now,
                    )
                )
        except IntegrityError:
            role = self._store.get_role_by_name(name)
            if role is None:
                raise
            logger.info("Role %s was created concurrently; using role %s", name, role.id)
            return role
        logger.info("Created missing role %s", name)
        return role
