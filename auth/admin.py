"""
auth/admin.py -- Administrative writes: invitations, allow-list, role grants.

These are the out-of-band operations that feed the admission paths in
auth/authorization.py. Both the admin API routes and the CLI call them.

Tenant scope:
  Methods that touch an existing account take acting_account_id. The API
  passes the calling administrator's account id, and any target outside that
  account raises ForbiddenError. The CLI passes None and acts system-wide.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.claims import is_valid_email, normalize_email
from auth.errors import ForbiddenError, InvalidArgumentError, NotFoundError
from auth.models import (
    AccountType,
    AppUserRole,
    InviteToAccount,
    InviteToApplication,
    PreAuthorizedAppUser,
    Role,
)
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.admin")

DEFAULT_INVITE_DAYS = 14


class AdminService:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def _check_new_email(self, email: str) -> str:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise InvalidArgumentError(f"{email!r} is not a valid email address.")
        if self._store.count_users(email):
            raise InvalidArgumentError(f"{email} already has an account.")
        return email

    def _role(self, name: str) -> Role:
        role = self._store.get_role_by_name(name)
        if role is None:
            raise NotFoundError(f"Role {name!r} does not exist.")
        return role

    def _account_type(self, name: str) -> AccountType:
        account_type = self._store.get_account_type_by_name(name)
        if account_type is None:
            raise NotFoundError(f"Account type {name!r} does not exist.")
        return account_type

    @staticmethod
    def _check_scope(account_id: int | None, acting_account_id: int | None, actor: str) -> None:
        if acting_account_id is not None and account_id != acting_account_id:
            logger.warning("%s denied: account %s is outside their account %s", actor, account_id, acting_account_id)
            raise ForbiddenError("Administrators can only manage their own account.")

    @staticmethod
    def _check_days(days: int) -> None:
        if days <= 0:
            raise InvalidArgumentError("Invitation lifetime must be at least one day.")

    # ------------------------------------------------------------------

    def invite_to_account(
        self,
        email: str,
        account_owner: str,
        role_name: str,
        created_by: str,
        days: int = DEFAULT_INVITE_DAYS,
        acting_account_id: int | None = None,
    ) -> InviteToAccount:
        """Invite email into the account owned by account_owner with role_name.

        Raises:
            InvalidArgumentError: bad email, existing user, existing invite, or days <= 0.
            NotFoundError: no such account or role.
            ForbiddenError: the account is not acting_account_id.
        """
        email = self._check_new_email(email)
        self._check_days(days)
        account = self._store.get_account_by_owner(account_owner)
        if account is None:
            raise NotFoundError(f"No account is owned by {account_owner!r}.")
        self._check_scope(account.id, acting_account_id, created_by)
        role = self._role(role_name)
        if self._store.get_account_invite_by_email(email) is not None:
            raise InvalidArgumentError(f"{email} already has an account invitation.")

        now = self._clock()
        invite = self._store.create_account_invite(
            InviteToAccount(
                email=email,
                account_id=account.id,
                role_id=role.id,
                utc_expiration=now + timedelta(days=days),
                created_by=created_by,
                updated_by=created_by,
                utc_created_on=now,
            )
        )
        invite.account = account
        invite.role = role
        logger.info("%s invited %s to account %s as %s", created_by, email, account.id, role.name)
        return invite

    def invite_to_application(
        self,
        email: str,
        created_by: str,
        account_type_name: str = "Free",
        days: int = DEFAULT_INVITE_DAYS,
    ) -> InviteToApplication:
        """Invite email to create an account of their own.

        Raises:
            InvalidArgumentError: bad email, existing user, existing invite, or days <= 0.
            NotFoundError: no such account type.
        """
        email = self._check_new_email(email)
        self._check_days(days)
        account_type = self._account_type(account_type_name)
        if self._store.get_application_invite_by_email(email) is not None:
            raise InvalidArgumentError(f"{email} already has an application invitation.")

        now = self._clock()
        invite = self._store.create_application_invite(
            InviteToApplication(
                email=email,
                account_type_id=account_type.id,
                utc_expiration=now + timedelta(days=days),
                created_by=created_by,
                updated_by=created_by,
                utc_created_on=now,
            )
        )
        invite.account_type = account_type
        logger.info("%s invited %s to the application (%s)", created_by, email, account_type.name)
        return invite

    def pre_authorize(self, email: str, created_by: str, account_type_name: str = "Free") -> PreAuthorizedAppUser:
        email = self._check_new_email(email)
        account_type = self._account_type(account_type_name)
        if self._store.get_pre_authorization_by_email(email) is not None:
            raise InvalidArgumentError(f"{email} is already pre-authorized.")
        entry = self._store.create_pre_authorization(
            PreAuthorizedAppUser(
                email=email,
                account_type_id=account_type.id,
                created_by=created_by,
                updated_by=created_by,
                utc_created_on=self._clock(),
            )
        )
        entry.account_type = account_type
        logger.info("%s pre-authorized %s (%s)", created_by, email, account_type.name)
        return entry

    # ------------------------------------------------------------------
    # Role grants
    # ------------------------------------------------------------------

    def grant_role(
        self, email: str, role_name: str, granted_by: str, acting_account_id: int | None = None
    ) -> list[str]:
        """Give a user a role. Granting a role they already hold is a no-op.

        Returns the user's role names afterwards.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with email {email!r}.")
        self._check_scope(user.account_id, acting_account_id, granted_by)
        role = self._role(role_name)
        if role.name not in user.role_names:
            now = self._clock()
            self._store.add_user_role(
                AppUserRole(
                    user_id=user.id,
                    role_id=role.id,
                    created_by=granted_by,
                    updated_by=granted_by,
                    utc_created_on=now,
                )
            )
            logger.info("%s granted %s to %s", granted_by, role.name, user.email)
        return [r.name for r in self._store.get_user_roles(user.id)]

    def revoke_role(
        self, email: str, role_name: str, revoked_by: str, acting_account_id: int | None = None
    ) -> list[str]:
        """Take a role away from a user. Returns the user's role names afterwards.

        Raises:
            NotFoundError: no such user or role, or the user does not hold it.
            ForbiddenError: the user belongs to an account other than acting_account_id.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with email {email!r}.")
        self._check_scope(user.account_id, acting_account_id, revoked_by)
        role = self._role(role_name)
        if not self._store.remove_user_role(user.id, role.id):
            raise NotFoundError(f"{user.email} does not hold the {role.name} role.")
        logger.info("%s revoked %s from %s", revoked_by, role.name, user.email)
        return [r.name for r in self._store.get_user_roles(user.id)]
