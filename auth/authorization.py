"""
auth/authorization.py -- The authorization orchestrator.

Turns an external identity (a ClaimsIdentity from an OAuth provider) into an
admitted AppUser, or rejects it. Short-circuits on the first matching path:

    START
      -> LOOKUP_USER
           found   -> EXISTING_USER_PATH (expiry checks, no re-provisioning)
           missing -> INVITE_LOOKUP
                        account invite     -> PROVISION (join existing account)
                        application invite -> PROVISION (new account, Administrator)
                        pre-authorization  -> PROVISION (new account, Administrator)
                        nothing            -> REJECTED (UnauthenticatedError)
      -> validation callback (optional)
      -> ENRICH_AND_LOG (last login, OAuth tokens, version bump, history row)
      -> DONE

Every rejection is an AuthorizationError subclass. Nothing here retries and
nothing turns an error into a success.

Concurrency:
  authorize() is a coroutine. The awaited validation callback is the only
  suspension point between the lookups and the final write, so task
  cancellation lands there: provisioning has either fully committed or not
  run at all. Store access is synchronous (SQLAlchemy Core).

Sessions:
  The web session stores only session_payload(user) = {"uid", "roles"}.
  rehydrate() re-reads the user on every request so role or expiry changes
  take effect without waiting for the session to expire.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Union

from auth.claims import ClaimsIdentity, ClaimTypes, serialize_user, to_principal
from auth.device import SEPARATOR, DeviceInfo
from auth.errors import AccountExpiredError, UnauthenticatedError
from auth.invitations import InvitationResolver
from auth.models import AppUser, AppUserLoginHistory, OAuthTokenInfo
from auth.provisioning import UserProvisioner
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth")

ValidationCallback = Callable[[AppUser, ClaimsIdentity], Union[None, Awaitable[None]]]


class AuthorizationService:
    """Admission, enrichment and session handling for authenticated identities.

    Usage:
        service = AuthorizationService(store)
        user = await service.authorize(identity, oauth_token=info, device_info=device)
        request.session["user"] = service.session_payload(user)
        ...
        user = service.rehydrate(request.session.get("user"))
    """

    def __init__(
        self,
        store: AuthStore,
        clock: Clock = utc_now,
        resolver: InvitationResolver | None = None,
        provisioner: UserProvisioner | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._resolver = resolver or InvitationResolver(store, clock)
        self._provisioner = provisioner or UserProvisioner(store, clock)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(
        self,
        identity: ClaimsIdentity | None,
        oauth_token: OAuthTokenInfo | None = None,
        device_info: DeviceInfo | str | None = None,
        validate: ValidationCallback | None = None,
    ) -> AppUser:
        """Admit identity and return the enriched principal.

        device_info may be a DeviceInfo, an "ip|os|browser" string, or the
        base64 JSON form. validate(user, identity) may be a plain function or
        a coroutine function; anything it raises propagates unchanged and no
        login is recorded.

        Raises:
            InvalidIdentityError: identity is None or has no usable email.
            AccountExpiredError: the account or the user is past its end date.
            UnauthenticatedError: no user, invitation or pre-authorization matched.
            InvalidInvitationError, NotFoundError: a matched invitation is broken.
            ConcurrencyConflictError: the user row changed during the login.
        """
        principal = to_principal(identity)
        device = _coerce_device(device_info)

        user = self._store.get_user_by_email(principal.email)
        if user is not None:
            self._check_active(user)
            logger.debug("Existing user %s (id=%s)", user.email, user.id)
            # Provider profile may have changed since the last login.
            user.display_name = principal.display_name or user.display_name
            user.profile_picture_url = principal.profile_picture_url or user.profile_picture_url
        else:
            user = self._admit(principal)

        if validate is not None:
            result = validate(user, identity)
            if inspect.isawaitable(result):
                await result

        self._record_login(user, oauth_token, device)
        self._enrich(identity, user)
        logger.info("Authorized %s (account=%s roles=%s)", user.email, user.account_id, user.role_names)
        return user

    def _admit(self, principal: AppUser) -> AppUser:
        # A principal rebuilt from AppUserJson may carry stale persisted state.
        principal.id = None
        principal.account = None
        principal.roles = []
        email = principal.email

        invite = self._resolver.find_account_invite(email)
        if invite is not None:
            return self._provisioner.provision_from_account_invite(invite, principal)

        app_invite = self._resolver.find_application_invite(email)
        if app_invite is not None:
            return self._provisioner.provision_from_application_invite(app_invite, principal)

        entry = self._resolver.find_pre_authorization(email)
        if entry is not None:
            return self._provisioner.provision_from_pre_authorization(entry, principal)

        logger.warning("Rejected login for %s: no user, invitation or pre-authorization", email)
        raise UnauthenticatedError(f"{email} is not authorized to use this application.")

    def _check_active(self, user: AppUser) -> None:
        now = self._clock()
        account = user.account
        if account is None:
            logger.warning("Rejected login for %s: account %s could not be loaded", user.email, user.account_id)
            raise AccountExpiredError(f"{user.email} has no active account.")
        if account.utc_expiration_date is not None and account.utc_expiration_date < now:
            logger.warning("Rejected login for %s: account %s expired", user.email, account.id)
            raise AccountExpiredError(f"The account for {user.email} expired on {account.utc_expiration_date:%Y-%m-%d}.")
        if user.utc_active_until is not None and user.utc_active_until < now:
            logger.warning("Rejected login for %s: user inactive since %s", user.email, user.utc_active_until)
            raise AccountExpiredError(f"{user.email} is no longer active.")

    def _record_login(self, user: AppUser, oauth_token: OAuthTokenInfo | None, device: DeviceInfo) -> None:
        now = self._clock()
        user.utc_last_login = now
        if oauth_token is not None:
            user.oauth_access_token = oauth_token.access_token
            user.oauth_refresh_token = oauth_token.refresh_token
            user.oauth_token_type = oauth_token.token_type
            user.oauth_token_utc_expires_at = oauth_token.utc_expires_at

        with self._store.transaction():
            self._store.update_user_login(user)
            self._store.add_login_history(
                AppUserLoginHistory(
                    email=user.email,
                    utc_login=now,
                    os=device.os,
                    browser=device.browser,
                    ip_address=device.ip_address,
                )
            )

    @staticmethod
    def _enrich(identity: ClaimsIdentity, user: AppUser) -> None:
        identity.replace(ClaimTypes.APP_USER_JSON, serialize_user(user))
        present = set(identity.get_all(ClaimTypes.ROLE))
        for name in user.role_names:
            if name not in present:
                identity.add(ClaimTypes.ROLE, name)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @staticmethod
    def session_payload(user: AppUser) -> dict[str, Any]:
        """The narrow dict stored in the signed session cookie."""
        return {"uid": user.id, "roles": user.role_names}

    def rehydrate(self, payload: dict[str, Any] | None) -> AppUser:
        """Re-read the session's user from the store.

        Raises:
            UnauthenticatedError: no payload, or the user no longer exists.
            AccountExpiredError: the account or user expired since login, or the
                account no longer loads.
        """
        if not payload or payload.get("uid") is None:
            raise UnauthenticatedError("Not authenticated.")
        user = self._store.get_user_by_id(payload["uid"])
        if user is None:
            logger.warning("Session refers to missing user id=%s", payload["uid"])
            raise UnauthenticatedError("Not authenticated.")
        self._check_active(user)
        return user

    def login_history(self, email: str) -> list[AppUserLoginHistory]:
        return self._store.get_login_history(email)


def _coerce_device(device_info: DeviceInfo | str | None) -> DeviceInfo:
    if device_info is None:
        return DeviceInfo.empty()
    if isinstance(device_info, DeviceInfo):
        return device_info
    if SEPARATOR in device_info:
        return DeviceInfo.from_delimited(device_info)
    return DeviceInfo.from_base64(device_info)
