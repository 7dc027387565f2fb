"""
auth/connections.py -- Stored provider connections (consent, persist, refresh).

Login only proves who someone is. A connection is the second, optional OAuth
round trip where a signed-in user consents to extra provider scopes so the
host application can call that provider later, for example a calendar or
mailbox API. The tokens from that exchange are kept as an AppConnection,
one per (provider, owner email), and refreshed with the provider's
refresh_token grant when they run out.

Connections belong to an account. Every lookup or change made on behalf of
an HTTP caller passes acting_account_id, and a connection in any other
account raises ForbiddenError.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from auth.errors import ForbiddenError, InvalidArgumentError, NotFoundError
from auth.models import AppConnection, AppUser
from auth.oauth import oauth_token_info
from auth.store import AuthStore
from core.clock import Clock, utc_now

logger = logging.getLogger("tenantgate.auth.connections")


class ConnectionService:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Building and saving
    # ------------------------------------------------------------------

    def connection_from_token(
        self, token: dict, provider_name: str, user: AppUser, scope: str | None = None
    ) -> AppConnection:
        """Build an unsaved AppConnection from a code-exchange token response.

        The provider's granted scope wins over the requested one. An id_token,
        when present, is kept as token_id.

        Raises:
            InvalidArgumentError: the response carries no access token, or the
                user has no account.
        """
        if not token.get("access_token"):
            raise InvalidArgumentError(f"{provider_name} returned no access token.")
        if user.account_id is None:
            raise InvalidArgumentError(f"{user.email} has no account to attach the connection to.")
        now = self._clock()
        userinfo = token.get("userinfo") or {}
        return AppConnection(
            provider_name=provider_name,
            owner_email=user.email,
            account_id=user.account_id,
            connection_email=userinfo.get("email"),
            utc_issued_on=now,
            duration_seconds=_duration(token, now),
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            scope=token.get("scope") or scope,
            token_type=token.get("token_type"),
            token_id=token.get("id_token"),
        )

    def persist_connection(self, connection: AppConnection, persisted_by: str) -> AppConnection:
        """Insert the connection, or overwrite the owner's existing one for the provider.

        An overwrite keeps the original row id and creation stamps and bumps
        version by one. When connection already carries that row's id its
        version is checked; a fresh object takes the stored version.

        Raises:
            ConcurrencyConflictError: the row changed since connection was read.
        """
        existing = self._store.get_connection_by_owner(connection.provider_name, connection.owner_email)
        now = self._clock()
        if existing is None:
            connection.id = None
            connection.version = 1
            connection.created_by = persisted_by
            connection.updated_by = persisted_by
            connection.utc_created_on = now
            connection.utc_updated_on = now
            self._store.create_connection(connection)
            logger.info(
                "%s connected %s for %s (connection id=%s)",
                persisted_by,
                connection.provider_name,
                connection.owner_email,
                connection.id,
            )
            return connection

        if connection.id != existing.id:
            connection.id = existing.id
            connection.version = existing.version
        connection.created_by = existing.created_by
        connection.utc_created_on = existing.utc_created_on
        self._store.update_connection(connection, updated_by=persisted_by)
        logger.info("%s updated %s connection id=%s", persisted_by, connection.provider_name, connection.id)
        return connection

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_connection(
        self,
        provider_name: str,
        owner_email: str | None = None,
        account_id: int | None = None,
    ) -> AppConnection | None:
        """Find a connection by owner email or by account. Pass exactly one of the two."""
        if not provider_name:
            raise InvalidArgumentError("provider_name is required.")
        if (owner_email is None) == (account_id is None):
            raise InvalidArgumentError("Pass either owner_email or account_id.")
        if owner_email is not None:
            return self._store.get_connection_by_owner(provider_name, owner_email)
        return self._store.get_connection_by_account(provider_name, account_id)

    def list_connections(self, account_id: int) -> list[AppConnection]:
        return self._store.list_connections(account_id)

    def require_connection(self, connection_id: int, acting_account_id: int | None = None) -> AppConnection:
        """Load a connection by id, confined to acting_account_id when given.

        Raises:
            NotFoundError: no such connection.
            ForbiddenError: it belongs to another account.
        """
        connection = self._store.get_connection(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection {connection_id} does not exist.")
        if acting_account_id is not None and connection.account_id != acting_account_id:
            logger.warning(
                "Connection %s (account %s) requested from account %s",
                connection_id,
                connection.account_id,
                acting_account_id,
            )
            raise ForbiddenError("Connections can only be managed within their own account.")
        return connection

    # ------------------------------------------------------------------
    # Removal and refresh
    # ------------------------------------------------------------------

    def delete_connection(self, connection_id: int, deleted_by: str, acting_account_id: int | None = None) -> None:
        """Remove a stored connection.

        Raises:
            InvalidArgumentError: connection_id is not a positive id.
            NotFoundError: no such connection.
            ForbiddenError: it belongs to another account.
        """
        if connection_id <= 0:
            raise InvalidArgumentError("Invalid connection id.")
        connection = self.require_connection(connection_id, acting_account_id)
        if not self._store.delete_connection(connection.id):
            raise NotFoundError(f"Connection {connection_id} does not exist.")
        logger.info("%s deleted %s connection id=%s", deleted_by, connection.provider_name, connection_id)

    async def refresh_connection(self, client, connection: AppConnection, refreshed_by: str) -> AppConnection:
        """Trade the stored refresh token for new provider tokens and save them.

        `client` is the authlib client registered for connection.provider_name.
        Providers that do not rotate refresh tokens omit one from the answer;
        the stored refresh token is then kept. authlib's OAuthError propagates
        when the provider refuses the grant.

        Raises:
            InvalidArgumentError: the connection has no refresh token, or the
                provider answered without an access token.
            ConcurrencyConflictError: the row changed since connection was read.
        """
        if not connection.refresh_token:
            raise InvalidArgumentError(
                f"The {connection.provider_name} connection for {connection.owner_email} has no refresh token."
            )

        token = await client.fetch_access_token(refresh_token=connection.refresh_token, grant_type="refresh_token")
        if not token.get("access_token"):
            raise InvalidArgumentError(f"{connection.provider_name} returned no access token on refresh.")

        now = self._clock()
        connection.access_token = token["access_token"]
        connection.refresh_token = token.get("refresh_token") or connection.refresh_token
        connection.token_type = token.get("token_type") or connection.token_type
        connection.token_id = token.get("id_token") or connection.token_id
        connection.scope = token.get("scope") or connection.scope
        connection.utc_issued_on = now
        connection.duration_seconds = _duration(token, now)
        self._store.update_connection(connection, updated_by=refreshed_by)
        logger.info("Refreshed %s connection id=%s for %s", connection.provider_name, connection.id, refreshed_by)
        return connection


def _duration(token: dict, now: datetime) -> int | None:
    """Seconds from now until the token expires, or None when it never does."""
    expires_at = oauth_token_info(token, now=now).utc_expires_at
    if expires_at is None:
        return None
    return max(int((expires_at - now).total_seconds()), 0)
