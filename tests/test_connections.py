"""
tests/test_connections.py -- Unit tests for ConnectionService.

Covers:
  - building a connection from a token response (expiry, scope, id_token)
  - persist: insert, then overwrite in place with version and audit stamps
  - lookup by owner or by account, account-confined loads, delete
  - refresh through the authlib client: rotation, kept refresh token, failures
"""

from __future__ import annotations

import pytest
from authlib.integrations.base_client import OAuthError

from auth.errors import ConcurrencyConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from tests.conftest import make_user

pytestmark = pytest.mark.asyncio

TOKEN = {
    "access_token": "provider-access",
    "refresh_token": "provider-refresh",
    "token_type": "Bearer",
    "expires_in": 3600,
    "scope": "openid email calendar",
    "id_token": "header.payload.sig",
    "userinfo": {"email": "Work.Self@Provider.example"},
}


class FakeProviderClient:
    """Answers the refresh_token grant with a canned response."""

    def __init__(self, answer: dict | None = None, error: Exception | None = None) -> None:
        self.answer = answer or {}
        self.error = error
        self.calls: list[dict] = []

    async def fetch_access_token(self, **kwargs) -> dict:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return dict(self.answer)


class TestFromToken:
    async def test_fields(self, connections, store, seeded, clock) -> None:
        user = make_user(store, seeded, "c@example.com")
        conn = connections.connection_from_token(TOKEN, "google", user, scope="requested")

        assert conn.id is None
        assert conn.owner_email == "c@example.com"
        assert conn.account_id == user.account_id
        assert conn.connection_email == "Work.Self@Provider.example"
        assert conn.scope == "openid email calendar"
        assert conn.token_id == "header.payload.sig"
        assert conn.utc_issued_on == clock()
        assert conn.duration_seconds == 3600
        assert not conn.has_expired(clock())
        assert conn.has_expired(clock.advance(hours=1))

    async def test_requested_scope_and_no_expiry(self, connections, store, seeded, clock) -> None:
        user = make_user(store, seeded, "c@example.com")
        conn = connections.connection_from_token({"access_token": "gho_x"}, "github", user, scope="repo")
        assert conn.scope == "repo"
        assert conn.duration_seconds is None
        assert conn.utc_expires_on is None
        assert not conn.has_expired(clock.advance(days=365))

    async def test_missing_access_token(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        with pytest.raises(InvalidArgumentError):
            connections.connection_from_token({"refresh_token": "r"}, "google", user)


class TestPersist:
    async def test_insert_then_overwrite(self, connections, store, seeded, clock) -> None:
        user = make_user(store, seeded, "c@example.com")
        first = connections.persist_connection(
            connections.connection_from_token(TOKEN, "google", user), persisted_by="c@example.com"
        )
        assert first.version == 1
        assert first.created_by == "c@example.com"

        clock.advance(minutes=10)
        again = connections.connection_from_token({**TOKEN, "access_token": "second"}, "google", user)
        saved = connections.persist_connection(again, persisted_by="admin@example.com")

        assert saved.id == first.id
        assert saved.version == 2
        stored = store.get_connection(first.id)
        assert stored.access_token == "second"
        assert stored.created_by == "c@example.com"
        assert stored.updated_by == "admin@example.com"
        assert stored.utc_created_on == first.utc_created_on
        assert stored.utc_updated_on == clock()
        assert len(store.list_connections(user.account_id)) == 1

    async def test_overwrite_of_stale_copy_conflicts(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")
        stale = store.get_connection(saved.id)

        saved.access_token = "newer"
        connections.persist_connection(saved, "c")

        stale.access_token = "older"
        with pytest.raises(ConcurrencyConflictError):
            connections.persist_connection(stale, "c")


class TestLookups:
    async def test_by_owner_or_account(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")

        assert connections.get_connection("google", owner_email="C@example.com").id == saved.id
        assert connections.get_connection("google", account_id=user.account_id).id == saved.id
        assert connections.get_connection("github", owner_email="c@example.com") is None

    @pytest.mark.parametrize("kwargs", [{}, {"owner_email": "c@example.com", "account_id": 1}])
    async def test_exactly_one_key(self, connections, kwargs) -> None:
        with pytest.raises(InvalidArgumentError):
            connections.get_connection("google", **kwargs)

    async def test_require_is_account_confined(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        outsider = make_user(store, seeded, "o@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")

        assert connections.require_connection(saved.id, acting_account_id=user.account_id).id == saved.id
        with pytest.raises(ForbiddenError):
            connections.require_connection(saved.id, acting_account_id=outsider.account_id)
        with pytest.raises(NotFoundError):
            connections.require_connection(9999)


class TestDelete:
    async def test_delete(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")

        connections.delete_connection(saved.id, deleted_by="c", acting_account_id=user.account_id)
        assert store.get_connection(saved.id) is None
        with pytest.raises(NotFoundError):
            connections.delete_connection(saved.id, deleted_by="c")

    async def test_other_account_cannot_delete(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        outsider = make_user(store, seeded, "o@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")

        with pytest.raises(ForbiddenError):
            connections.delete_connection(saved.id, deleted_by="o", acting_account_id=outsider.account_id)
        assert store.get_connection(saved.id) is not None

    async def test_invalid_id(self, connections) -> None:
        with pytest.raises(InvalidArgumentError):
            connections.delete_connection(0, deleted_by="c")


class TestRefresh:
    async def test_rotated_tokens_saved(self, connections, store, seeded, clock) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")
        client = FakeProviderClient({"access_token": "fresh", "refresh_token": "fresh-refresh", "expires_in": 600})

        clock.advance(hours=2)
        refreshed = await connections.refresh_connection(client, saved, refreshed_by="c@example.com")

        assert client.calls == [{"refresh_token": "provider-refresh", "grant_type": "refresh_token"}]
        stored = store.get_connection(saved.id)
        assert stored.access_token == "fresh"
        assert stored.refresh_token == "fresh-refresh"
        assert stored.utc_issued_on == clock()
        assert stored.duration_seconds == 600
        assert stored.scope == "openid email calendar"
        assert stored.version == refreshed.version == 2

    async def test_refresh_token_kept_when_not_rotated(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")

        await connections.refresh_connection(FakeProviderClient({"access_token": "fresh"}), saved, "c")
        assert store.get_connection(saved.id).refresh_token == "provider-refresh"

    async def test_without_refresh_token(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        token = {"access_token": "gho_x"}
        saved = connections.persist_connection(connections.connection_from_token(token, "github", user), "c")
        client = FakeProviderClient({"access_token": "never"})

        with pytest.raises(InvalidArgumentError):
            await connections.refresh_connection(client, saved, "c")
        assert client.calls == []

    async def test_provider_refusal_propagates(self, connections, store, seeded) -> None:
        user = make_user(store, seeded, "c@example.com")
        saved = connections.persist_connection(connections.connection_from_token(TOKEN, "google", user), "c")
        client = FakeProviderClient(error=OAuthError(error="invalid_grant"))

        with pytest.raises(OAuthError):
            await connections.refresh_connection(client, saved, "c")
        assert store.get_connection(saved.id).access_token == "provider-access"
