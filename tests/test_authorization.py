"""
tests/test_authorization.py -- Tests for the AuthorizationService orchestrator.

Covers the admission state machine end to end against an in-memory store:
  - existing-user fast path is idempotent (last login and version advance)
  - invitation, application-invite and pre-authorization provisioning
  - precedence: account invite beats application invite
  - account-level and user-level expiry, and a user whose account is missing
  - unauthenticated and invalid identities
  - validation callback (sync and async) aborts without recording a login
  - claims enrichment, OAuth token capture, login history, device info
  - narrow session payload and rehydration
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.claims import ClaimTypes, deserialize_user
from auth.device import DeviceInfo
from auth.errors import AccountExpiredError, ConcurrencyConflictError, InvalidIdentityError, UnauthenticatedError
from auth.models import Account, InviteToAccount, InviteToApplication, OAuthTokenInfo, PreAuthorizedAppUser
from tests.conftest import make_identity, make_user

pytestmark = pytest.mark.asyncio


class TestExistingUser:
    async def test_repeat_logins_are_idempotent(self, authorization, store, seeded, clock) -> None:
        make_user(store, seeded, "repeat@example.com")
        identity = make_identity("repeat@example.com")

        first = await authorization.authorize(identity)
        clock.advance(seconds=1)
        second = await authorization.authorize(identity)

        assert second.id == first.id
        assert second.utc_last_login > first.utc_last_login
        assert store.get_user_by_email("repeat@example.com").version == 3
        assert store.count_users() == 1

    async def test_version_increments_by_one_per_login(self, authorization, store, seeded) -> None:
        user = make_user(store, seeded, "v@example.com")
        before = user.version
        result = await authorization.authorize(make_identity("v@example.com"))
        assert result.version == before + 1

    async def test_expired_account_rejected(self, authorization, store, seeded, clock) -> None:
        make_user(store, seeded, "old@example.com", account_expires=clock() - timedelta(days=1))
        with pytest.raises(AccountExpiredError):
            await authorization.authorize(make_identity("old@example.com"))

    async def test_expired_account_rejected_even_with_pending_invite(self, authorization, store, seeded, clock) -> None:
        user = make_user(store, seeded, "old@example.com", account_expires=clock() - timedelta(days=1))
        store.create_account_invite(
            InviteToAccount(
                email="old@example.com",
                account_id=user.account_id,
                role_id=seeded.roles["Owner"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        with pytest.raises(AccountExpiredError):
            await authorization.authorize(make_identity("old@example.com"))

    async def test_inactive_user_rejected(self, authorization, store, seeded, clock) -> None:
        user = make_user(store, seeded, "gone@example.com")
        store.set_user_active_until(user, clock() - timedelta(minutes=1), updated_by="test")
        assert store.get_user_by_email("gone@example.com").version == 2
        with pytest.raises(AccountExpiredError):
            await authorization.authorize(make_identity("gone@example.com"))

    async def test_user_without_account_rejected(self, authorization, store, seeded, monkeypatch) -> None:
        make_user(store, seeded, "orphan@example.com")
        real_lookup = store.get_user_by_email

        def orphaned(email):
            user = real_lookup(email)
            if user is not None:
                user.account = None
            return user

        monkeypatch.setattr(store, "get_user_by_email", orphaned)
        with pytest.raises(AccountExpiredError):
            await authorization.authorize(make_identity("orphan@example.com"))
        assert authorization.login_history("orphan@example.com") == []

    async def test_future_expiry_allowed(self, authorization, store, seeded, clock) -> None:
        make_user(store, seeded, "ok@example.com", account_expires=clock() + timedelta(days=1))
        user = await authorization.authorize(make_identity("ok@example.com"))
        assert user.email == "ok@example.com"

    async def test_concurrent_update_surfaces_conflict(self, authorization, store, seeded, monkeypatch) -> None:
        make_user(store, seeded, "c@example.com")
        real_lookup = store.get_user_by_email

        def stale_lookup(email):
            user = real_lookup(email)
            user.version -= 1
            return user

        monkeypatch.setattr(store, "get_user_by_email", stale_lookup)
        with pytest.raises(ConcurrencyConflictError):
            await authorization.authorize(make_identity("c@example.com"))
        assert authorization.login_history("c@example.com") == []


class TestProvisioningPaths:
    async def test_account_invite(self, authorization, store, seeded, clock) -> None:
        account = store.create_account(Account(owner="boss@example.com", account_type_id=seeded.account_type.id))
        store.create_account_invite(
            InviteToAccount(
                email="Joiner@Example.com",
                account_id=account.id,
                role_id=seeded.roles["Member"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )

        user = await authorization.authorize(make_identity("joiner@EXAMPLE.com"))

        assert user.account_id == account.id
        assert user.role_names == ["Member"]
        assert store.count_users("joiner@example.com") == 1

    async def test_application_invite(self, authorization, store, seeded, clock) -> None:
        store.create_application_invite(
            InviteToApplication(
                email="founder@example.com",
                account_type_id=seeded.account_type.id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        user = await authorization.authorize(make_identity("founder@example.com"))

        assert user.account.owner == "founder@example.com"
        assert user.account.account_type_id == seeded.account_type.id
        assert user.role_names == ["Administrator"]

    async def test_account_invite_takes_precedence(self, authorization, store, seeded, clock) -> None:
        account = store.create_account(Account(owner="boss@example.com", account_type_id=seeded.account_type.id))
        store.create_account_invite(
            InviteToAccount(
                email="both@example.com",
                account_id=account.id,
                role_id=seeded.roles["Visitor"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        store.create_application_invite(
            InviteToApplication(
                email="both@example.com",
                account_type_id=seeded.account_type.id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        user = await authorization.authorize(make_identity("both@example.com"))
        assert user.account_id == account.id
        assert user.role_names == ["Visitor"]

    async def test_pre_authorization(self, authorization, store, seeded) -> None:
        store.create_pre_authorization(PreAuthorizedAppUser(email="vip@example.com", account_type_id=seeded.account_type.id))
        user = await authorization.authorize(make_identity("vip@example.com"))
        assert user.role_names == ["Administrator"]
        assert user.account.owner == "vip@example.com"

    async def test_second_login_does_not_reprovision(self, authorization, store, seeded, clock) -> None:
        store.create_application_invite(
            InviteToApplication(
                email="founder@example.com",
                account_type_id=seeded.account_type.id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        first = await authorization.authorize(make_identity("founder@example.com"))
        second = await authorization.authorize(make_identity("founder@example.com"))
        assert second.account_id == first.account_id
        assert store.count_users() == 1


class TestRejections:
    async def test_unknown_email_unauthenticated(self, authorization, seeded) -> None:
        with pytest.raises(UnauthenticatedError):
            await authorization.authorize(make_identity("stranger@example.com"))

    async def test_expired_invite_unauthenticated(self, authorization, store, seeded, clock) -> None:
        store.create_application_invite(
            InviteToApplication(
                email="late@example.com",
                account_type_id=seeded.account_type.id,
                utc_expiration=clock() - timedelta(days=1),
            )
        )
        with pytest.raises(UnauthenticatedError):
            await authorization.authorize(make_identity("late@example.com"))

    async def test_none_identity(self, authorization) -> None:
        with pytest.raises(InvalidIdentityError):
            await authorization.authorize(None)

    async def test_identity_without_email(self, authorization) -> None:
        with pytest.raises(InvalidIdentityError):
            await authorization.authorize(make_identity(None))


class TestValidationCallback:
    async def test_sync_callback_receives_user_and_identity(self, authorization, store, seeded) -> None:
        make_user(store, seeded, "cb@example.com")
        seen = []
        identity = make_identity("cb@example.com")

        await authorization.authorize(identity, validate=lambda user, ident: seen.append((user.email, ident)))

        assert seen == [("cb@example.com", identity)]

    async def test_async_callback_exception_propagates(self, authorization, store, seeded) -> None:
        make_user(store, seeded, "cb@example.com")

        class Blocked(Exception):
            pass

        async def deny(user, identity):
            raise Blocked(user.email)

        with pytest.raises(Blocked):
            await authorization.authorize(make_identity("cb@example.com"), validate=deny)

        assert authorization.login_history("cb@example.com") == []
        assert store.get_user_by_email("cb@example.com").utc_last_login is None


class TestEnrichment:
    async def test_identity_carries_principal_and_roles(self, authorization, store, seeded) -> None:
        make_user(store, seeded, "rich@example.com", roles=("Owner", "Member"))
        identity = make_identity("rich@example.com")

        await authorization.authorize(identity)

        assert sorted(identity.get_all(ClaimTypes.ROLE)) == ["Member", "Owner"]
        restored = deserialize_user(identity.get(ClaimTypes.APP_USER_JSON))
        assert restored.email == "rich@example.com"

    async def test_reauthorizing_enriched_identity_does_not_duplicate_roles(self, authorization, store, seeded) -> None:
        make_user(store, seeded, "rich@example.com", roles=("Owner",))
        identity = make_identity("rich@example.com")
        await authorization.authorize(identity)
        await authorization.authorize(identity)
        assert identity.get_all(ClaimTypes.ROLE) == ["Owner"]
        assert len(identity.get_all(ClaimTypes.APP_USER_JSON)) == 1

    async def test_oauth_tokens_captured(self, authorization, store, seeded, clock) -> None:
        make_user(store, seeded, "tok@example.com")
        info = OAuthTokenInfo(
            access_token="at",
            refresh_token="rt",
            token_type="Bearer",
            expires_in=3600,
            utc_expires_at=clock() + timedelta(hours=1),
        )
        await authorization.authorize(make_identity("tok@example.com"), oauth_token=info)

        stored = store.get_user_by_email("tok@example.com")
        assert stored.oauth_access_token == "at"
        assert stored.oauth_refresh_token == "rt"
        assert stored.oauth_token_utc_expires_at == clock() + timedelta(hours=1)

    async def test_login_history_defaults_to_unknown(self, authorization, store, seeded, clock) -> None:
        make_user(store, seeded, "hist@example.com")
        await authorization.authorize(make_identity("hist@example.com"))

        rows = authorization.login_history("hist@example.com")
        assert len(rows) == 1
        assert (rows[0].ip_address, rows[0].os, rows[0].browser) == ("Unknown", "Unknown", "Unknown")
        assert rows[0].utc_login == clock()

    @pytest.mark.parametrize(
        "device",
        [
            DeviceInfo("10.1.1.1", "Linux", "Firefox"),
            "10.1.1.1|Linux|Firefox",
            DeviceInfo("10.1.1.1", "Linux", "Firefox").to_base64(),
        ],
    )
    async def test_device_info_shapes(self, authorization, store, seeded, device) -> None:
        make_user(store, seeded, "dev@example.com")
        await authorization.authorize(make_identity("dev@example.com"), device_info=device)
        row = authorization.login_history("dev@example.com")[0]
        assert (row.ip_address, row.os, row.browser) == ("10.1.1.1", "Linux", "Firefox")


class TestSessions:
    async def test_payload_is_narrow(self, authorization, store, seeded) -> None:
        make_user(store, seeded, "s@example.com", roles=("Member",))
        user = await authorization.authorize(make_identity("s@example.com"))
        assert authorization.session_payload(user) == {"uid": user.id, "roles": ["Member"]}

    async def test_rehydrate_reads_current_roles(self, authorization, store, seeded, admin) -> None:
        make_user(store, seeded, "s@example.com", roles=("Member",))
        user = await authorization.authorize(make_identity("s@example.com"))
        payload = authorization.session_payload(user)

        admin.grant_role("s@example.com", "Owner", granted_by="test")

        assert sorted(authorization.rehydrate(payload).role_names) == ["Member", "Owner"]

    async def test_rehydrate_rejects_missing_user(self, authorization) -> None:
        with pytest.raises(UnauthenticatedError):
            authorization.rehydrate({"uid": 12345, "roles": []})
        with pytest.raises(UnauthenticatedError):
            authorization.rehydrate(None)

    async def test_rehydrate_rejects_expired_account(self, authorization, store, seeded, clock) -> None:
        user = make_user(store, seeded, "s@example.com")
        payload = authorization.session_payload(user)
        store.set_account_expiration(user.account, clock() - timedelta(seconds=1), updated_by="test")
        with pytest.raises(AccountExpiredError):
            authorization.rehydrate(payload)

    async def test_rehydrate_rejects_user_without_account(self, authorization, store, seeded, monkeypatch) -> None:
        user = make_user(store, seeded, "s@example.com")
        payload = authorization.session_payload(user)
        monkeypatch.setattr(store, "get_account", lambda account_id: None)
        with pytest.raises(AccountExpiredError):
            authorization.rehydrate(payload)
