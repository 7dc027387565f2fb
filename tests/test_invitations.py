"""
tests/test_invitations.py -- Unit tests for InvitationResolver lookups.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.invitations import InvitationResolver
from auth.models import Account, InviteToAccount, InviteToApplication, PreAuthorizedAppUser


@pytest.fixture
def resolver(store, clock) -> InvitationResolver:
    return InvitationResolver(store, clock)


@pytest.fixture
def account(store, seeded) -> Account:
    return store.create_account(Account(owner="boss@example.com", account_type_id=seeded.account_type.id))


class TestAccountInvites:
    def test_found_with_account_and_role(self, store, seeded, account, resolver, clock) -> None:
        store.create_account_invite(
            InviteToAccount(
                email="new@example.com",
                account_id=account.id,
                role_id=seeded.roles["Member"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        invite = resolver.find_account_invite("new@example.com")
        assert invite is not None
        assert invite.account.owner == "boss@example.com"
        assert invite.role.name == "Member"

    def test_mixed_case_email_matches(self, store, seeded, account, resolver, clock) -> None:
        store.create_account_invite(
            InviteToAccount(
                email="Invited.Person@Example.com",
                account_id=account.id,
                role_id=seeded.roles["Visitor"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        assert resolver.find_account_invite("INVITED.person@example.COM") is not None

    def test_absent_is_none(self, resolver) -> None:
        assert resolver.find_account_invite("nobody@example.com") is None

    def test_expired_is_none(self, store, seeded, account, resolver, clock) -> None:
        store.create_account_invite(
            InviteToAccount(
                email="late@example.com",
                account_id=account.id,
                role_id=seeded.roles["Member"].id,
                utc_expiration=clock() - timedelta(seconds=1),
            )
        )
        assert resolver.find_account_invite("late@example.com") is None

    def test_accepted_is_none(self, store, seeded, account, resolver, clock) -> None:
        invite = store.create_account_invite(
            InviteToAccount(
                email="done@example.com",
                account_id=account.id,
                role_id=seeded.roles["Member"].id,
                utc_expiration=clock() + timedelta(days=1),
            )
        )
        store.mark_account_invite_accepted(invite, "done@example.com")
        assert resolver.find_account_invite("done@example.com") is None


class TestApplicationInvites:
    def test_found_with_account_type(self, store, seeded, resolver, clock) -> None:
        store.create_application_invite(
            InviteToApplication(
                email="founder@example.com",
                account_type_id=seeded.account_type.id,
                utc_expiration=clock() + timedelta(days=30),
            )
        )
        invite = resolver.find_application_invite("founder@example.com")
        assert invite is not None
        assert invite.account_type.name == "Free"

    def test_absent_is_none(self, resolver) -> None:
        assert resolver.find_application_invite("nobody@example.com") is None


class TestPreAuthorization:
    def test_found_with_account_type(self, store, seeded, resolver) -> None:
        store.create_pre_authorization(PreAuthorizedAppUser(email="vip@example.com", account_type_id=seeded.account_type.id))
        entry = resolver.find_pre_authorization("VIP@example.com")
        assert entry is not None
        assert entry.account_type.name == "Free"

    def test_absent_is_none(self, resolver) -> None:
        assert resolver.find_pre_authorization("nobody@example.com") is None
