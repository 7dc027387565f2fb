"""
tests/conftest.py -- Shared test fixtures for TenantGate unit and integration tests.

This module provides:
  - FrozenClock / clock: deterministic "now" injected into every service
  - store: a fresh in-memory AuthStore per test
  - seed_defaults(), make_user(), make_identity(): terse builders for test data
  - authorization / tokens / admin / connections: services wired to the store and clock
  - api_client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync dependencies in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-test stores stay on plain :memory: because everything
runs on one thread.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.admin import AdminService
from auth.authorization import AuthorizationService
from auth.claims import ClaimsIdentity, ClaimTypes
from auth.connections import ConnectionService
from auth.models import Account, AccountType, AppUser, AppUserRole, Role
from auth.store import AuthStore
from auth.tokens import TokenService
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
DEFAULT_ROLES = ("Administrator", "Owner", "Member", "Visitor")

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Store and services
# ---------------------------------------------------------------------------


@pytest.fixture
def store(clock: FrozenClock) -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def authorization(store: AuthStore, clock: FrozenClock) -> AuthorizationService:
    return AuthorizationService(store, clock=clock)


@pytest.fixture
def tokens(store: AuthStore, clock: FrozenClock) -> TokenService:
    return TokenService(
        store,
        TEST_SECRET,
        issuer="tenantgate",
        audience="tenantgate",
        max_active_refresh_tokens=3,
        redeem_access_seconds=900,
        clock=clock,
    )


@pytest.fixture
def admin(store: AuthStore, clock: FrozenClock) -> AdminService:
    return AdminService(store, clock=clock)


@pytest.fixture
def connections(store: AuthStore, clock: FrozenClock) -> ConnectionService:
    return ConnectionService(store, clock=clock)


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------


@dataclass
class Seed:
    account_type: AccountType
    roles: dict[str, Role] = field(default_factory=dict)


def seed_defaults(store: AuthStore, roles: tuple[str, ...] = DEFAULT_ROLES) -> Seed:
    """Create account type "Free" and the given roles."""
    seed = Seed(account_type=store.create_account_type(AccountType(name="Free", created_by="test")))
    for name in roles:
        seed.roles[name] = store.create_role(Role(name=name, created_by="test"))
    return seed


@pytest.fixture
def seeded(store: AuthStore) -> Seed:
    return seed_defaults(store)


def make_user(
    store: AuthStore,
    seed: Seed,
    email: str,
    roles: tuple[str, ...] = ("Member",),
    account: Account | None = None,
    account_expires: datetime | None = None,
    active_until: datetime | None = None,
) -> AppUser:
    """Persist a user (and, unless given, an account owned by them) with roles."""
    if account is None:
        account = store.create_account(
            Account(
                owner=email,
                name=email,
                account_type_id=seed.account_type.id,
                utc_expiration_date=account_expires,
                created_by="test",
            )
        )
    user = store.create_user(
        AppUser(
            email=email,
            display_name=email.split("@")[0].title(),
            provider_type="google",
            account_id=account.id,
            utc_active_until=active_until,
            created_by="test",
        )
    )
    for name in roles:
        store.add_user_role(AppUserRole(user_id=user.id, role_id=seed.roles[name].id, created_by="test"))
    return store.get_user_by_email(email)


def make_identity(
    email: str | None,
    name: str | None = "Test User",
    provider: str = "google",
    subject: str = "sub-123",
) -> ClaimsIdentity:
    identity = ClaimsIdentity(authentication_type=provider)
    if email is not None:
        identity.add(ClaimTypes.EMAIL, email)
    identity.add(ClaimTypes.NAME_IDENTIFIER, subject)
    if name is not None:
        identity.add(ClaimTypes.NAME, name)
    return identity


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


class FakeOAuthClient:
    """Stands in for an authlib client: no network, a canned token response."""

    def __init__(self, registry: FakeOAuth, provider: str) -> None:
        self.registry = registry
        self.provider = provider

    async def authorize_redirect(self, request, redirect_uri: str, **params) -> RedirectResponse:
        query = urlencode({"redirect_uri": redirect_uri, **params}, safe=":/")
        return RedirectResponse(f"https://provider.example/authorize?{query}", status_code=302)

    async def authorize_access_token(self, request) -> dict:
        return {
            "access_token": "provider-access-token",
            "refresh_token": "provider-refresh-token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "userinfo": dict(self.registry.userinfo),
        }

    async def fetch_access_token(self, **kwargs) -> dict:
        self.registry.refresh_requests.append(kwargs)
        if self.registry.refresh_error is not None:
            raise self.registry.refresh_error
        return dict(self.registry.refreshed_token)


class FakeOAuth:
    def __init__(self) -> None:
        self.userinfo: dict = {}
        self.refreshed_token: dict = {"access_token": "refreshed-access-token", "expires_in": 3600}
        self.refresh_error: Exception | None = None
        self.refresh_requests: list[dict] = []

    def create_client(self, provider: str) -> FakeOAuthClient:
        return FakeOAuthClient(self, provider)


def _patch_lifespan(store: AuthStore, fake_oauth: FakeOAuth):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state so TestClient routes see an isolated
    database, and swaps the OAuth registry for one that makes no network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        cfg = get_settings()
        app.state.store = store
        app.state.authorization = AuthorizationService(store)
        app.state.tokens = TokenService(
            store,
            cfg.secret_key,
            issuer=cfg.token_issuer,
            audience=cfg.token_audience,
            max_active_refresh_tokens=cfg.max_active_refresh_tokens,
            redeem_access_seconds=cfg.refresh_redeem_access_seconds,
        )
        app.state.admin = AdminService(store)
        app.state.connections = ConnectionService(store)
        app.state.oauth = fake_oauth
        yield

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    store: AuthStore
    seed: Seed
    oauth: FakeOAuth
    admin_user: AppUser
    admin_token: str
    member_user: AppUser
    member_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store. One
    Administrator and one Member exist before the client starts, each with a
    one-hour access token for Authorization headers.
    """
    url = f"sqlite:///file:test_auth_api_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    store = AuthStore(url)
    seed = seed_defaults(store)
    admin_user = make_user(store, seed, "admin@example.com", roles=("Administrator",))
    member_user = make_user(store, seed, "member@example.com", roles=("Member",))

    cfg = get_settings()
    issuer = TokenService(store, cfg.secret_key, issuer=cfg.token_issuer, audience=cfg.token_audience)
    fake_oauth = FakeOAuth()

    app.router.lifespan_context = _patch_lifespan(store, fake_oauth)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            store=store,
            seed=seed,
            oauth=fake_oauth,
            admin_user=admin_user,
            admin_token=issuer.issue_access_token(admin_user, 3600),
            member_user=member_user,
            member_token=issuer.issue_access_token(member_user, 3600),
        )

    store.close()
