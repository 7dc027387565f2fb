"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and token entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; _to_entity()
and _values() are the mappers between table rows and the dataclasses in
auth/models.py. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Unit of work:
  Every public method runs in its own short transaction unless the caller has
  opened one with `with store.transaction():`, in which case the method joins
  it. The active connection lives in a ContextVar, so the same store instance
  can be shared across concurrent requests. A nested transaction() becomes a
  SAVEPOINT.

Optimistic concurrency:
  Updates are issued as UPDATE ... WHERE id = :id AND version = :expected and
  bump version by one. Zero rows touched means someone else got there first:
  ConcurrencyConflictError is raised and the in-memory object is left as-is.

Uniqueness:
  app_user.email, account.owner, role.name, account_type.name, both invite
  emails, pre_authorized_app_user.email, refresh_token.token_hash and
  app_connection (provider_name, owner_email) carry UNIQUE constraints. Check-then-create races are settled by the database;
  the loser sees sqlalchemy.exc.IntegrityError.

Emails are normalized (stripped, lower-cased) on every write and lookup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import fields
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

from auth.claims import normalize_email
from auth.errors import ConcurrencyConflictError
from auth.models import (
    Account,
    AccountType,
    AppConnection,
    AppUser,
    AppUserLoginHistory,
    AppUserRole,
    InviteToAccount,
    InviteToApplication,
    PreAuthorizedAppUser,
    RefreshToken,
    Role,
)
from core.clock import Clock, ensure_utc, utc_now

logger = logging.getLogger("tenantgate.auth.store")

_DEFAULT_DB_URL = "sqlite:///tenantgate.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()


def _audit_columns() -> list[Column]:
    return [
        Column("created_by", String(255)),
        Column("updated_by", String(255)),
        Column("utc_created_on", DateTime(timezone=True), nullable=False),
        Column("utc_updated_on", DateTime(timezone=True), nullable=False),
        Column("version", Integer, nullable=False, server_default="1"),
    ]


_account_types = Table(
    "account_type",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    *_audit_columns(),
)

_accounts = Table(
    "account",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("account_type_id", Integer, ForeignKey("account_type.id"), nullable=False),
    Column("utc_expiration_date", DateTime(timezone=True)),
    *_audit_columns(),
)

_roles = Table(
    "role",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", String(500)),
    *_audit_columns(),
)

_users = Table(
    "app_user",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("provider_key", String(255)),
    Column("provider_type", String(50)),
    Column("display_name", String(255)),
    Column("profile_picture_url", String(500)),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False),
    Column("utc_active_until", DateTime(timezone=True)),
    Column("utc_last_login", DateTime(timezone=True)),
    Column("timezone", String(100)),
    Column("metadata", Text),  # JSON blob owned by the host application
    Column("oauth_access_token", Text),
    Column("oauth_refresh_token", Text),
    Column("oauth_token_type", String(50)),
    Column("oauth_token_utc_expires_at", DateTime(timezone=True)),
    *_audit_columns(),
)

_user_roles = Table(
    "app_user_role",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("app_user.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("role.id"), nullable=False),
    *_audit_columns(),
    UniqueConstraint("user_id", "role_id", name="uq_app_user_role"),
)

_account_invites = Table(
    "invite_to_account",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("role.id"), nullable=False),
    Column("utc_expiration", DateTime(timezone=True), nullable=False),
    Column("utc_accepted", DateTime(timezone=True)),
    Column("utc_rejected", DateTime(timezone=True)),
    Column("rejected_reason", String(500)),
    *_audit_columns(),
)

_application_invites = Table(
    "invite_to_application",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("account_type_id", Integer, ForeignKey("account_type.id"), nullable=False),
    Column("utc_expiration", DateTime(timezone=True), nullable=False),
    Column("utc_accepted", DateTime(timezone=True)),
    Column("utc_rejected", DateTime(timezone=True)),
    Column("rejected_reason", String(500)),
    *_audit_columns(),
)

_pre_authorized = Table(
    "pre_authorized_app_user",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("account_type_id", Integer, ForeignKey("account_type.id"), nullable=False),
    *_audit_columns(),
)

_login_history = Table(
    "app_user_login_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, index=True),
    Column("utc_login", DateTime(timezone=True), nullable=False),
    Column("os", String(100), nullable=False),
    Column("browser", String(100), nullable=False),
    Column("ip_address", String(100), nullable=False),
)

_refresh_tokens = Table(
    "refresh_token",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("app_user.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("duration_seconds", Integer, nullable=False),
    Column("utc_expires_on", DateTime(timezone=True), nullable=False),
    Column("is_valid", Boolean, nullable=False),
    *_audit_columns(),
)

_app_connections = Table(
    "app_connection",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_name", String(100), nullable=False),
    Column("owner_email", String(255), nullable=False),
    Column("connection_email", String(255)),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False, index=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("scope", Text),
    Column("token_type", String(50)),
    Column("token_id", Text),
    Column("utc_issued_on", DateTime(timezone=True), nullable=False),
    Column("duration_seconds", Integer),  # NULL = no expiry
    *_audit_columns(),
    UniqueConstraint("provider_name", "owner_email", name="uq_app_connection_owner"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs work, and enable WAL.

    pysqlite's own implicit transaction handling defeats SAVEPOINT. Setting
    isolation_level=None hands transaction control to SQLAlchemy, which then
    emits BEGIN itself. WAL lets readers proceed while a writer holds the lock.
    Both are per-connection settings, so they run on every pool checkout.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record) -> None:
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for every auth entity.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        with store.transaction():
            account = store.create_account(Account(owner="a@example.com", account_type_id=1))
            store.create_user(AppUser(email="a@example.com", account_id=account.id))
        user = store.get_user_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock = utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            _configure_sqlite(self.engine)
        self._clock = clock
        self._active: ContextVar[Connection | None] = ContextVar(f"auth_store_conn_{id(self)}", default=None)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several store calls into one atomic unit.

        Outermost call: BEGIN ... COMMIT, or ROLLBACK if the block raises.
        Nested call: SAVEPOINT, so the inner block can fail and be recovered
        from without discarding the outer work.
        """
        conn = self._active.get()
        if conn is not None:
            with conn.begin_nested():
                yield
            return
        with self.engine.begin() as conn:
            token = self._active.set(conn)
            try:
                yield
            finally:
                self._active.reset(token)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        conn = self._active.get()
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as conn:
            yield conn

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self._connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _stamp_new(self, entity) -> None:
        now = self._clock()
        if entity.utc_created_on is None:
            entity.utc_created_on = now
        if entity.utc_updated_on is None:
            entity.utc_updated_on = entity.utc_created_on
        entity.version = entity.version or 1

    def _insert(self, table: Table, entity):
        with self._connect() as conn:
            result = conn.execute(table.insert().values(**_values(table, entity)))
        entity.id = result.inserted_primary_key[0]
        return entity

    def _checked_update(self, table: Table, entity, **values) -> None:
        """UPDATE table SET values, version+1 WHERE id AND version match.

        On success the new values and version are written back onto entity.
        """
        expected = entity.version
        with self._connect() as conn:
            result = conn.execute(
                table.update()
                .where((table.c.id == entity.id) & (table.c.version == expected))
                .values(**values, version=expected + 1)
            )
        if result.rowcount == 0:
            logger.warning("Version conflict on %s id=%s (expected version %s)", table.name, entity.id, expected)
            raise ConcurrencyConflictError(f"{table.name} {entity.id} was modified concurrently; reload and retry.")
        for key, value in values.items():
            setattr(entity, key, value)
        entity.version = expected + 1

    def _one(self, cls, table: Table, *criteria):
        with self._connect() as conn:
            row = conn.execute(table.select().where(*criteria)).fetchone()
        return _to_entity(cls, row) if row is not None else None

    # ------------------------------------------------------------------
    # Account types
    # ------------------------------------------------------------------

    def create_account_type(self, account_type: AccountType) -> AccountType:
        self._stamp_new(account_type)
        return self._insert(_account_types, account_type)

    def get_account_type(self, account_type_id: int) -> AccountType | None:
        return self._one(AccountType, _account_types, _account_types.c.id == account_type_id)

    def get_account_type_by_name(self, name: str) -> AccountType | None:
        return self._one(AccountType, _account_types, _account_types.c.name == name)

    def count_account_types(self) -> int:
        return self._count(_account_types)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert an account. Raises IntegrityError if the owner already has one."""
        account.owner = normalize_email(account.owner)
        self._stamp_new(account)
        return self._insert(_accounts, account)

    def get_account(self, account_id: int) -> Account | None:
        return self._one(Account, _accounts, _accounts.c.id == account_id)

    def get_account_by_owner(self, owner: str) -> Account | None:
        return self._one(Account, _accounts, _accounts.c.owner == normalize_email(owner))

    def set_account_expiration(self, account: Account, expires: datetime | None, updated_by: str) -> None:
        self._checked_update(
            _accounts, account, utc_expiration_date=expires, updated_by=updated_by, utc_updated_on=self._clock()
        )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        """Insert a role. Raises IntegrityError if the name is taken."""
        self._stamp_new(role)
        return self._insert(_roles, role)

    def get_role(self, role_id: int) -> Role | None:
        return self._one(Role, _roles, _roles.c.id == role_id)

    def get_role_by_name(self, name: str) -> Role | None:
        return self._one(Role, _roles, _roles.c.name == name)

    def list_roles(self) -> list[Role]:
        with self._connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_to_entity(Role, r) for r in rows]

    def count_roles(self) -> int:
        return self._count(_roles)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: AppUser) -> AppUser:
        """Insert a user. Raises IntegrityError if the email already exists."""
        user.email = normalize_email(user.email)
        self._stamp_new(user)
        return self._insert(_users, user)

    def get_user_by_email(self, email: str) -> AppUser | None:
        """Look up a user by email, with account and roles attached."""
        user = self._one(AppUser, _users, _users.c.email == normalize_email(email))
        return self._attach_user_graph(user)

    def get_user_by_id(self, user_id: int) -> AppUser | None:
        """Look up a user by primary key, with account and roles attached."""
        user = self._one(AppUser, _users, _users.c.id == user_id)
        return self._attach_user_graph(user)

    def _attach_user_graph(self, user: AppUser | None) -> AppUser | None:
        if user is None:
            return None
        user.account = self.get_account(user.account_id)
        user.roles = self.get_user_roles(user.id)
        return user

    def update_user_login(self, user: AppUser) -> None:
        """Persist the mutable login-time fields of user with a version check."""
        self._checked_update(
            _users,
            user,
            display_name=user.display_name,
            profile_picture_url=user.profile_picture_url,
            provider_key=user.provider_key,
            provider_type=user.provider_type,
            utc_last_login=user.utc_last_login,
            oauth_access_token=user.oauth_access_token,
            oauth_refresh_token=user.oauth_refresh_token,
            oauth_token_type=user.oauth_token_type,
            oauth_token_utc_expires_at=user.oauth_token_utc_expires_at,
            updated_by=user.email,
            utc_updated_on=self._clock(),
        )

    def set_user_active_until(self, user: AppUser, active_until: datetime | None, updated_by: str) -> None:
        self._checked_update(
            _users, user, utc_active_until=active_until, updated_by=updated_by, utc_updated_on=self._clock()
        )

    def count_users(self, email: str | None = None) -> int:
        if email is None:
            return self._count(_users)
        return self._count(_users, _users.c.email == normalize_email(email))

    # ------------------------------------------------------------------
    # User roles
    # ------------------------------------------------------------------

    def add_user_role(self, user_role: AppUserRole) -> AppUserRole:
        """Link a user to a role. Raises IntegrityError if already linked."""
        self._stamp_new(user_role)
        return self._insert(_user_roles, user_role)

    def remove_user_role(self, user_id: int, role_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
        return result.rowcount > 0

    def get_user_roles(self, user_id: int) -> list[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                select(_roles)
                .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
                .where(_user_roles.c.user_id == user_id)
                .order_by(_roles.c.name)
            ).fetchall()
        return [_to_entity(Role, r) for r in rows]

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_account_invite(self, invite: InviteToAccount) -> InviteToAccount:
        invite.email = normalize_email(invite.email)
        self._stamp_new(invite)
        return self._insert(_account_invites, invite)

    def get_account_invite_by_email(self, email: str) -> InviteToAccount | None:
        """Look up an account invite, with account and role attached."""
        invite = self._one(InviteToAccount, _account_invites, _account_invites.c.email == normalize_email(email))
        if invite is not None:
            invite.account = self.get_account(invite.account_id)
            invite.role = self.get_role(invite.role_id)
        return invite

    def mark_account_invite_accepted(self, invite: InviteToAccount, accepted_by: str) -> None:
        now = self._clock()
        self._checked_update(_account_invites, invite, utc_accepted=now, updated_by=accepted_by, utc_updated_on=now)

    def count_account_invites(self) -> int:
        return self._count(_account_invites)

    def create_application_invite(self, invite: InviteToApplication) -> InviteToApplication:
        invite.email = normalize_email(invite.email)
        self._stamp_new(invite)
        return self._insert(_application_invites, invite)

    def get_application_invite_by_email(self, email: str) -> InviteToApplication | None:
        """Look up an application invite, with account type attached."""
        invite = self._one(
            InviteToApplication, _application_invites, _application_invites.c.email == normalize_email(email)
        )
        if invite is not None:
            invite.account_type = self.get_account_type(invite.account_type_id)
        return invite

    def mark_application_invite_accepted(self, invite: InviteToApplication, accepted_by: str) -> None:
        now = self._clock()
        self._checked_update(
            _application_invites, invite, utc_accepted=now, updated_by=accepted_by, utc_updated_on=now
        )

    # ------------------------------------------------------------------
    # Pre-authorization allow-list
    # ------------------------------------------------------------------

    def create_pre_authorization(self, entry: PreAuthorizedAppUser) -> PreAuthorizedAppUser:
        entry.email = normalize_email(entry.email)
        self._stamp_new(entry)
        return self._insert(_pre_authorized, entry)

    def get_pre_authorization_by_email(self, email: str) -> PreAuthorizedAppUser | None:
        entry = self._one(PreAuthorizedAppUser, _pre_authorized, _pre_authorized.c.email == normalize_email(email))
        if entry is not None:
            entry.account_type = self.get_account_type(entry.account_type_id)
        return entry

    # ------------------------------------------------------------------
    # Login history
    # ------------------------------------------------------------------

    def add_login_history(self, history: AppUserLoginHistory) -> AppUserLoginHistory:
        history.email = normalize_email(history.email)
        return self._insert(_login_history, history)

    def get_login_history(self, email: str) -> list[AppUserLoginHistory]:
        """Return login rows for an email, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _login_history.select()
                .where(_login_history.c.email == normalize_email(email))
                .order_by(_login_history.c.utc_login, _login_history.c.id)
            ).fetchall()
        return [_to_entity(AppUserLoginHistory, r) for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        self._stamp_new(token)
        return self._insert(_refresh_tokens, token)

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh token by HMAC, with its owning user attached."""
        token = self._one(RefreshToken, _refresh_tokens, _refresh_tokens.c.token_hash == token_hash)
        if token is not None:
            token.user = self.get_user_by_id(token.user_id)
        return token

    def count_valid_refresh_tokens(self, user_id: int) -> int:
        return self._count(
            _refresh_tokens, (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_valid.is_(True))
        )

    def invalidate_refresh_token(self, token: RefreshToken, updated_by: str) -> None:
        """Flip is_valid to False. Raises ConcurrencyConflictError if the row moved."""
        self._checked_update(
            _refresh_tokens, token, is_valid=False, updated_by=updated_by, utc_updated_on=self._clock()
        )

    def invalidate_user_refresh_tokens(self, user_id: int, updated_by: str) -> int:
        """Invalidate every valid refresh token of a user. Returns the number revoked."""
        with self._connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_valid.is_(True)))
                .values(
                    is_valid=False,
                    updated_by=updated_by,
                    utc_updated_on=self._clock(),
                    version=_refresh_tokens.c.version + 1,
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Provider connections
    # ------------------------------------------------------------------

    def create_connection(self, connection: AppConnection) -> AppConnection:
        """Insert a connection. Raises IntegrityError if the owner already has one for the provider."""
        connection.owner_email = normalize_email(connection.owner_email)
        self._stamp_new(connection)
        return self._insert(_app_connections, connection)

    def get_connection(self, connection_id: int) -> AppConnection | None:
        return self._one(AppConnection, _app_connections, _app_connections.c.id == connection_id)

    def get_connection_by_owner(self, provider_name: str, owner_email: str) -> AppConnection | None:
        return self._one(
            AppConnection,
            _app_connections,
            (_app_connections.c.provider_name == provider_name)
            & (_app_connections.c.owner_email == normalize_email(owner_email)),
        )

    def get_connection_by_account(self, provider_name: str, account_id: int) -> AppConnection | None:
        """The account's most recently updated connection to provider_name."""
        with self._connect() as conn:
            row = conn.execute(
                _app_connections.select()
                .where(
                    (_app_connections.c.provider_name == provider_name)
                    & (_app_connections.c.account_id == account_id)
                )
                .order_by(_app_connections.c.utc_updated_on.desc(), _app_connections.c.id.desc())
                .limit(1)
            ).fetchone()
        return _to_entity(AppConnection, row) if row is not None else None

    def list_connections(self, account_id: int) -> list[AppConnection]:
        with self._connect() as conn:
            rows = conn.execute(
                _app_connections.select()
                .where(_app_connections.c.account_id == account_id)
                .order_by(_app_connections.c.provider_name, _app_connections.c.owner_email)
            ).fetchall()
        return [_to_entity(AppConnection, r) for r in rows]

    def update_connection(self, connection: AppConnection, updated_by: str) -> None:
        """Write the token fields back. Raises ConcurrencyConflictError if the row moved."""
        self._checked_update(
            _app_connections,
            connection,
            connection_email=connection.connection_email,
            account_id=connection.account_id,
            access_token=connection.access_token,
            refresh_token=connection.refresh_token,
            scope=connection.scope,
            token_type=connection.token_type,
            token_id=connection.token_id,
            utc_issued_on=connection.utc_issued_on,
            duration_seconds=connection.duration_seconds,
            updated_by=updated_by,
            utc_updated_on=self._clock(),
        )

    def delete_connection(self, connection_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(_app_connections.delete().where(_app_connections.c.id == connection_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------

    def _count(self, table: Table, *criteria) -> int:
        query = select(func.count()).select_from(table)
        if criteria:
            query = query.where(*criteria)
        with self._connect() as conn:
            return conn.execute(query).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _values(table: Table, entity) -> dict:
    """Column values for an INSERT, taken from the same-named dataclass fields."""
    return {c.name: getattr(entity, c.name) for c in table.columns if c.name != "id"}


def _to_entity(cls, row):
    """Build a dataclass from a row, restoring UTC on every datetime column.

    Navigation fields (account, roles, ...) are not columns and keep their
    defaults; the repository attaches them explicitly.
    """
    mapping = row._mapping
    kwargs = {}
    for f in fields(cls):
        if f.name not in mapping:
            continue
        value = mapping[f.name]
        if isinstance(value, datetime):
            value = ensure_utc(value)
        kwargs[f.name] = value
    return cls(**kwargs)
