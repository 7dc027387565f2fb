#!/usr/bin/env python3
"""
TenantGate -- administrative command line.

Usage:
  python main.py init-db --owner owner@example.com
  python main.py invite-account alice@example.com --account-owner owner@example.com --role Member
  python main.py invite-app bob@example.com --account-type Free --days 30
  python main.py pre-authorize carol@example.com
  python main.py issue-token owner@example.com --minutes 60

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth store (default sqlite:///tenantgate.db).
  SECRET_KEY    Signing key for access tokens. Required unless DEBUG=true.
"""

import argparse
import logging
import sys
from typing import Optional

from auth.admin import DEFAULT_INVITE_DAYS, AdminService
from auth.bootstrap import DEFAULT_ACCOUNT_TYPE, initialize_defaults
from auth.errors import AuthorizationError
from auth.store import AuthStore
from auth.tokens import TokenService
from core.config import get_settings

logger = logging.getLogger("tenantgate.cli")

CLI_USER = "cli"


def _init_db(store: AuthStore, args: argparse.Namespace) -> int:
    if initialize_defaults(store, args.owner):
        print(f"  Initialized. {args.owner} can now log in and will own a new account.")
    else:
        print("  Store already initialized; nothing to do.")
    return 0


def _invite_account(store: AuthStore, args: argparse.Namespace) -> int:
    invite = AdminService(store).invite_to_account(
        args.email, args.account_owner, args.role, created_by=CLI_USER, days=args.days
    )
    print(f"  Invited {invite.email} to account {invite.account_id} as {invite.role.name}")
    print(f"  Expires {invite.utc_expiration:%Y-%m-%d %H:%M} UTC")
    return 0


def _invite_app(store: AuthStore, args: argparse.Namespace) -> int:
    invite = AdminService(store).invite_to_application(
        args.email, created_by=CLI_USER, account_type_name=args.account_type, days=args.days
    )
    print(f"  Invited {invite.email} to create a {invite.account_type.name} account")
    print(f"  Expires {invite.utc_expiration:%Y-%m-%d %H:%M} UTC")
    return 0


def _pre_authorize(store: AuthStore, args: argparse.Namespace) -> int:
    entry = AdminService(store).pre_authorize(args.email, created_by=CLI_USER, account_type_name=args.account_type)
    print(f"  Pre-authorized {entry.email} ({entry.account_type.name})")
    return 0


def _issue_token(store: AuthStore, args: argparse.Namespace) -> int:
    cfg = get_settings()
    tokens = TokenService(
        store,
        cfg.secret_key,
        issuer=cfg.token_issuer,
        audience=cfg.token_audience,
        max_active_refresh_tokens=cfg.max_active_refresh_tokens,
        redeem_access_seconds=cfg.refresh_redeem_access_seconds,
    )
    # Token goes to stdout alone so it can be captured by scripts.
    print(tokens.issue_access_token_for_email(args.email, args.minutes * 60))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantgate",
        description="Manage TenantGate accounts, invitations and tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:")[1].split("Environment")[0],
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables and seed roles, account type and owner invite")
    p.add_argument("--owner", required=True, metavar="EMAIL", help="Email of the first administrator")
    p.set_defaults(handler=_init_db)

    p = sub.add_parser("invite-account", help="Invite an email into an existing account")
    p.add_argument("email")
    p.add_argument("--account-owner", required=True, metavar="EMAIL", help="Owner email of the target account")
    p.add_argument("--role", required=True, help="Role granted on first login")
    p.add_argument("--days", type=int, default=DEFAULT_INVITE_DAYS, help="Days until the invite expires")
    p.set_defaults(handler=_invite_account)

    p = sub.add_parser("invite-app", help="Invite an email to create a new account")
    p.add_argument("email")
    p.add_argument("--account-type", default=DEFAULT_ACCOUNT_TYPE)
    p.add_argument("--days", type=int, default=DEFAULT_INVITE_DAYS, help="Days until the invite expires")
    p.set_defaults(handler=_invite_app)

    p = sub.add_parser("pre-authorize", help="Allow an email to self-provision an admin account")
    p.add_argument("email")
    p.add_argument("--account-type", default=DEFAULT_ACCOUNT_TYPE)
    p.set_defaults(handler=_pre_authorize)

    p = sub.add_parser("issue-token", help="Print a signed access token for a user")
    p.add_argument("email")
    p.add_argument("--minutes", type=int, default=30)
    p.set_defaults(handler=_issue_token)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    store = AuthStore(args.database_url or get_settings().database_url)
    try:
        return args.handler(store, args)
    except AuthorizationError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
