"""
auth/oauth.py -- Authlib provider registry and provider-to-claims mapping.

Providers are switched on purely by configuration: a provider whose client id
and secret (and, for generic OIDC, discovery URL) are all set is registered
on the module-level `oauth` registry at import time and listed by
get_enabled_providers(). Nothing else in the code base names providers.

After the callback's code exchange, get_oauth_identity() turns the provider's
answer into one ClaimsIdentity shape: email, nameidentifier, name, picture
and a provider-type marker. The authorization orchestrator only ever sees
that shape.

Security notes:
  Only provider-verified emails are accepted. Admission is keyed on email,
  and an unverified address may have been typed in by someone who does not
  own it. Rejections raise InvalidIdentityError.

  authlib stores and checks the OAuth `state` value in the Starlette session
  between the redirect and the callback.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from authlib.integrations.starlette_client import OAuth

from auth.claims import ClaimsIdentity, ClaimTypes
from auth.errors import InvalidIdentityError
from auth.models import OAuthTokenInfo
from core.config import Settings, get_settings

logger = logging.getLogger("tenantgate.auth.oauth")

_OIDC_SCOPE = {"scope": "openid email profile"}


def _configured_providers(cfg: Settings) -> list[tuple[str, str, dict]]:
    """(name, label, authlib register kwargs) for every provider with credentials."""
    providers: list[tuple[str, str, dict]] = []
    if cfg.github_client_id and cfg.github_client_secret:
        # GitHub publishes no discovery document; endpoints are fixed.
        providers.append(
            (
                "github",
                "GitHub",
                {
                    "client_id": cfg.github_client_id,
                    "client_secret": cfg.github_client_secret,
                    "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106
                    "authorize_url": "https://github.com/login/oauth/authorize",
                    "api_base_url": "https://api.github.com/",
                    "client_kwargs": {"scope": "read:user user:email"},
                },
            )
        )
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append(
            (
                "google",
                "Google",
                {
                    "client_id": cfg.google_client_id,
                    "client_secret": cfg.google_client_secret,
                    "server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration",
                    "client_kwargs": _OIDC_SCOPE,
                },
            )
        )
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append(
            (
                "oidc",
                cfg.oidc_display_name,
                {
                    "client_id": cfg.oidc_client_id,
                    "client_secret": cfg.oidc_client_secret,
                    "server_metadata_url": cfg.oidc_discovery_url,
                    "client_kwargs": _OIDC_SCOPE,
                },
            )
        )
    return providers


def build_registry(cfg: Settings) -> OAuth:
    registry = OAuth()
    for name, label, kwargs in _configured_providers(cfg):
        registry.register(name=name, **kwargs)
        logger.info("OAuth provider %s registered (%s)", name, label)
    return registry


oauth = build_registry(get_settings())


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    return [{"name": name, "label": label} for name, label, _ in _configured_providers(get_settings())]


# ---------------------------------------------------------------------------
# Token response -> claims identity
# ---------------------------------------------------------------------------


async def get_oauth_identity(client, provider: str, token: dict) -> ClaimsIdentity:
    """Normalize a provider's code-exchange result into a ClaimsIdentity.

    `client` is the authlib client for `provider` (GitHub needs it for two
    API calls); `token` is what authorize_access_token() returned.

    Raises:
        InvalidIdentityError: unknown provider, missing claims, or no
            verified email.
    """
    if provider == "github":
        profile = await _github_profile(client, token)
    elif provider in ("google", "oidc"):
        profile = _oidc_profile(provider, token)
    else:
        raise InvalidIdentityError(f"Unsupported OAuth provider {provider!r}.")

    identity = ClaimsIdentity(authentication_type=provider)
    identity.add(ClaimTypes.PROVIDER_TYPE, provider)
    for claim_type, value in profile.items():
        if value:
            identity.add(claim_type, str(value))
    return identity


async def _github_profile(client, token: dict) -> dict:
    """GET /user for the profile, GET /user/emails for the primary verified address."""
    user_resp = await client.get("user", token=token)
    user_resp.raise_for_status()
    profile = user_resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email = next(
        (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
        None,
    )
    if not email:
        logger.warning("GitHub login rejected for id=%s: no primary verified email", profile.get("id"))
        raise InvalidIdentityError("GitHub account has no primary verified email address.")

    return {
        ClaimTypes.EMAIL: email,
        ClaimTypes.NAME_IDENTIFIER: profile.get("id"),
        ClaimTypes.NAME: profile.get("name") or profile.get("login"),
        ClaimTypes.PICTURE: profile.get("avatar_url"),
    }


def _oidc_profile(provider: str, token: dict) -> dict:
    # authlib parses the id_token into token["userinfo"]. A missing
    # email_verified claim counts as unverified.
    userinfo = token.get("userinfo") or {}
    if not userinfo.get("email") or not userinfo.get("sub"):
        raise InvalidIdentityError(f"{provider} returned no email or subject claim.")
    if not userinfo.get("email_verified", False):
        logger.warning("%s login rejected for sub=%s: email not verified", provider, userinfo.get("sub"))
        raise InvalidIdentityError(f"{provider} has not verified the email address {userinfo['email']!r}.")

    return {
        ClaimTypes.EMAIL: userinfo["email"],
        ClaimTypes.NAME_IDENTIFIER: userinfo["sub"],
        ClaimTypes.NAME: userinfo.get("name"),
        ClaimTypes.PICTURE: userinfo.get("picture"),
    }


def oauth_token_info(token: dict, now: datetime | None = None) -> OAuthTokenInfo:
    """Capture the provider's token response for storage on the user.

    authlib sets an absolute expires_at (epoch seconds); it wins over the
    relative expires_in, which is measured from `now`.
    """
    expires_in = token.get("expires_in")
    expires_at = token.get("expires_at")
    if expires_at is not None:
        utc_expires_at = datetime.fromtimestamp(int(expires_at), tz=timezone.utc)
    elif expires_in is not None:
        utc_expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=int(expires_in))
    else:
        utc_expires_at = None
    return OAuthTokenInfo(
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        token_type=token.get("token_type"),
        expires_in=int(expires_in) if expires_in is not None else None,
        utc_expires_at=utc_expires_at,
    )
