"""
core/config.py -- TenantGate settings, read once from the environment.

Every environment read goes through get_settings(); nothing else touches
os.environ. Settings is a pydantic-settings BaseSettings, so each field maps
to the upper-cased env var (secret_key -> SECRET_KEY), a .env file in the
working directory is honoured, and values are type-checked on load.

get_settings() is wrapped in lru_cache, making the first call the only one
that builds a Settings object. Tests that need different values call
get_settings.cache_clear() or construct Settings(...) directly.

Secret policy:
  SECRET_KEY signs access tokens, keys the refresh-token HMAC and signs the
  session cookie. It must be at least 32 characters. With DEBUG=true a
  missing key is replaced by a random one (and a warning); without DEBUG the
  process refuses to start, since a per-process key would silently
  invalidate every token and session on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default usable in development."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = False
    # "" means unset; _check_secret_key() replaces it or refuses to start.
    secret_key: str = ""
    database_url: str = "sqlite:///tenantgate.db"

    # Access tokens (JWT, HS256)
    token_issuer: str = "tenantgate"
    token_audience: str = "tenantgate"
    access_token_expire_seconds: int = 1800

    # Refresh tokens (opaque, stored as HMAC)
    refresh_token_expire_seconds: int = 14 * 24 * 3600
    # Lifetime of the access token minted when a refresh token is redeemed.
    refresh_redeem_access_seconds: int = 900
    # Hard cap per user; creation fails until old tokens are revoked.
    max_active_refresh_tokens: int = 10

    # HTTP surface
    secure_cookies: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"
    token_rate_limit: str = "30/minute"
    login_success_redirect: str = "/"
    login_failed_redirect: str = "/login?error=unauthorized"

    # OAuth providers. A provider is enabled only when all of its values are set.
    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # Provider connections. Extra scopes requested on the consent screen, keyed
    # by provider name, e.g. CONNECTION_SCOPES='{"google": "openid email
    # https://www.googleapis.com/auth/calendar"}'. A provider missing here is
    # asked for its login scopes.
    connection_scopes: dict[str, str] = {}

    @model_validator(mode="after")
    def _check_secret_key(self) -> "Settings":
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required when DEBUG is off. "
                    "Set it in the environment or .env, or set DEBUG=true for local development."
                )
            self.secret_key = secrets.token_hex(_MIN_SECRET_LENGTH)
            logger.warning("No SECRET_KEY set; generated a throwaway key. Tokens and sessions end on restart.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        return self

    @model_validator(mode="after")
    def _check_token_policy(self) -> "Settings":
        if self.max_active_refresh_tokens < 1:
            raise ValueError("MAX_ACTIVE_REFRESH_TOKENS must be at least 1.")
        for name in ("access_token_expire_seconds", "refresh_token_expire_seconds", "refresh_redeem_access_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call."""
    return Settings()
