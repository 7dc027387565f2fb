"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it as middleware; api/routes/v1/auth.py applies per-route
limits to the OAuth callback and the refresh-token endpoints with
@limiter.limit(). Limits come from Settings (login_rate_limit,
token_rate_limit).

One shared instance means one counter store. Tests call limiter.reset()
between cases so counts do not leak across them.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
