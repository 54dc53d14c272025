"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py / crossdomain.py (to apply per-route limits with
@limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits come from SIGN_IN_RATE_LIMIT and TOKEN_RATE_LIMIT; they are read once
at import, like every other module-level setting.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

SIGN_IN_LIMIT = _settings.sign_in_rate_limit
TOKEN_LIMIT = _settings.token_rate_limit

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
