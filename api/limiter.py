"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted through SlowAPIMiddleware) and by
api/routes/v1/auth.py (per-route limits on login and the code-sending
endpoints with @limiter.limit()).

One instance for the whole app, so every route counts against the same
in-memory store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
