"""Rate limiting configuration for the sync API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from omnisync.core.config import settings
from omnisync.core.redis_client import get_redis_url

# Use Redis for multi-worker support, in-memory otherwise (dev/test mode)
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)
SYNC_TRIGGER_LIMIT = f"{max(settings.RATE_LIMIT_SYNC, 1)}/minute"

_redis_url = None if IS_TESTING else get_redis_url()
if _redis_url:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri=_redis_url,
        default_limits=DEFAULT_LIMITS,
        in_memory_fallback_enabled=True,
    )
else:
    if not IS_TESTING:
        logging.getLogger(__name__).info("REDIS_URL not set, rate limiting in-memory")
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
        default_limits=DEFAULT_LIMITS,
        enabled=not IS_TESTING,
    )
