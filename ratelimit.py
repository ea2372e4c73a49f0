import logging
import math
import time
from typing import Optional

from fastapi import HTTPException, Request

from config import Config
from models import RateLimitRecord
from store import TokenStore

logger = logging.getLogger(__name__)


def get_client_identifier(request: Request) -> str:
    """Identify the caller by proxy headers, falling back to the peer address"""
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    if request.client:
        return request.client.host
    return "unknown"


class RateLimiter:
    """
    Fixed-window counter kept in the token store under ratelimit:{identifier}.

    The read-modify-write is not atomic across concurrent requests, so the
    limit is best-effort under high concurrency.
    """

    def __init__(self, config: Config, store: TokenStore):
        self.config = config
        self.store = store

    async def check(self, identifier: str, limit: Optional[int] = None, window_seconds: Optional[int] = None):
        """Count a request and raise 429 once the window's limit is exceeded"""
        if not self.config.rate_limit_enabled:
            return

        limit = limit or self.config.rate_limit_requests
        window_seconds = window_seconds or self.config.rate_limit_window
        key = f"ratelimit:{identifier}"
        now = time.time()

        data = await self.store.get(key)
        record = RateLimitRecord.model_validate(data) if data else None
        if record is None or now > record.reset_at:
            record = RateLimitRecord(count=1, reset_at=now + window_seconds)
        else:
            record.count += 1

        await self.store.put(key, record.model_dump(), ttl=window_seconds * 2)

        if record.count > limit:
            retry_after = max(1, math.ceil(record.reset_at - now))
            logger.warning(f"Rate limit exceeded for {identifier}")
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(record.reset_at)),
                },
            )
