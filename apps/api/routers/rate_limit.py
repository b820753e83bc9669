"""Per-client rate limits for ledger write endpoints (Redis, in-process fallback)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "wl:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        _local_counters[key] = (count + 1, reset_at)
        return count + 1 <= limit


async def _consume_redis(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
        return int(current)
    finally:
        await client.aclose()


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable[..., None]:
    """FastAPI dependency allowing ``limit`` calls per client per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_KEY_PREFIX}:{scope}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis(key, window_seconds) <= limit
        except Exception as exc:
            logger.debug("rate_limit_redis_unavailable scope=%s: %s", scope, exc)
            allowed = await _consume_local(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {scope}. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
