import os
from typing import Optional

import redis.asyncio as redis_async

from assistant.config import settings
from assistant.logging_config import get_logger

logger = get_logger("cache")

_redis_client: Optional[redis_async.Redis] = None
_redis_url: Optional[str] = None


def get_redis() -> Optional[redis_async.Redis]:
    """Shared async Redis client. None under pytest so tests opt in with their own fake."""
    global _redis_client, _redis_url
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return None
    if _redis_client is None or _redis_url != settings.redis_url:
        _redis_url = settings.redis_url
        _redis_client = redis_async.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    except Exception as e:
        logger.warning(f"Redis close failed: {e}")
    _redis_client = None
    _redis_url = None
