import os
from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from threadline.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_TTL_SECONDS = int(float(os.environ.get("DEDUP_TTL_SECONDS", "86400")))
DEDUP_SOCKET_TIMEOUT_SECONDS = float(os.environ.get("DEDUP_SOCKET_TIMEOUT_SECONDS", "0.3"))


def create_redis_client(redis_url: str, socket_timeout_seconds: float = DEDUP_SOCKET_TIMEOUT_SECONDS):
    return redis_async.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=socket_timeout_seconds,
        socket_timeout=socket_timeout_seconds,
    )


class RedisDedupGuard:
    """Fast-path duplicate check for provider redeliveries.

    Only an optimisation: when Redis is down the repository's
    insert-or-ignore on (thread, external id) still drops duplicates.
    """

    def __init__(self, redis_client, ttl_seconds: int = DEDUP_TTL_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def seen_before(self, thread_id: str, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        key = f"threadline:dedup:{thread_id}:{message_id}"
        try:
            was_set = await self.redis.set(key, "1", ex=self.ttl_seconds, nx=True)
        except (RedisError, OSError) as e:
            logger.warning(f"Dedup redis unavailable, relying on repository: {e}")
            return False
        if not was_set:
            logger.info(
                "Duplicate message_id (redis)",
                extra={"context": {"thread_id": thread_id, "message_id": message_id}},
            )
            return True
        return False

    async def close(self) -> None:
        await self.redis.aclose()
