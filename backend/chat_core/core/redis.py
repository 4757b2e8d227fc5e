import logging
import time
from typing import Optional

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from chat_core.core.config import get_settings

logger = logging.getLogger(__name__)

_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAYS = [1, 2, 4]  # Exponential backoff in seconds


def _reset_redis() -> None:
    """Reset Redis state (for testing)."""
    global _redis_pool, _redis_client
    _redis_pool = None
    _redis_client = None


def init_redis() -> Redis:
    """Initialize Redis connection pool with connectivity check.

    Retries connection up to 3 times with exponential backoff (1s, 2s, 4s).
    Raises RuntimeError if all attempts fail.
    """
    global _redis_pool, _redis_client

    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            get_settings().redis_url,
            max_connections=10,
            decode_responses=True,
        )
        _redis_client = Redis(connection_pool=_redis_pool)

    last_error: Optional[Exception] = None

    for attempt in range(MAX_RETRIES):
        try:
            _redis_client.ping()
            logger.info("Redis connection verified")
            return _redis_client
        except RedisError as e:
            last_error = e
            if attempt < MAX_RETRIES - 1:
                delay = RETRY_DELAYS[attempt]
                logger.warning(
                    "Redis ping failed (attempt %d/%d), retrying in %ds: %s",
                    attempt + 1,
                    MAX_RETRIES,
                    delay,
                    e,
                )
                time.sleep(delay)

    raise RuntimeError(f"Redis connection failed after {MAX_RETRIES} attempts: {last_error}")


def close_redis() -> None:
    """Close Redis connection pool."""
    global _redis_pool, _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
    if _redis_pool is not None:
        _redis_pool.disconnect()
        _redis_pool = None


def get_redis() -> Redis:
    """Get Redis client instance.

    Must call init_redis() during application startup before using this.

    Raises:
        RuntimeError: If Redis is not initialized
    """
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


class ChannelKeys:
    """Pub/sub channel names consumed by the push transport."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def user(self, user_id: str) -> str:
        """Channel for every active connection of one user."""
        return f"{self.prefix}:user:{user_id}"

    def conversation(self, conversation_id: str) -> str:
        """Channel for every active member of a conversation."""
        return f"{self.prefix}:conversation:{conversation_id}"
