"""
Redis connection for webhook event de-duplication
Supports both standard Redis and Upstash managed Redis
"""

import logging
import os
from typing import Optional

import redis

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None


def redis_configured() -> bool:
    """True when a Redis URL or host is set in the environment"""
    return bool(os.getenv("REDIS_URL") or os.getenv("REDIS_HOST"))


def _mask_url(redis_url: str) -> str:
    if "@" not in redis_url:
        return "****"
    url_parts = redis_url.split("@")
    protocol = url_parts[0].split(":")[0]
    return f"{protocol}:****@{url_parts[1]}"


def get_redis_client() -> redis.Redis:
    """
    Get or create the shared Redis client.

    Raises whatever the connection test raises; callers decide whether to
    fall back.
    """
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection for event de-duplication...")

        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            logger.info(f"📡 Using Redis URL connection: {_mask_url(redis_url)}")
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )
        else:
            redis_host = os.getenv("REDIS_HOST", "localhost")
            redis_port = int(os.getenv("REDIS_PORT", "6379"))
            redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
            logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (SSL {'on' if redis_ssl else 'off'})")
            client = redis.Redis(
                host=redis_host,
                port=redis_port,
                password=os.getenv("REDIS_PASSWORD", None),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=redis_ssl,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )

        try:
            client.ping()
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise
        logger.info("Redis connected successfully")
        redis_client = client

    return redis_client
