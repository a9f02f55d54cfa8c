"""
Shared Redis client.

Redis is optional: without REDIS_URL the slot cache is skipped and events
are delivered in-process only.
"""

from redis import Redis

from .config import settings


def make_redis(url: str | None) -> Redis | None:
    if not url:
        return None
    return Redis.from_url(url, decode_responses=True)


redis_client = make_redis(settings.redis_url)
