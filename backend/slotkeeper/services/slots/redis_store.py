# backend/slotkeeper/services/slots/redis_store.py
"""
Redis storage for base slots using Sorted Sets.

Key format: slots:day:{provider_id}:{date}:{duration}
Value: Sorted Set where member = "YYYY-MM-DDTHH:MM" (slot start, UTC),
       score = expire_ts (unix timestamp when slot stops being bookable).

Query: ZRANGEBYSCORE key {now_ts} +inf → only live slots.
Sentinel: "__empty__" with score=0 marks "calculated, zero slots".
"""

import time
from datetime import date, datetime
from redis import Redis

from ...utils.clock import timestamp
from .config import BookingConfig, get_booking_config


EMPTY_SENTINEL = "__empty__"
_MEMBER_FORMAT = "%Y-%m-%dT%H:%M"


class SlotsRedisStore:
    """Redis storage wrapper using Sorted Sets for slot data."""

    KEY_PREFIX = "slots:day"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, provider_id: int, dt: date, duration_minutes: int) -> str:
        return f"{self.KEY_PREFIX}:{provider_id}:{dt.isoformat()}:{duration_minutes}"

    # ── Write ────────────────────────────────────────────────────────────

    def store_multiple_days(
        self,
        provider_id: int,
        duration_minutes: int,
        days_slots: dict[date, list[tuple[datetime, float]]],
    ) -> None:
        """
        Batch store calculated slots for multiple days via pipeline.

        Args:
            provider_id: Provider ID
            duration_minutes: Slot length the grid was built for
            days_slots: date → list of (start, expire_ts) pairs.
                        Empty list → sentinel is stored.
        """
        if not days_slots:
            return

        ttl_cap = int(time.time()) + self.config.cache_ttl_seconds

        pipe = self.redis.pipeline()
        for dt, slots in days_slots.items():
            key = self._key(provider_id, dt, duration_minutes)
            pipe.delete(key)

            if slots:
                mapping = {
                    start.strftime(_MEMBER_FORMAT): expire_ts
                    for start, expire_ts in slots
                }
                pipe.zadd(key, mapping)
                # Key lives until the last slot expires + 1 minute buffer,
                # capped by the cache TTL
                max_expire = max(expire_ts for _, expire_ts in slots)
                pipe.expireat(key, min(int(max_expire) + 60, ttl_cap))
            else:
                # Empty day: sentinel so EXISTS returns True
                pipe.zadd(key, {EMPTY_SENTINEL: 0})
                end_of_day = datetime.combine(dt, datetime.max.time())
                pipe.expireat(key, min(int(timestamp(end_of_day)) + 86400, ttl_cap))

        pipe.execute()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_available_slots(
        self,
        provider_id: int,
        dt: date,
        duration_minutes: int,
        now: datetime,
    ) -> list[datetime] | None:
        """
        Get live base slots for a day.

        Returns:
            Sorted list of slot starts, or None on cache miss.
        """
        key = self._key(provider_id, dt, duration_minutes)
        if not self.redis.exists(key):
            return None

        members = self.redis.zrangebyscore(key, timestamp(now), "+inf")
        starts = []
        for m in members:
            m = m.decode() if isinstance(m, bytes) else m
            if m == EMPTY_SENTINEL:
                continue
            starts.append(datetime.strptime(m, _MEMBER_FORMAT))
        return sorted(starts)

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_day_slots(
        self,
        provider_id: int,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached slots (all durations).

        Args:
            provider_id: Provider ID
            dates: Specific dates, or None to delete all for provider.

        Returns:
            Number of deleted keys.
        """
        if dates:
            patterns = [f"{self.KEY_PREFIX}:{provider_id}:{dt.isoformat()}:*" for dt in dates]
        else:
            patterns = [f"{self.KEY_PREFIX}:{provider_id}:*"]

        keys = []
        for pattern in patterns:
            keys.extend(self.redis.scan_iter(pattern))

        if not keys:
            return 0

        return self.redis.delete(*keys)
