import os
import time
from typing import Dict, Optional

import redis
from loguru import logger

DEFAULT_TTL = 24 * 3600


class Idem:
    """Redis-backed guard against processing the same tracking event twice."""

    def __init__(self, namespace: str = "evt", redis_url: Optional[str] = None):
        self.namespace = namespace
        self._memory_keys: Dict[str, float] = {}
        try:
            self.r = redis.from_url(redis_url or os.getenv("REDIS_URL", "redis://localhost:6379"))
            self.r.ping()
            logger.info("Redis connection established successfully")
        except Exception as e:
            logger.error(f"Redis connection failed, using in-process dedupe: {e}")
            self.r = None

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def check_and_set(self, key: Optional[str], ttl: int = DEFAULT_TTL) -> bool:
        """
        Claim a key.

        Args:
            key: Event id (or any idempotency key)
            ttl: Seconds the claim lasts

        Returns:
            True if this is the first time the key is seen, False if it is a
            duplicate or empty
        """
        if not key:
            return False

        try:
            if self.r is not None:
                return self.r.set(self._key(key), int(time.time()), ex=ttl, nx=True) is True

            now = time.time()
            # Drop expired claims
            self._memory_keys = {k: v for k, v in self._memory_keys.items() if v > now}
            if key in self._memory_keys:
                return False
            self._memory_keys[key] = now + ttl
            return True
        except Exception as e:
            # Fail open - allow processing to continue
            logger.error(f"Idempotency check failed for {key}: {e}")
            return True

    def clear_key(self, key: str) -> bool:
        try:
            if self.r is not None:
                return bool(self.r.delete(self._key(key)))
            return self._memory_keys.pop(key, None) is not None
        except Exception as e:
            logger.error(f"Failed to clear key {key}: {e}")
            return False
