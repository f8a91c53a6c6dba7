import json
from typing import Any, Optional

from .config import IDEMPOTENCY_TTL_SECONDS


class IdempotencyCache:
    """Request-id -> response cache with a TTL, kept in Redis."""

    def __init__(self, redis, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS, prefix: str = "idem"):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, idem_key: str) -> str:
        return f"{self.prefix}:{idem_key}"

    async def get(self, idem_key: str) -> Optional[dict[str, Any]]:
        raw = await self.redis.get(self._key(idem_key))
        return json.loads(raw) if raw else None

    async def put(self, idem_key: str, response: dict[str, Any]) -> None:
        await self.redis.setex(self._key(idem_key), self.ttl_seconds, json.dumps(response))
