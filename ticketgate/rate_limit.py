import time


def _field(data: dict, name: str, default: float) -> float:
    # clients built with or without decode_responses
    val = data.get(name, data.get(name.encode(), default))
    return float(val)


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    now = time.time()
    bucket_key = f"rl:{key}"

    data = await redis.hgetall(bucket_key)
    tokens = _field(data, "tokens", capacity)
    last = _field(data, "last", now)

    # Refill
    tokens = min(capacity, tokens + (now - last) * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, 3600)
    return allowed


def per_minute(limit: int) -> tuple[int, float]:
    """(capacity, refill_per_sec) for a limit expressed per minute."""
    return limit, limit / 60
