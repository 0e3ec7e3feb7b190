import time

BUCKET_TTL_SECONDS = 3600


def _field(data: dict, name: str):
    # Clients built with or without decode_responses return different key types.
    if name in data:
        return data[name]
    return data.get(name.encode())


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    now = time.time()
    bucket_key = f"rl:{key}"

    data = await redis.hgetall(bucket_key)
    tokens = float(_field(data, "tokens") or capacity)
    last = float(_field(data, "last") or now)

    tokens = min(capacity, tokens + (now - last) * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, BUCKET_TTL_SECONDS)
    return allowed


async def checkout_allowed(redis, client_ip: str, per_minute: int) -> bool:
    return await token_bucket(redis, f"checkout:{client_ip}", capacity=per_minute, refill_per_sec=per_minute / 60)
