import json
from typing import Optional

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ridepay.redis_client import get_redis


IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(key: str, user_id: str) -> str:
    return f"idempotency:{user_id}:{key}"


async def check_idempotency(request: Request, user_id: str) -> Optional[Response]:
    """
    Returns a cached Response if the Idempotency-Key was already used by this
    user, otherwise returns None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    redis = await get_redis()
    cached = await redis.get(_cache_key(key, user_id))

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(key: str, user_id: str, status_code: int, body) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    redis = await get_redis()
    await redis.setex(
        _cache_key(key, user_id),
        IDEMPOTENCY_TTL,
        json.dumps({"status_code": status_code, "body": jsonable_encoder(body)}),
    )
