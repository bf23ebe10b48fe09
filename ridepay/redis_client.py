import redis.asyncio as aioredis
from ridepay.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None

ANY_VEHICLE = "any"


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

def geo_key(vehicle_type: str | None) -> str:
    return f"drivers:geo:{(vehicle_type or ANY_VEHICLE).lower()}"


async def geo_add_driver(
    redis: aioredis.Redis,
    vehicle_type: str | None,
    driver_id: str,
    lat: float,
    lng: float,
) -> None:
    """Index an available driver under its vehicle type and the catch-all key."""
    await redis.geoadd(geo_key(ANY_VEHICLE), [lng, lat, driver_id])
    if vehicle_type:
        await redis.geoadd(geo_key(vehicle_type), [lng, lat, driver_id])


async def geo_remove_driver(redis: aioredis.Redis, vehicle_type: str | None, driver_id: str) -> None:
    await redis.zrem(geo_key(ANY_VEHICLE), driver_id)
    if vehicle_type:
        await redis.zrem(geo_key(vehicle_type), driver_id)


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    vehicle_type: str | None,
    lat: float,
    lng: float,
    radius_km: float,
    count: int = 15,
) -> list[str]:
    """Return up to `count` driver IDs nearest to the given coordinates."""
    results = await redis.geosearch(
        geo_key(vehicle_type),
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
    )
    return results  # type: ignore[return-value]


async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)


async def cache_delete(redis: aioredis.Redis, key: str) -> None:
    await redis.delete(key)


def trip_cache_key(trip_id: str) -> str:
    return f"trip:{trip_id}:status"
