"""
Driver to trip matching engine.

Flow:
  1. Receive trip_id + pickup coords + preferred vehicle type
  2. GEOSEARCH Redis for nearest available drivers
  3. Lock top candidate with a Redis NX key (prevents double-assignment)
  4. Atomically confirm the Trip and mark the driver on_trip in Postgres
  5. On failure try the next candidate; with none left the trip stays
     PENDING so a driver can accept it by hand
"""
import logging

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepay.config import get_settings
from ridepay.database import AsyncSessionLocal
from ridepay.models.trip import Trip
from ridepay.models.user import User
from ridepay.redis_client import geo_nearby_drivers, geo_remove_driver, cache_delete, trip_cache_key
from ridepay.services.trip_state import transition

logger = logging.getLogger(__name__)
settings = get_settings()


def lock_key(driver_id: str) -> str:
    return f"driver:{driver_id}:lock"


async def run_matching(
    trip_id: str,
    pickup_lat: float,
    pickup_lng: float,
    vehicle_type: str | None,
    redis: aioredis.Redis,
    session_factory: async_sessionmaker = AsyncSessionLocal,
) -> bool:
    """
    Attempts to find and assign a driver for the given trip.
    Returns True on success, False if no driver found.
    """
    async with session_factory() as db:
        candidates = await geo_nearby_drivers(
            redis,
            vehicle_type,
            pickup_lat,
            pickup_lng,
            radius_km=settings.matching_radius_km,
            count=settings.matching_max_candidates,
        )

        if not candidates:
            logger.info("No nearby drivers for trip=%s, left pending", trip_id)
            return False

        for driver_id in candidates:
            key = lock_key(driver_id)
            acquired = await redis.set(
                key,
                trip_id,
                nx=True,
                px=settings.matching_timeout_seconds * 1000,
            )
            if not acquired:
                continue  # driver locked by another trip

            driver = await db.get(User, driver_id)
            if driver is None or driver.role != "DRIVER" or driver.driver_status != "available":
                await redis.delete(key)
                continue

            try:
                assigned = await assign_driver(trip_id, driver_id, db)
            except Exception as exc:
                logger.error("Assignment error trip=%s driver=%s: %s", trip_id, driver_id, exc)
                await db.rollback()
                await redis.delete(key)
                continue

            if assigned:
                logger.info("Matched trip=%s to driver=%s", trip_id, driver_id)
                await geo_remove_driver(redis, driver.vehicle_type, driver_id)
                await cache_delete(redis, trip_cache_key(trip_id))
                return True
            await redis.delete(key)

        logger.info("All candidates busy for trip=%s, left pending", trip_id)
        return False


async def assign_driver(trip_id: str, driver_id: str, db: AsyncSession) -> bool:
    """
    Atomically:
      - Update trip status -> CONFIRMED with driver_id
      - Update driver status -> on_trip
    Uses SELECT FOR UPDATE to prevent race conditions.
    """
    result = await db.execute(
        select(User)
        .where(User.id == driver_id, User.driver_status == "available")
        .with_for_update(skip_locked=True)
    )
    driver = result.scalar_one_or_none()
    if driver is None:
        return False

    trip_result = await db.execute(
        select(Trip).where(Trip.id == trip_id, Trip.status == "PENDING").with_for_update()
    )
    trip = trip_result.scalar_one_or_none()
    if trip is None:
        return False

    driver.driver_status = "on_trip"
    transition(trip, "CONFIRMED")
    trip.driver_id = driver_id

    await db.commit()
    return True
