"""
Drivers router: PATCH /v1/drivers/{id}/status, POST /v1/drivers/{id}/location,
                 POST /v1/drivers/{id}/accept
"""
import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.database import AsyncSessionLocal, get_db
from ridepay.middleware.auth import get_current_driver
from ridepay.models.trip import Trip
from ridepay.models.user import User
from ridepay.redis_client import get_redis, geo_add_driver, geo_remove_driver, cache_delete, trip_cache_key
from ridepay.schemas.schemas import (
    AcceptTripRequest, AcceptTripResponse, DriverStatusEnum, LocationUpdateRequest,
)
from ridepay.services.trip_state import InvalidTransition, transition

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


def _ensure_self(driver_id: str, driver: User) -> None:
    if driver.id != driver_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act for another driver")


@router.patch("/{driver_id}/status", status_code=status.HTTP_200_OK)
async def update_driver_status(
    driver_id: str,
    new_status: DriverStatusEnum,
    driver: User = Depends(get_current_driver),
    db: AsyncSession = Depends(get_db),
):
    """Toggle driver online/offline (available <-> offline)."""
    _ensure_self(driver_id, driver)
    if new_status == DriverStatusEnum.on_trip:
        raise HTTPException(status_code=400, detail="status must be one of {'offline', 'available'}")
    if driver.driver_status == "on_trip":
        raise HTTPException(status_code=409, detail="Driver is on a trip")

    driver.driver_status = new_status.value
    await db.commit()

    if new_status == DriverStatusEnum.offline:
        redis = await get_redis()
        await geo_remove_driver(redis, driver.vehicle_type, driver_id)
    return {"id": driver_id, "status": new_status.value}


@router.post("/{driver_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    driver: User = Depends(get_current_driver),
):
    """
    Fast path: writes to Redis GEO immediately.
    Slow path: persists to Postgres asynchronously.
    """
    _ensure_self(driver_id, driver)
    redis = await get_redis()

    # Only index if driver is available
    if driver.driver_status == "available":
        await geo_add_driver(redis, driver.vehicle_type, driver_id, payload.lat, payload.lng)

    asyncio.create_task(_flush_location_to_db(driver_id, payload.lat, payload.lng))


async def _flush_location_to_db(driver_id: str, lat: float, lng: float) -> None:
    """Background task: persist driver location to Postgres."""
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(
                update(User)
                .where(User.id == driver_id)
                .values(lat=lat, lng=lng, location_updated_at=datetime.now(timezone.utc))
            )
            await db.commit()
    except Exception as exc:
        logger.error("Failed to flush driver location to DB: %s", exc)


@router.post("/{driver_id}/accept", response_model=AcceptTripResponse)
async def accept_trip(
    driver_id: str,
    payload: AcceptTripRequest,
    driver: User = Depends(get_current_driver),
    db: AsyncSession = Depends(get_db),
):
    """
    Driver picks up a PENDING trip by hand.
    Uses SELECT FOR UPDATE to prevent double-acceptance.
    """
    _ensure_self(driver_id, driver)
    if driver.driver_status != "available":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Driver is not available")

    result = await db.execute(
        select(Trip).where(Trip.id == payload.trip_id).with_for_update()
    )
    trip = result.scalar_one_or_none()
    if not trip:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    if trip.driver_id and trip.driver_id != driver_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Trip already assigned")
    if trip.preferred_vehicle_type and driver.vehicle_type and trip.preferred_vehicle_type != driver.vehicle_type:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Vehicle type does not match trip")

    try:
        transition(trip, "CONFIRMED")
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    trip.driver_id = driver_id
    driver.driver_status = "on_trip"
    await db.commit()

    redis = await get_redis()
    await geo_remove_driver(redis, driver.vehicle_type, driver_id)
    await cache_delete(redis, trip_cache_key(trip.id))
    logger.info("Driver %s accepted trip %s", driver_id, trip.id)

    return AcceptTripResponse(trip_id=trip.id, status=trip.status)
