"""
Trips router: quote, create, list, get, start, complete, cancel and
payment QR regeneration.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import get_settings
from ridepay.database import get_db
from ridepay.middleware.auth import get_current_driver, get_current_user
from ridepay.middleware.idempotency import check_idempotency, store_idempotency_result
from ridepay.models.payment import Payment
from ridepay.models.trip import Trip
from ridepay.models.user import User
from ridepay.redis_client import get_redis, cache_delete, cache_get, cache_set, trip_cache_key
from ridepay.schemas.schemas import (
    PaymentQRResponse, PriceBreakdown, RouteResponse, TripCancelRequest, TripCompleteRequest,
    TripCompleteResponse, TripCreateRequest, TripQuoteRequest, TripQuoteResponse, TripResponse,
    TripStatusEnum,
)
from ridepay.services.maps import GoogleMapsClient, MapsError, get_maps_client, haversine_km
from ridepay.services.matching import run_matching
from ridepay.services.pricing import estimate_minutes, price_trip, to_float_breakdown
from ridepay.services.settlement import (
    cancel_pending_payments, issue_stellar_payment, pending_payment, release_driver, settle_payment,
)
from ridepay.services.stellar import HorizonClient, get_horizon_client
from ridepay.services.trip_state import InvalidTransition, transition

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/trips", tags=["Trips"])

TRIP_CACHE_TTL = 60


def resolve_country(origin_country: Optional[str], destination_country: Optional[str], user: User) -> str:
    """Origin wins over destination, then the user's profile, then the default."""
    return (origin_country or destination_country or user.country or settings.default_country).upper()


async def _load_trip(db: AsyncSession, trip_id: str) -> Trip:
    trip = await db.get(Trip, trip_id)
    if not trip:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    return trip


def _ensure_participant(trip: Trip, user: User) -> None:
    if user.id not in (trip.passenger_id, trip.driver_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")


def _ensure_assigned_driver(trip: Trip, driver: User) -> None:
    if trip.driver_id != driver.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Trip is not assigned to you")


def _move(trip: Trip, next_state: str) -> None:
    try:
        transition(trip, next_state)
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


async def _invalidate(trip_id: str) -> None:
    redis = await get_redis()
    await cache_delete(redis, trip_cache_key(trip_id))


async def _route(maps: GoogleMapsClient, origin, destination) -> dict:
    try:
        return await maps.route((origin.lat, origin.lng), (destination.lat, destination.lng))
    except MapsError as exc:
        logger.warning("Route calculation failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/quote", response_model=TripQuoteResponse)
async def quote_trip(
    payload: TripQuoteRequest,
    user: User = Depends(get_current_user),
    maps: GoogleMapsClient = Depends(get_maps_client),
):
    """Route + price preview for the request form."""
    route = await _route(maps, payload.origin, payload.destination)
    country = resolve_country(payload.origin.country, payload.destination.country, user)
    vehicle = payload.vehicle_type.value if payload.vehicle_type else None
    one_way, final = price_trip(
        route["distance_km"], route["duration_minutes"], country, vehicle, payload.is_round_trip
    )
    return TripQuoteResponse(
        route=RouteResponse(**route),
        one_way_price=PriceBreakdown(**to_float_breakdown(one_way)),
        price=PriceBreakdown(**to_float_breakdown(final)),
        is_round_trip=payload.is_round_trip,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=TripResponse)
async def create_trip(
    payload: TripCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    maps: GoogleMapsClient = Depends(get_maps_client),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    # 1. Idempotency check
    if idempotency_key:
        cached = await check_idempotency(request, user.id)
        if cached:
            return cached

    if user.role != "PASSENGER":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only passengers can request trips")

    # 2. Route (reuse the quoted one when the client sends it)
    if payload.distance_km is None:
        route = await _route(maps, payload.origin, payload.destination)
    else:
        route = {
            "distance_km": payload.distance_km,
            "duration_minutes": payload.duration_minutes,
            "distance_text": payload.distance_text,
            "duration_text": payload.duration_text,
            "polyline": payload.route_polyline,
        }
        # A route is never shorter than the straight line between its ends
        straight_km = haversine_km(
            payload.origin.lat, payload.origin.lng, payload.destination.lat, payload.destination.lng
        )
        if route["distance_km"] < straight_km:
            logger.warning(
                "Trip request by %s sent distance %.3f km below straight line %.3f km",
                user.id, route["distance_km"], straight_km,
            )
            route.update(
                distance_km=straight_km, duration_minutes=None, distance_text=None, duration_text=None,
            )

    # 3. Server-side pricing
    country = resolve_country(payload.origin.country, payload.destination.country, user)
    vehicle = payload.preferred_vehicle_type.value if payload.preferred_vehicle_type else None
    _, final = price_trip(
        route["distance_km"], route["duration_minutes"], country, vehicle, payload.is_round_trip
    )
    duration = route["duration_minutes"]
    if duration is None:
        duration = int(round(estimate_minutes(route["distance_km"])))

    trip = Trip(
        passenger_id=user.id,
        origin_address=payload.origin.address,
        origin_lat=payload.origin.lat,
        origin_lng=payload.origin.lng,
        origin_place_id=payload.origin.place_id,
        destination_address=payload.destination.address,
        destination_lat=payload.destination.lat,
        destination_lng=payload.destination.lng,
        destination_place_id=payload.destination.place_id,
        scheduled_at=payload.scheduled_at,
        return_scheduled_at=payload.return_scheduled_at,
        passengers=payload.passengers,
        is_round_trip=payload.is_round_trip,
        preferred_vehicle_type=vehicle,
        distance_km=round(route["distance_km"], 3),
        duration_minutes=duration,
        distance_text=route.get("distance_text"),
        duration_text=route.get("duration_text"),
        route_polyline=route.get("polyline"),
        base_price=final["base_price"],
        distance_price=final["distance_price"],
        time_price=final["time_price"],
        total_price=final["total_price"],
        currency=final["currency"],
        status="PENDING",
        idempotency_key=f"{user.id}:{idempotency_key}" if idempotency_key else None,
    )
    db.add(trip)
    await db.commit()
    await db.refresh(trip)
    logger.info("Trip %s requested by %s (%s %s)", trip.id, user.id, trip.total_price, trip.currency)

    # 4. Kick off matching for immediate trips (fire-and-forget)
    if trip.scheduled_at is None:
        redis = await get_redis()
        asyncio.create_task(
            run_matching(
                trip_id=trip.id,
                pickup_lat=trip.origin_lat,
                pickup_lng=trip.origin_lng,
                vehicle_type=vehicle,
                redis=redis,
            )
        )

    response = TripResponse.model_validate(trip)

    # 5. Store idempotency result
    if idempotency_key:
        await store_idempotency_result(idempotency_key, user.id, 201, response.model_dump(mode="json"))

    return response


@router.get("", response_model=list[TripResponse])
async def list_trips(
    trip_status: Optional[TripStatusEnum] = None,
    limit: int = 50,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Trips where the caller is the passenger or the driver, newest first."""
    query = select(Trip).where(or_(Trip.passenger_id == user.id, Trip.driver_id == user.id))
    if trip_status:
        query = query.where(Trip.status == trip_status.value)
    result = await db.execute(query.order_by(Trip.created_at.desc()).limit(min(max(limit, 1), 200)))
    return [TripResponse.model_validate(t) for t in result.scalars().all()]


@router.get("/available", response_model=list[TripResponse])
async def list_available_trips(
    driver: User = Depends(get_current_driver),
    db: AsyncSession = Depends(get_db),
):
    """Unassigned PENDING trips a driver may accept."""
    query = select(Trip).where(Trip.status == "PENDING", Trip.driver_id.is_(None))
    if driver.vehicle_type:
        query = query.where(
            or_(Trip.preferred_vehicle_type.is_(None), Trip.preferred_vehicle_type == driver.vehicle_type)
        )
    result = await db.execute(query.order_by(Trip.created_at.asc()).limit(50))
    return [TripResponse.model_validate(t) for t in result.scalars().all()]


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    redis = await get_redis()

    # Cache-aside: check Redis first
    cache_key = trip_cache_key(trip_id)
    cached = await cache_get(redis, cache_key)
    if cached:
        resp = TripResponse(**json.loads(cached))
        if user.id in (resp.passenger_id, resp.driver_id):
            return resp

    trip = await _load_trip(db, trip_id)
    _ensure_participant(trip, user)
    resp = TripResponse.model_validate(trip)

    await cache_set(redis, cache_key, resp.model_dump_json(), ttl=TRIP_CACHE_TTL)
    return resp


@router.post("/{trip_id}/start", response_model=TripResponse)
async def start_trip(
    trip_id: str,
    driver: User = Depends(get_current_driver),
    db: AsyncSession = Depends(get_db),
):
    trip = await _load_trip(db, trip_id)
    _ensure_assigned_driver(trip, driver)
    _move(trip, "IN_PROGRESS")
    trip.started_at = datetime.now(timezone.utc)
    await db.commit()
    await _invalidate(trip.id)
    logger.info("Trip %s started by driver %s", trip.id, driver.id)
    return TripResponse.model_validate(trip)


@router.post("/{trip_id}/complete", response_model=TripCompleteResponse)
async def complete_trip(
    trip_id: str,
    payload: TripCompleteRequest,
    driver: User = Depends(get_current_driver),
    db: AsyncSession = Depends(get_db),
    horizon: HorizonClient = Depends(get_horizon_client),
):
    """
    End the ride and collect payment:
      - CASH settles on the spot (payment + trip COMPLETED, driver freed)
      - STELLAR issues a payment QR; the trip completes once the passenger's
        transaction is verified
    """
    trip = await _load_trip(db, trip_id)
    _ensure_assigned_driver(trip, driver)
    if trip.status != "IN_PROGRESS":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Trip is {trip.status}")
    if await pending_payment(db, trip.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A payment is already pending for this trip")

    if payload.payment_method.value == "CASH":
        payment = Payment(
            trip_id=trip.id,
            user_id=trip.passenger_id,
            amount=trip.total_price,
            currency=trip.currency,
            method="CASH",
            status="PENDING",
        )
        db.add(payment)
        await settle_payment(db, payment, trip)
        await db.commit()
        await _invalidate(trip.id)
        logger.info("Trip %s completed with cash payment %s", trip.id, payment.id)
        return TripCompleteResponse(
            trip=TripResponse.model_validate(trip),
            payment_id=payment.id,
            payment_status=payment.status,
        )

    if not driver.stellar_address:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Connect a Stellar wallet before accepting Stellar payments",
        )

    passenger = await db.get(User, trip.passenger_id)
    payment, qr = await issue_stellar_payment(
        db, trip, driver, horizon, payer_address=passenger.stellar_address if passenger else None
    )
    await db.commit()
    await _invalidate(trip.id)

    return TripCompleteResponse(
        trip=TripResponse.model_validate(trip),
        payment_id=payment.id,
        payment_status=payment.status,
        stellar=PaymentQRResponse(payment_id=payment.id, **_qr_fields(qr)),
    )


def _qr_fields(qr: dict) -> dict:
    return {
        "qr_code": qr["qr_code"],
        "payment_url": qr["payment_url"],
        "payment_address": qr["payment_address"],
        "xlm_amount": qr["xlm_amount"],
        "expires_at": qr["expires_at"],
        "transaction_xdr": qr["transaction_xdr"],
    }


@router.post("/{trip_id}/payment-qr", response_model=PaymentQRResponse)
async def regenerate_payment_qr(
    trip_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    horizon: HorizonClient = Depends(get_horizon_client),
):
    """Re-issue the QR of the pending Stellar payment (e.g. after it expired)."""
    trip = await _load_trip(db, trip_id)
    _ensure_participant(trip, user)
    if await pending_payment(db, trip.id, "STELLAR") is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending Stellar payment for this trip")

    driver = await db.get(User, trip.driver_id) if trip.driver_id else None
    if driver is None or not driver.stellar_address:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Driver has no Stellar address")

    passenger = await db.get(User, trip.passenger_id)
    payment, qr = await issue_stellar_payment(
        db, trip, driver, horizon, payer_address=passenger.stellar_address if passenger else None
    )
    await db.commit()
    await _invalidate(trip.id)
    return PaymentQRResponse(payment_id=payment.id, **_qr_fields(qr))


@router.post("/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(
    trip_id: str,
    payload: TripCancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel an open trip: frees the assigned driver and cancels pending payments."""
    trip = await _load_trip(db, trip_id)
    _ensure_participant(trip, user)
    _move(trip, "CANCELLED")

    trip.cancelled_at = datetime.now(timezone.utc)
    trip.cancelled_by = user.id
    trip.cancellation_reason = payload.reason
    await cancel_pending_payments(db, trip.id)
    await release_driver(db, trip.driver_id)
    await db.commit()

    await _invalidate(trip.id)
    logger.info("Trip %s cancelled by %s", trip.id, user.id)
    return TripResponse.model_validate(trip)
