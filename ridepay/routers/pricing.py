"""
Pricing router: POST /v1/pricing/calculate
"""
from fastapi import APIRouter, Depends

from ridepay.middleware.auth import get_current_user
from ridepay.models.user import User
from ridepay.schemas.schemas import PriceBreakdown, PriceRequest
from ridepay.services.pricing import price_trip, to_float_breakdown

router = APIRouter(prefix="/v1/pricing", tags=["Pricing"])


@router.post("/calculate", response_model=PriceBreakdown)
async def calculate(
    payload: PriceRequest,
    user: User = Depends(get_current_user),
):
    _, final = price_trip(
        payload.distance_km,
        payload.duration_minutes,
        payload.country or user.country,
        payload.vehicle_type.value if payload.vehicle_type else None,
        payload.is_round_trip,
    )
    return PriceBreakdown(**to_float_breakdown(final))
