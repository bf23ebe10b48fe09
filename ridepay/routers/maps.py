"""
Maps router: proxies Google Places / Directions so the API key stays server-side.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ridepay.middleware.auth import get_current_user
from ridepay.models.user import User
from ridepay.schemas.schemas import PlaceDetails, PlacePrediction, RouteRequest, RouteResponse
from ridepay.services.maps import GoogleMapsClient, MapsError, get_maps_client

router = APIRouter(prefix="/v1/maps", tags=["Maps"])


@router.get("/autocomplete", response_model=list[PlacePrediction])
async def autocomplete(
    q: str,
    country: Optional[str] = None,
    user: User = Depends(get_current_user),
    maps: GoogleMapsClient = Depends(get_maps_client),
):
    try:
        predictions = await maps.autocomplete(q, country or user.country)
    except MapsError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return [PlacePrediction(**p) for p in predictions]


@router.get("/places/{place_id}", response_model=PlaceDetails)
async def place_details(
    place_id: str,
    user: User = Depends(get_current_user),
    maps: GoogleMapsClient = Depends(get_maps_client),
):
    try:
        return PlaceDetails(**await maps.place_details(place_id))
    except MapsError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/route", response_model=RouteResponse)
async def route(
    payload: RouteRequest,
    user: User = Depends(get_current_user),
    maps: GoogleMapsClient = Depends(get_maps_client),
):
    try:
        result = await maps.route(
            (payload.origin.lat, payload.origin.lng),
            (payload.destination.lat, payload.destination.lng),
        )
    except MapsError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return RouteResponse(**result)
