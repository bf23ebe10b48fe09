"""
Google Maps adapter: Places autocomplete, place details and Directions routing.

Without an API key, routing falls back to a straight-line estimate so local and
test environments work offline.
"""
import logging
from math import radians, sin, cos, sqrt, atan2
from typing import Optional

import httpx

from ridepay.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

MIN_QUERY_LENGTH = 3


class MapsError(Exception):
    pass


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Approximate straight-line distance in km."""
    R = 6371
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * R * atan2(sqrt(a), sqrt(1 - a))


class GoogleMapsClient:
    def __init__(
        self,
        api_key: str = "",
        base_url: str = "https://maps.googleapis.com",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get(self, path: str, params: dict) -> dict:
        if not self.enabled:
            raise MapsError("Google Maps API key is not configured")
        params = {**params, "key": self.api_key}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise MapsError(f"Google Maps unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise MapsError(f"Google Maps error {resp.status_code}")
        data = resp.json()
        status = data.get("status")
        if status not in ("OK", "ZERO_RESULTS"):
            raise MapsError(f"Google Maps status {status}: {data.get('error_message', '')}".strip())
        return data

    async def autocomplete(self, query: str, country: Optional[str] = None) -> list[dict]:
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            return []
        params = {"input": query}
        if country:
            params["components"] = f"country:{country.lower()}"
        data = await self._get("/maps/api/place/autocomplete/json", params)
        return [
            {"place_id": p["place_id"], "description": p.get("description", "")}
            for p in data.get("predictions", [])
        ]

    async def place_details(self, place_id: str) -> dict:
        data = await self._get(
            "/maps/api/place/details/json",
            {"place_id": place_id, "fields": "place_id,formatted_address,geometry,address_components"},
        )
        result = data.get("result")
        if not result:
            raise MapsError(f"Place {place_id} not found")
        country = None
        for comp in result.get("address_components", []):
            if "country" in comp.get("types", []):
                country = comp.get("short_name")
                break
        location = result["geometry"]["location"]
        return {
            "place_id": result.get("place_id", place_id),
            "formatted_address": result.get("formatted_address", ""),
            "lat": location["lat"],
            "lng": location["lng"],
            "country": country,
        }

    async def route(
        self,
        origin: tuple[float, float],
        destination: tuple[float, float],
    ) -> dict:
        """
        Driving route between two (lat, lng) points.
        Returns: {"distance_km", "duration_minutes", "distance_text",
                  "duration_text", "polyline", "bounds"}
        """
        if not self.enabled:
            return self._offline_route(origin, destination)

        data = await self._get(
            "/maps/api/directions/json",
            {
                "origin": f"{origin[0]:.6f},{origin[1]:.6f}",
                "destination": f"{destination[0]:.6f},{destination[1]:.6f}",
                "mode": "driving",
            },
        )
        routes = data.get("routes") or []
        if not routes:
            raise MapsError("No route found between origin and destination")
        route = routes[0]
        legs = route.get("legs") or []
        meters = sum(leg["distance"]["value"] for leg in legs)
        seconds = sum(leg["duration"]["value"] for leg in legs)
        first = legs[0] if legs else {}
        return {
            "distance_km": round(meters / 1000.0, 3),
            "duration_minutes": max(1, int(round(seconds / 60.0))),
            "distance_text": first.get("distance", {}).get("text", f"{meters / 1000.0:.1f} km"),
            "duration_text": first.get("duration", {}).get("text", f"{int(round(seconds / 60.0))} min"),
            "polyline": (route.get("overview_polyline") or {}).get("points"),
            "bounds": route.get("bounds"),
        }

    def _offline_route(self, origin: tuple[float, float], destination: tuple[float, float]) -> dict:
        dist = haversine_km(origin[0], origin[1], destination[0], destination[1])
        speed = max(settings.avg_speed_kmph, 1e-3)
        mins = max(1, int(round(dist / speed * 60.0)))
        return {
            "distance_km": round(dist, 3),
            "duration_minutes": mins,
            "distance_text": f"{dist:.1f} km",
            "duration_text": f"{mins} min",
            "polyline": None,
            "bounds": None,
        }


def get_maps_client() -> GoogleMapsClient:
    return GoogleMapsClient(
        api_key=settings.google_maps_api_key,
        base_url=settings.google_maps_base_url,
        timeout=settings.maps_timeout_seconds,
    )
