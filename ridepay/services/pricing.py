"""
Trip pricing.

price = base + distance_km * per_km_rate + minutes * per_minute_rate

The per-km rate is reduced for sedans; round trips double every component.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ridepay.config import get_settings

settings = get_settings()

MIN_PASSENGERS = 1
MAX_PASSENGERS = 7

SEDAN_PER_KM_DISCOUNT = Decimal("0.35")

# ---------------------------------------------------------------------------
# Country rates (local currency)
# ---------------------------------------------------------------------------
COUNTRY_RATES: dict[str, dict] = {
    "CL": {"currency": "CLP", "base": Decimal("1500"), "per_km": Decimal("900"), "per_minute": Decimal("150")},
    "MX": {"currency": "MXN", "base": Decimal("35"), "per_km": Decimal("9"), "per_minute": Decimal("2")},
    "AR": {"currency": "ARS", "base": Decimal("1200"), "per_km": Decimal("600"), "per_minute": Decimal("100")},
    "CO": {"currency": "COP", "base": Decimal("5000"), "per_km": Decimal("1500"), "per_minute": Decimal("250")},
    "PE": {"currency": "PEN", "base": Decimal("5"), "per_km": Decimal("1.8"), "per_minute": Decimal("0.4")},
    "US": {"currency": "USD", "base": Decimal("3"), "per_km": Decimal("1.2"), "per_minute": Decimal("0.3")},
}

PRICE_FIELDS = ("base_price", "distance_price", "time_price", "total_price")


def _to_dec(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def rates_for(country: Optional[str]) -> dict:
    """Falls back to the default country for unknown codes."""
    code = (country or settings.default_country).upper()
    return COUNTRY_RATES.get(code, COUNTRY_RATES[settings.default_country])


def per_km_factor(vehicle_type: Optional[str]) -> Decimal:
    if vehicle_type and vehicle_type.upper() == "SEDAN":
        return Decimal("1") - SEDAN_PER_KM_DISCOUNT
    return Decimal("1")


def estimate_minutes(distance_km: float) -> float:
    speed = max(settings.avg_speed_kmph, 1e-3)
    return distance_km / speed * 60.0


def calculate_price(
    distance_km: float,
    duration_minutes: Optional[float],
    country: Optional[str],
    vehicle_type: Optional[str] = None,
) -> dict:
    """
    One-way price breakdown.
    Returns: {"base_price", "distance_price", "time_price", "total_price": Decimal,
              "currency": str}
    """
    if distance_km < 0:
        raise ValueError("distance_km must be >= 0")
    if duration_minutes is None:
        duration_minutes = estimate_minutes(distance_km)
    if duration_minutes < 0:
        raise ValueError("duration_minutes must be >= 0")

    rates = rates_for(country)
    per_km = rates["per_km"] * per_km_factor(vehicle_type)

    base = _to_dec(rates["base"])
    distance_price = _to_dec(Decimal(str(distance_km)) * per_km)
    time_price = _to_dec(Decimal(str(duration_minutes)) * rates["per_minute"])

    return {
        "base_price": base,
        "distance_price": distance_price,
        "time_price": time_price,
        "total_price": base + distance_price + time_price,
        "currency": rates["currency"],
    }


def apply_round_trip(breakdown: dict) -> dict:
    """Double every price component of a one-way breakdown."""
    doubled = dict(breakdown)
    for field in PRICE_FIELDS:
        doubled[field] = breakdown[field] * 2
    return doubled


def price_trip(
    distance_km: float,
    duration_minutes: Optional[float],
    country: Optional[str],
    vehicle_type: Optional[str],
    is_round_trip: bool,
) -> tuple[dict, dict]:
    """Returns (one_way, final) breakdowns."""
    one_way = calculate_price(distance_km, duration_minutes, country, vehicle_type)
    final = apply_round_trip(one_way) if is_round_trip else one_way
    return one_way, final


def clamp_passengers(count: int) -> int:
    return min(max(count, MIN_PASSENGERS), MAX_PASSENGERS)


def to_float_breakdown(breakdown: dict) -> dict:
    out = {field: float(breakdown[field]) for field in PRICE_FIELDS}
    out["currency"] = breakdown["currency"]
    return out
