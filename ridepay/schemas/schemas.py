from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from ridepay.services.pricing import clamp_passengers


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoleEnum(str, Enum):
    PASSENGER = "PASSENGER"
    DRIVER = "DRIVER"


class VehicleTypeEnum(str, Enum):
    SEDAN = "SEDAN"
    SUV = "SUV"
    VAN = "VAN"
    MINIBUS = "MINIBUS"


class TripStatusEnum(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DriverStatusEnum(str, Enum):
    offline = "offline"
    available = "available"
    on_trip = "on_trip"


class PaymentMethodEnum(str, Enum):
    STELLAR = "STELLAR"
    CASH = "CASH"


class PaymentStatusEnum(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# User schemas
# ---------------------------------------------------------------------------

class UserCreateRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(..., min_length=2, max_length=255)
    phone: Optional[str] = Field(default=None, min_length=7, max_length=20)
    role: RoleEnum = RoleEnum.PASSENGER
    country: str = Field(default="CL", min_length=2, max_length=2)
    vehicle_type: Optional[VehicleTypeEnum] = None

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    phone: Optional[str] = Field(default=None, min_length=7, max_length=20)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    vehicle_type: Optional[VehicleTypeEnum] = None

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: RoleEnum
    country: str
    stellar_address: Optional[str] = None
    driver_status: DriverStatusEnum
    vehicle_type: Optional[VehicleTypeEnum] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UserCreateResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class AcceptTripRequest(BaseModel):
    trip_id: str


class AcceptTripResponse(BaseModel):
    trip_id: str
    status: TripStatusEnum


# ---------------------------------------------------------------------------
# Pricing schemas
# ---------------------------------------------------------------------------

class PriceRequest(BaseModel):
    distance_km: float = Field(..., ge=0)
    duration_minutes: Optional[float] = Field(default=None, ge=0)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    vehicle_type: Optional[VehicleTypeEnum] = None
    is_round_trip: bool = False


class PriceBreakdown(BaseModel):
    base_price: float
    distance_price: float
    time_price: float
    total_price: float
    currency: str


# ---------------------------------------------------------------------------
# Maps schemas
# ---------------------------------------------------------------------------

class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PlacePrediction(BaseModel):
    place_id: str
    description: str


class PlaceDetails(BaseModel):
    place_id: str
    formatted_address: str
    lat: float
    lng: float
    country: Optional[str] = None


class RouteRequest(BaseModel):
    origin: LatLng
    destination: LatLng


class RouteResponse(BaseModel):
    distance_km: float
    duration_minutes: int
    distance_text: str
    duration_text: str
    polyline: Optional[str] = None
    bounds: Optional[dict] = None


# ---------------------------------------------------------------------------
# Trip schemas
# ---------------------------------------------------------------------------

class Location(BaseModel):
    address: str = Field(..., min_length=1, max_length=500)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    place_id: Optional[str] = None
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)


class TripQuoteRequest(BaseModel):
    origin: Location
    destination: Location
    vehicle_type: Optional[VehicleTypeEnum] = None
    is_round_trip: bool = False


class TripQuoteResponse(BaseModel):
    route: RouteResponse
    one_way_price: PriceBreakdown
    price: PriceBreakdown
    is_round_trip: bool


class TripCreateRequest(BaseModel):
    origin: Location
    destination: Location
    scheduled_at: Optional[datetime] = None
    return_scheduled_at: Optional[datetime] = None
    passengers: int = 1
    is_round_trip: bool = False
    preferred_vehicle_type: Optional[VehicleTypeEnum] = None

    # Route data from a previous quote; recomputed server-side when missing
    distance_km: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    distance_text: Optional[str] = None
    duration_text: Optional[str] = None
    route_polyline: Optional[str] = None

    @field_validator("passengers")
    @classmethod
    def clamp(cls, v: int) -> int:
        return clamp_passengers(v)

    @model_validator(mode="after")
    def check_round_trip(self) -> "TripCreateRequest":
        if self.is_round_trip and self.return_scheduled_at is None:
            raise ValueError("return_scheduled_at is required for round trips")
        if not self.is_round_trip:
            self.return_scheduled_at = None
        return self


class TripResponse(BaseModel):
    id: str
    trip_number: str
    passenger_id: str
    driver_id: Optional[str] = None
    status: TripStatusEnum

    origin_address: str
    origin_lat: float
    origin_lng: float
    destination_address: str
    destination_lat: float
    destination_lng: float
    scheduled_at: Optional[datetime] = None
    return_scheduled_at: Optional[datetime] = None
    passengers: int
    is_round_trip: bool
    preferred_vehicle_type: Optional[VehicleTypeEnum] = None

    distance_km: float
    duration_minutes: int
    distance_text: Optional[str] = None
    duration_text: Optional[str] = None
    base_price: float
    distance_price: float
    time_price: float
    total_price: float
    currency: str

    payment_address: Optional[str] = None
    payment_expires_at: Optional[datetime] = None
    stellar_transaction_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TripCompleteRequest(BaseModel):
    payment_method: PaymentMethodEnum = PaymentMethodEnum.STELLAR


class TripCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentQRResponse(BaseModel):
    payment_id: str
    qr_code: str
    payment_url: str
    payment_address: str
    xlm_amount: str
    expires_at: datetime
    transaction_xdr: Optional[str] = None


class TripCompleteResponse(BaseModel):
    trip: TripResponse
    payment_id: str
    payment_status: PaymentStatusEnum
    stellar: Optional[PaymentQRResponse] = None


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class PaymentVerifyRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=64)


class PaymentSubmitRequest(BaseModel):
    signed_xdr: str = Field(..., min_length=1)


class PaymentResponse(BaseModel):
    id: str
    trip_id: str
    amount: float
    currency: str
    method: PaymentMethodEnum
    status: PaymentStatusEnum
    transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentVerifyResponse(BaseModel):
    payment: PaymentResponse
    verified: bool
    message: str


class TripPaymentInfo(BaseModel):
    id: str
    trip_number: str
    total_price: float
    currency: str
    status: TripStatusEnum
    payment_qr_code: Optional[str] = None
    payment_address: Optional[str] = None
    payment_expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    transaction_xdr: Optional[str] = None


class TripPaymentInfoResponse(BaseModel):
    trip: TripPaymentInfo
    payment: Optional[PaymentResponse] = None


# ---------------------------------------------------------------------------
# Wallet schemas
# ---------------------------------------------------------------------------

class ConnectionQRResponse(BaseModel):
    qr_code: str
    connection_url: str
    token: str
    expires_at: datetime


class StellarAddressRequest(BaseModel):
    stellar_address: str


class WalletStatusResponse(BaseModel):
    is_connected: bool
    stellar_address: Optional[str] = None


class WalletReconcileRequest(BaseModel):
    extension_available: bool = False
    extension_connected: bool = False
    extension_address: Optional[str] = None
    extension_error: Optional[str] = None


class WalletReconcileResponse(BaseModel):
    is_connected: bool
    stellar_address: Optional[str] = None
    extension_available: bool
    extension_matches: bool
    user_rejected: bool


class WalletBalanceResponse(BaseModel):
    stellar_address: str
    balance: str
    asset: str = "XLM"
