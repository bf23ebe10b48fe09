import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Boolean, String, Float, Integer, Numeric, Text, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column
from ridepay.database import Base


def _trip_number() -> str:
    return f"TRP-{uuid.uuid4().hex[:8].upper()}"


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    trip_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, default=_trip_number)
    passenger_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True, index=True)

    origin_address: Mapped[str] = mapped_column(String(500), nullable=False)
    origin_lat: Mapped[float] = mapped_column(Float, nullable=False)
    origin_lng: Mapped[float] = mapped_column(Float, nullable=False)
    origin_place_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    destination_address: Mapped[str] = mapped_column(String(500), nullable=False)
    destination_lat: Mapped[float] = mapped_column(Float, nullable=False)
    destination_lng: Mapped[float] = mapped_column(Float, nullable=False)
    destination_place_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    return_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    passengers: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_round_trip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preferred_vehicle_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    distance_km: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    distance_text: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_text: Mapped[str | None] = mapped_column(String(50), nullable=True)
    route_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)

    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    distance_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    time_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="CLP")

    # PENDING | CONFIRMED | IN_PROGRESS | COMPLETED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)

    # Stellar settlement
    payment_qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_address: Mapped[str | None] = mapped_column(String(56), nullable=True)
    payment_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stellar_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
