"""
Payment settlement for finished trips.

Callers own the transaction: these helpers mutate ORM objects and leave the
commit to the router.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import get_settings
from ridepay.models.payment import Payment
from ridepay.models.trip import Trip
from ridepay.models.user import User
from ridepay.services.stellar import HorizonClient, StellarPaymentData, convert_to_xlm, xlm_rate_for
from ridepay.services.trip_state import transition

logger = logging.getLogger(__name__)
settings = get_settings()


async def pending_payment(db: AsyncSession, trip_id: str, method: Optional[str] = None) -> Optional[Payment]:
    query = select(Payment).where(Payment.trip_id == trip_id, Payment.status == "PENDING")
    if method:
        query = query.where(Payment.method == method)
    result = await db.execute(query.order_by(Payment.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def issue_stellar_payment(
    db: AsyncSession,
    trip: Trip,
    driver: User,
    horizon: HorizonClient,
    payer_address: Optional[str] = None,
) -> tuple[Payment, dict]:
    """
    Create (or refresh) the PENDING Stellar payment of a trip and its QR code.
    Returns (payment, qr) where qr also carries "xlm_amount".
    """
    xlm_amount = convert_to_xlm(trip.total_price, xlm_rate_for(trip.currency))
    data = StellarPaymentData(
        destination=driver.stellar_address,
        amount=xlm_amount,
        memo=trip.trip_number,
    )
    qr = await horizon.generate_payment_qr(
        data,
        expires_in_minutes=settings.payment_qr_expire_minutes,
        source_public_key=payer_address,
    )

    payment = await pending_payment(db, trip.id, "STELLAR")
    if payment is None:
        payment = Payment(
            trip_id=trip.id,
            user_id=trip.passenger_id,
            amount=Decimal(trip.total_price),
            currency=trip.currency,
            method="STELLAR",
            status="PENDING",
        )
        db.add(payment)

    payment.details = {
        "stellar_address": driver.stellar_address,
        "xlm_amount": xlm_amount,
        "memo": data.memo,
        "transaction_xdr": qr["transaction_xdr"],
        "network_passphrase": horizon.passphrase,
    }

    trip.payment_qr_code = qr["qr_code"]
    trip.payment_address = qr["payment_address"]
    trip.payment_expires_at = qr["expires_at"]

    await db.flush()
    logger.info("Issued Stellar payment=%s trip=%s xlm=%s", payment.id, trip.id, xlm_amount)
    return payment, {**qr, "xlm_amount": xlm_amount}


async def release_driver(db: AsyncSession, driver_id: Optional[str]) -> None:
    if not driver_id:
        return
    await db.execute(
        update(User)
        .where(User.id == driver_id, User.driver_status == "on_trip")
        .values(driver_status="available")
    )


async def settle_payment(
    db: AsyncSession,
    payment: Payment,
    trip: Trip,
    transaction_id: Optional[str] = None,
) -> None:
    """Mark the payment COMPLETED, finish the trip and free its driver."""
    now = datetime.now(timezone.utc)
    payment.status = "COMPLETED"
    payment.transaction_id = transaction_id
    payment.processed_at = now

    transition(trip, "COMPLETED")
    trip.completed_at = now
    if payment.method == "STELLAR":
        trip.stellar_transaction_id = transaction_id

    await release_driver(db, trip.driver_id)


async def cancel_pending_payments(db: AsyncSession, trip_id: str) -> None:
    await db.execute(
        update(Payment)
        .where(Payment.trip_id == trip_id, Payment.status == "PENDING")
        .values(status="CANCELLED")
    )
