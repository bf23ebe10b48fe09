"""
Payments router: POST /v1/payments/{id}/verify, POST /v1/payments/{id}/submit,
                  GET /v1/payments/trip/{trip_id}
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.database import get_db
from ridepay.middleware.auth import get_current_user
from ridepay.middleware.idempotency import check_idempotency, store_idempotency_result
from ridepay.models.payment import Payment
from ridepay.models.trip import Trip
from ridepay.models.user import User
from ridepay.redis_client import get_redis, cache_delete, trip_cache_key
from ridepay.schemas.schemas import (
    PaymentResponse, PaymentSubmitRequest, PaymentVerifyRequest, PaymentVerifyResponse,
    TripPaymentInfo, TripPaymentInfoResponse,
)
from ridepay.services.settlement import pending_payment, settle_payment
from ridepay.services.stellar import HorizonClient, StellarError, get_horizon_client
from ridepay.services.trip_state import InvalidTransition

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


async def _load_payable(db: AsyncSession, payment_id: str, user: User) -> tuple[Payment, dict]:
    """Payment owned by `user`, still PENDING, with complete Stellar details."""
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if payment.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to settle this payment")
    if payment.status != "PENDING":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Payment is already {payment.status}")

    details = payment.details or {}
    if not details.get("stellar_address") or not details.get("xlm_amount"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Incomplete Stellar payment details")
    return payment, details


async def _verify_and_settle(
    db: AsyncSession,
    payment: Payment,
    details: dict,
    transaction_id: str,
    horizon: HorizonClient,
) -> PaymentVerifyResponse:
    used = await db.execute(
        select(Payment.id).where(Payment.transaction_id == transaction_id, Payment.id != payment.id)
    )
    if used.first() is not None:
        logger.warning("Payment %s rejected: tx=%s already settles another payment", payment.id, transaction_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction already used for another payment",
        )

    verification = await horizon.verify_transaction(
        transaction_id, details["stellar_address"], details["xlm_amount"], memo=details.get("memo")
    )
    if not verification["verified"]:
        logger.warning("Payment %s verification failed: %s", payment.id, verification["error"])
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=verification["error"] or "Transaction could not be verified",
        )

    trip = await db.get(Trip, payment.trip_id)
    try:
        await settle_payment(db, payment, trip, transaction_id)
        await db.commit()
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction already used for another payment",
        )

    redis = await get_redis()
    await cache_delete(redis, trip_cache_key(trip.id))
    logger.info("Payment %s settled by tx=%s trip=%s", payment.id, transaction_id, trip.id)

    return PaymentVerifyResponse(
        payment=PaymentResponse.model_validate(payment),
        verified=True,
        message="Payment verified and trip completed",
    )


@router.post("/{payment_id}/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    payment_id: str,
    payload: PaymentVerifyRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    horizon: HorizonClient = Depends(get_horizon_client),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Confirm a wallet payment the passenger already made:
    - the Horizon transaction must be successful
    - one of its payment ops must pay the driver's address at least 99% of the XLM amount
    """
    if idempotency_key:
        cached = await check_idempotency(request, user.id)
        if cached:
            return cached

    payment, details = await _load_payable(db, payment_id, user)
    response = await _verify_and_settle(db, payment, details, payload.transaction_id, horizon)

    if idempotency_key:
        await store_idempotency_result(idempotency_key, user.id, 200, response.model_dump(mode="json"))
    return response


@router.post("/{payment_id}/submit", response_model=PaymentVerifyResponse)
async def submit_payment(
    payment_id: str,
    payload: PaymentSubmitRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    horizon: HorizonClient = Depends(get_horizon_client),
):
    """Relay a wallet-signed transaction to Horizon, then verify and settle it."""
    payment, details = await _load_payable(db, payment_id, user)

    try:
        submitted = await horizon.submit_transaction(payload.signed_xdr)
    except StellarError as exc:
        logger.warning("Horizon rejected transaction for payment %s: %s", payment.id, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not submitted["successful"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Transaction was not successful")

    transaction_id = submitted["transaction_id"]
    try:
        return await _verify_and_settle(db, payment, details, transaction_id, horizon)
    except HTTPException as exc:
        # Funds already moved; the passenger can retry /verify with this hash
        logger.warning(
            "Payment %s: submitted tx=%s but settlement failed: %s", payment.id, transaction_id, exc.detail
        )
        raise HTTPException(
            status_code=exc.status_code,
            detail={"message": exc.detail, "transaction_id": transaction_id},
        )


@router.get("/trip/{trip_id}", response_model=TripPaymentInfoResponse)
async def get_trip_payment(
    trip_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Payment QR, address and the latest pending Stellar payment of a trip."""
    trip = await db.get(Trip, trip_id)
    if not trip or user.id not in (trip.passenger_id, trip.driver_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")

    payment = await pending_payment(db, trip.id, "STELLAR")
    details = (payment.details or {}) if payment else {}

    return TripPaymentInfoResponse(
        trip=TripPaymentInfo(
            id=trip.id,
            trip_number=trip.trip_number,
            total_price=float(trip.total_price),
            currency=trip.currency,
            status=trip.status,
            payment_qr_code=trip.payment_qr_code,
            payment_address=trip.payment_address,
            payment_expires_at=trip.payment_expires_at,
            completed_at=trip.completed_at,
            transaction_xdr=details.get("transaction_xdr"),
        ),
        payment=PaymentResponse.model_validate(payment) if payment else None,
    )
