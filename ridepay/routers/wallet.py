"""
Wallet router: Stellar address management for the current user.

POST   /v1/wallet/connection-qr        mobile hand-off QR (token valid 10 min)
POST   /v1/wallet/connections/{token}  mobile wallet posts its address
GET    /v1/wallet/status
PUT    /v1/wallet/address              connect from the browser extension
DELETE /v1/wallet/address              disconnect
POST   /v1/wallet/reconcile            merge extension state with the profile
GET    /v1/wallet/balance
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.database import get_db
from ridepay.middleware.auth import get_current_user
from ridepay.models.user import User
from ridepay.redis_client import get_redis
from ridepay.schemas.schemas import (
    ConnectionQRResponse, StellarAddressRequest, WalletBalanceResponse, WalletReconcileRequest,
    WalletReconcileResponse, WalletStatusResponse,
)
from ridepay.services.qr import render_qr_data_url
from ridepay.services.stellar import HorizonClient, StellarError, get_horizon_client, is_valid_stellar_address
from ridepay.services.wallet import consume_connection_token, issue_connection_token, reconcile

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/wallet", tags=["Wallet"])


def _require_valid_address(address: str) -> None:
    if not is_valid_stellar_address(address):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stellar address")


def _status(user: User) -> WalletStatusResponse:
    return WalletStatusResponse(is_connected=bool(user.stellar_address), stellar_address=user.stellar_address)


@router.post("/connection-qr", response_model=ConnectionQRResponse)
async def create_connection_qr(user: User = Depends(get_current_user)):
    redis = await get_redis()
    issued = await issue_connection_token(redis, user.id)
    return ConnectionQRResponse(
        qr_code=render_qr_data_url(issued["connection_url"]),
        connection_url=issued["connection_url"],
        token=issued["token"],
        expires_at=issued["expires_at"],
    )


@router.post("/connections/{token}", response_model=WalletStatusResponse)
async def complete_connection(
    token: str,
    payload: StellarAddressRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _require_valid_address(payload.stellar_address)

    redis = await get_redis()
    owner = await consume_connection_token(redis, token)
    if owner is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection token not found or expired")
    if owner != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Connection token belongs to another user")

    user.stellar_address = payload.stellar_address
    await db.commit()
    logger.info("Mobile wallet connected for user=%s", user.id)
    return _status(user)


@router.get("/status", response_model=WalletStatusResponse)
async def wallet_status(user: User = Depends(get_current_user)):
    return _status(user)


@router.put("/address", response_model=WalletStatusResponse)
async def connect_wallet(
    payload: StellarAddressRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _require_valid_address(payload.stellar_address)
    user.stellar_address = payload.stellar_address
    await db.commit()
    return _status(user)


@router.delete("/address", response_model=WalletStatusResponse)
async def disconnect_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user.stellar_address = None
    await db.commit()
    return _status(user)


@router.post("/reconcile", response_model=WalletReconcileResponse)
async def reconcile_wallet(
    payload: WalletReconcileRequest,
    user: User = Depends(get_current_user),
):
    return WalletReconcileResponse(
        **reconcile(
            user.stellar_address,
            payload.extension_available,
            payload.extension_connected,
            payload.extension_address,
            payload.extension_error,
        )
    )


@router.get("/balance", response_model=WalletBalanceResponse)
async def wallet_balance(
    user: User = Depends(get_current_user),
    horizon: HorizonClient = Depends(get_horizon_client),
):
    if not user.stellar_address:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No wallet connected")
    try:
        balance = await horizon.get_native_balance(user.stellar_address)
    except StellarError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return WalletBalanceResponse(stellar_address=user.stellar_address, balance=balance)
