"""
Wallet connection helpers: mobile hand-off tokens and reconciliation of the
browser extension's state with the stored profile address.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import redis.asyncio as aioredis

from ridepay.config import get_settings

settings = get_settings()

REJECTION_MARKERS = ("user rejected", "user cancelled", "rejected", "cancelado")


def is_user_rejection(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in REJECTION_MARKERS)


def reconcile(
    profile_address: Optional[str],
    extension_available: bool,
    extension_connected: bool,
    extension_address: Optional[str],
    extension_error: Optional[str] = None,
) -> dict:
    """
    The stored profile address decides the connection state. A user who
    disconnected stays disconnected even while the extension is unlocked.
    """
    return {
        "is_connected": bool(profile_address),
        "stellar_address": profile_address or None,
        "extension_available": extension_available,
        "extension_matches": bool(
            profile_address and extension_connected and extension_address == profile_address
        ),
        "user_rejected": is_user_rejection(extension_error),
    }


def _token_key(token: str) -> str:
    return f"wallet:connect:{token}"


async def issue_connection_token(redis: aioredis.Redis, user_id: str) -> dict:
    """
    One-time token binding a mobile wallet hand-off to `user_id`.
    Returns: {"token", "connection_url", "expires_at"}
    """
    token = secrets.token_hex(32)
    ttl = settings.wallet_connect_token_ttl_seconds
    await redis.setex(_token_key(token), ttl, user_id)
    query = urlencode({"token": token, "userId": user_id})
    return {
        "token": token,
        "connection_url": f"{settings.frontend_url.rstrip('/')}/wallet/connect-mobile?{query}",
        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=ttl),
    }


async def consume_connection_token(redis: aioredis.Redis, token: str) -> Optional[str]:
    """Return the owning user id and invalidate the token, or None if unknown/expired."""
    return await redis.getdel(_token_key(token))
