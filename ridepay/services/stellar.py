"""
Stellar settlement adapter.

Builds unsigned payment transactions with the Stellar SDK, encodes SEP-0007
payment URIs as QR codes, and talks to Horizon for account lookups,
transaction submission and verification.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from urllib.parse import urlencode

import httpx
from stellar_sdk import Account, Asset, Keypair, Network, TransactionBuilder
from stellar_sdk.exceptions import SdkError

from ridepay.config import get_settings
from ridepay.services.qr import render_qr_data_url

logger = logging.getLogger(__name__)
settings = get_settings()

STELLAR_ADDRESS_LENGTH = 56
NATIVE_ASSET = "XLM"
XLM_PRECISION = Decimal("0.0000001")
# Accepted shortfall on the paid amount (fees, rounding)
AMOUNT_TOLERANCE = Decimal("0.99")

HORIZON_URLS = {
    "testnet": "https://horizon-testnet.stellar.org",
    "public": "https://horizon.stellar.org",
}


class StellarError(Exception):
    pass


@dataclass
class StellarPaymentData:
    destination: str
    amount: str
    memo: Optional[str] = None
    asset: str = NATIVE_ASSET
    asset_issuer: Optional[str] = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_valid_stellar_address(address) -> bool:
    return (
        isinstance(address, str)
        and address.startswith("G")
        and len(address) == STELLAR_ADDRESS_LENGTH
    )


def network_passphrase(network: Optional[str] = None) -> str:
    network = (network or settings.stellar_network).lower()
    if network == "public":
        return Network.PUBLIC_NETWORK_PASSPHRASE
    return Network.TESTNET_NETWORK_PASSPHRASE


def horizon_url(network: Optional[str] = None) -> str:
    if settings.stellar_horizon_url:
        return settings.stellar_horizon_url.rstrip("/")
    return HORIZON_URLS.get((network or settings.stellar_network).lower(), HORIZON_URLS["testnet"])


def xlm_rate_for(currency: str) -> float:
    return settings.xlm_rates.get(currency.upper(), settings.default_xlm_rate)


def convert_to_xlm(amount, rate: float) -> str:
    """Fiat amount -> XLM string with 7 decimals."""
    xlm = Decimal(str(amount)) * Decimal(str(rate))
    return str(xlm.quantize(XLM_PRECISION, rounding=ROUND_HALF_UP))


def _asset(data: StellarPaymentData) -> Asset:
    if not data.asset or data.asset == NATIVE_ASSET:
        return Asset.native()
    return Asset(data.asset, data.asset_issuer or "")


def build_transaction_xdr(data: StellarPaymentData, source: Account, passphrase: str) -> str:
    builder = TransactionBuilder(
        source_account=source,
        network_passphrase=passphrase,
        base_fee=settings.stellar_base_fee,
    )
    builder.append_payment_op(destination=data.destination, asset=_asset(data), amount=data.amount)
    if data.memo:
        builder.add_text_memo(data.memo)
    builder.set_timeout(settings.stellar_tx_timeout_seconds)
    return builder.build().to_xdr()


def placeholder_source() -> Account:
    """Throwaway source account; the signing wallet replaces it with the payer's."""
    return Account(Keypair.random().public_key, 0)


def build_payment_uri(data: StellarPaymentData, transaction_xdr: Optional[str] = None) -> str:
    """SEP-0007 `pay` operation URI."""
    params = [("destination", data.destination), ("amount", data.amount)]
    if data.memo:
        params.append(("memo", data.memo))
    if data.asset and data.asset != NATIVE_ASSET:
        params.append(("asset_code", data.asset))
        if data.asset_issuer:
            params.append(("asset_issuer", data.asset_issuer))
    if transaction_xdr:
        params.append(("xdr", transaction_xdr))
    return "web+stellar:pay?" + urlencode(params)


def find_matching_payment(operations: list[dict], destination: str, amount: str) -> Optional[dict]:
    minimum = Decimal(str(amount)) * AMOUNT_TOLERANCE
    for op in operations:
        if op.get("type") != "payment" or op.get("to") != destination:
            continue
        try:
            paid = Decimal(str(op.get("amount", "0")))
        except ArithmeticError:
            continue
        if paid >= minimum:
            return op
    return None


# ---------------------------------------------------------------------------
# Horizon client
# ---------------------------------------------------------------------------

class HorizonClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        passphrase: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or horizon_url()).rstrip("/")
        self.passphrase = passphrase or network_passphrase()
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def load_account(self, public_key: str) -> Account:
        try:
            async with self._client() as client:
                resp = await client.get(f"/accounts/{public_key}")
        except httpx.HTTPError as exc:
            raise StellarError(f"Horizon unreachable: {exc}") from exc
        if resp.status_code == 404:
            raise StellarError(f"Account {public_key} not found")
        if resp.status_code >= 400:
            raise StellarError(f"Horizon error {resp.status_code}")
        return Account(public_key, int(resp.json()["sequence"]))

    async def get_native_balance(self, public_key: str) -> str:
        try:
            async with self._client() as client:
                resp = await client.get(f"/accounts/{public_key}")
        except httpx.HTTPError as exc:
            raise StellarError(f"Horizon unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise StellarError("Could not load account balance")
        for balance in resp.json().get("balances", []):
            if balance.get("asset_type") == "native":
                return balance.get("balance", "0")
        return "0"

    async def build_payment_transaction(
        self,
        data: StellarPaymentData,
        source_public_key: Optional[str] = None,
    ) -> dict:
        """
        Unsigned payment transaction.
        Returns: {"transaction_xdr": str, "network_passphrase": str}
        """
        source = None
        if source_public_key:
            try:
                source = await self.load_account(source_public_key)
            except StellarError as exc:
                logger.warning("Falling back to placeholder source for %s: %s", source_public_key, exc)
        if source is None:
            source = placeholder_source()

        try:
            xdr = build_transaction_xdr(data, source, self.passphrase)
        except SdkError as exc:
            raise StellarError(f"Could not build transaction: {exc}") from exc
        return {"transaction_xdr": xdr, "network_passphrase": self.passphrase}

    async def generate_payment_qr(
        self,
        data: StellarPaymentData,
        expires_in_minutes: int = 30,
        source_public_key: Optional[str] = None,
    ) -> dict:
        """
        Returns: {"qr_code", "payment_url", "payment_address", "expires_at",
                  "transaction_xdr"}
        The QR is still produced when the transaction cannot be built.
        """
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes)

        transaction_xdr = None
        try:
            built = await self.build_payment_transaction(data, source_public_key)
            transaction_xdr = built["transaction_xdr"]
        except StellarError as exc:
            logger.error("Building Stellar transaction failed: %s", exc)

        payment_url = build_payment_uri(data, transaction_xdr)
        return {
            "qr_code": render_qr_data_url(payment_url),
            "payment_url": payment_url,
            "payment_address": data.destination,
            "expires_at": expires_at,
            "transaction_xdr": transaction_xdr,
        }

    async def verify_transaction(
        self,
        transaction_id: str,
        destination: str,
        amount: str,
        memo: Optional[str] = None,
    ) -> dict:
        """
        Returns: {"verified": bool, "transaction": dict | None, "error": str | None}
        When `memo` is given the transaction must carry exactly that memo.
        """
        try:
            async with self._client() as client:
                resp = await client.get(f"/transactions/{transaction_id}")
                if resp.status_code >= 400:
                    return {
                        "verified": False,
                        "transaction": None,
                        "error": f"Transaction lookup failed: {resp.reason_phrase or resp.status_code}",
                    }
                transaction = resp.json()
                if transaction.get("successful") is not True:
                    return {"verified": False, "transaction": transaction, "error": "Transaction was not successful"}
                if memo is not None and transaction.get("memo") != memo:
                    return {"verified": False, "transaction": transaction, "error": "Transaction memo does not match"}

                ops_resp = await client.get(
                    f"/transactions/{transaction_id}/operations", params={"limit": 200}
                )
                if ops_resp.status_code >= 400:
                    return {
                        "verified": False,
                        "transaction": transaction,
                        "error": "Could not load transaction operations",
                    }
                operations = ops_resp.json().get("_embedded", {}).get("records", [])
        except httpx.HTTPError as exc:
            return {"verified": False, "transaction": None, "error": f"Horizon unreachable: {exc}"}

        if find_matching_payment(operations, destination, amount) is None:
            return {"verified": False, "transaction": transaction, "error": "No matching payment operation found"}
        return {"verified": True, "transaction": transaction, "error": None}

    async def submit_transaction(self, signed_xdr: str) -> dict:
        """
        Returns: {"transaction_id": str, "successful": bool}
        """
        try:
            async with self._client() as client:
                resp = await client.post("/transactions", data={"tx": signed_xdr})
        except httpx.HTTPError as exc:
            raise StellarError(f"Horizon unreachable: {exc}") from exc
        body = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            codes = (body.get("extras") or {}).get("result_codes") or {}
            raise StellarError(codes.get("transaction") or body.get("detail") or "Transaction submission failed")
        return {"transaction_id": body["hash"], "successful": body.get("successful") is True}


def get_horizon_client() -> HorizonClient:
    return HorizonClient(timeout=settings.stellar_timeout_seconds)
