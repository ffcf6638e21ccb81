"""
Payment Gateway Client
Thin async wrapper over the Paystack-compatible REST API: charges, recipients,
transfers and refunds. Every failure is mapped onto the escrow error taxonomy so
callers can tell transient problems (retry) from rejections (operator action).
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from ..config import (
    GATEWAY_BASE_URL,
    GATEWAY_CURRENCY,
    GATEWAY_RECIPIENT_TYPE,
    GATEWAY_SECRET_KEY,
    GATEWAY_TIMEOUT_SECONDS,
)
from ..errors import GatewayError, GatewayRejected, GatewayTimeout, GatewayUnavailable
from ..security_utils import mask_sensitive_data

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to the gateway's integer minor units (cents)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class GatewayClient:
    """Client for the payment gateway HTTP API"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key or GATEWAY_SECRET_KEY
        self.base_url = (base_url or GATEWAY_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

        if not self.secret_key:
            logger.warning("GATEWAY_SECRET_KEY not set; gateway calls will be rejected until configured")

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict[str, Any]:
        """Perform one API call and return the response `data` object"""
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http_client:
                response = await http_client.request(method, url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ Gateway timeout on {method} {path}: {e}")
            raise GatewayTimeout(f"Gateway timed out on {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning(f"⚠️ Gateway unreachable on {method} {path}: {e}")
            raise GatewayUnavailable(f"Gateway unreachable on {method} {path}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        message = body.get("message") if isinstance(body, dict) else None

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"⚠️ Gateway returned {response.status_code} on {method} {path}: {message}")
            raise GatewayUnavailable(
                message or f"Gateway returned {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            logger.error(f"❌ Gateway rejected {method} {path} ({response.status_code}): {message}")
            raise GatewayRejected(
                message or f"Gateway rejected request with {response.status_code}",
                status_code=response.status_code,
                details={"response": body} if body is not None else None,
            )

        if not isinstance(body, dict):
            logger.error(f"❌ Gateway returned a non-JSON body on {method} {path}")
            raise GatewayUnavailable("Gateway returned an unreadable response", status_code=response.status_code)

        if body.get("status") is False:
            logger.error(f"❌ Gateway reported failure on {method} {path}: {message}")
            raise GatewayRejected(message or "Gateway reported failure", status_code=response.status_code)

        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def initialize_charge(
        self,
        amount: Decimal,
        reference: str,
        email: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Start a hosted checkout for the client.

        Returns:
            dict with authorization_url, access_code and reference
        """
        logger.info(f"💳 Initializing charge {reference} for {amount} {GATEWAY_CURRENCY}")
        payload = {
            "amount": to_minor_units(amount),
            "email": email,
            "reference": reference,
            "currency": GATEWAY_CURRENCY,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = await self._request("POST", "/transaction/initialize", payload)
        if not data.get("authorization_url"):
            raise GatewayError(f"Gateway returned no authorization URL for {reference}")
        return data

    async def verify_charge(self, reference: str) -> dict:
        """
        Look up the current state of a charge.

        Returns:
            dict with status ("success", "failed", "abandoned", ...) and amount in minor units
        """
        logger.info(f"🔍 Verifying charge {reference}")
        return await self._request("GET", f"/transaction/verify/{reference}")

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def create_recipient(self, name: str, account_number: str, bank_code: str) -> str:
        """Register a provider's bank account and return the recipient code"""
        logger.info(
            f"🏦 Creating transfer recipient for {name} (account {mask_sensitive_data(account_number)}, bank {bank_code})"
        )
        data = await self._request(
            "POST",
            "/transferrecipient",
            {
                "type": GATEWAY_RECIPIENT_TYPE,
                "name": name,
                "account_number": account_number,
                "bank_code": bank_code,
                "currency": GATEWAY_CURRENCY,
            },
        )
        recipient_code = data.get("recipient_code")
        if not recipient_code:
            raise GatewayError("Gateway returned no recipient code")
        return recipient_code

    async def create_transfer(
        self, amount: Decimal, recipient_code: str, reference: str, reason: Optional[str] = None
    ) -> dict:
        """
        Send funds to a recipient. The gateway deduplicates on `reference`, so the
        same payout reference must be used for every attempt.

        Returns:
            dict with transfer_code and status
        """
        logger.info(f"💸 Creating transfer {reference}: {amount} {GATEWAY_CURRENCY} to {recipient_code}")
        data = await self._request(
            "POST",
            "/transfer",
            {
                "source": "balance",
                "amount": to_minor_units(amount),
                "recipient": recipient_code,
                "reason": reason or "Booking payout",
                "reference": reference,
                "currency": GATEWAY_CURRENCY,
            },
        )
        if data.get("status") in {"failed", "reversed"}:
            raise GatewayRejected(f"Transfer {reference} was {data.get('status')} by the gateway")
        return data

    async def create_refund(self, reference: str, amount: Optional[Decimal] = None, reason: Optional[str] = None) -> dict:
        """Refund a charge, fully or partially"""
        logger.info(f"↩️ Refunding charge {reference} ({amount if amount is not None else 'full'})")
        payload: dict[str, Any] = {"transaction": reference, "merchant_note": reason or "Booking refund"}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        return await self._request("POST", "/refund", payload)


def get_gateway_client() -> GatewayClient:
    """Dependency injection for GatewayClient"""
    return GatewayClient()
