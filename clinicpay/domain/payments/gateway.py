"""PayOS gateway adapter - create/query/cancel payment links and verify webhooks"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from ...config import (
    PAYOS_API_KEY,
    PAYOS_API_URL,
    PAYOS_CHECKSUM_KEY,
    PAYOS_CLIENT_ID,
    PAYOS_MAX_RETRIES,
    PAYOS_RETRY_DELAY_SECONDS,
    PAYOS_TIMEOUT_SECONDS,
)
from ...models import PAYMENT_CANCELLED, PAYMENT_EXPIRED, PAYMENT_FAILED, PAYMENT_SUCCESS
from ...webhook_security import sign_payos_request, verify_payos_signature
from .exceptions import GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 25
PAYOS_SUCCESS_CODE = "00"

# Gateway status -> internal terminal status; anything unmapped means "still pending"
GATEWAY_STATUS_MAP = {
    "PAID": PAYMENT_SUCCESS,
    "CANCELLED": PAYMENT_CANCELLED,
    "EXPIRED": PAYMENT_EXPIRED,
    "FAILED": PAYMENT_FAILED,
}


def truncate_description(description: str) -> str:
    """PayOS accepts at most 25 characters; longer values become 22 chars + '...'"""
    description = (description or "").strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
    return description


def map_gateway_status(gateway_status: Optional[str]) -> Optional[str]:
    """Map a PayOS status to an internal terminal status, or None while pending"""
    return GATEWAY_STATUS_MAP.get((gateway_status or "").upper())


def unix_timestamp(value: datetime) -> int:
    """Naive datetimes are stored as UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class GatewayLink(BaseModel):
    checkout_url: str
    gateway_link_id: str
    qr_code: Optional[str] = None


class GatewayStatus(BaseModel):
    status: str
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    transactions: list[dict] = Field(default_factory=list)

    @property
    def internal_status(self) -> Optional[str]:
        return map_gateway_status(self.status)

    def transaction_info(self) -> dict:
        """First transaction's reference data, in the shape stored on the record"""
        info = {"gatewayStatus": self.status, "amountPaid": self.amount_paid}
        if self.transactions:
            first = self.transactions[0]
            info["reference"] = first.get("reference")
            info["transactionDateTime"] = first.get("transactionDateTime")
        return info


@runtime_checkable
class PaymentGateway(Protocol):
    """Capability the reconciliation engine depends on; tests substitute a fake"""

    async def create_link(
        self,
        amount: int,
        description: str,
        return_url: str,
        cancel_url: str,
        order_code: int,
        expired_at: datetime,
        buyer_name: Optional[str] = None,
        buyer_email: Optional[str] = None,
        buyer_phone: Optional[str] = None,
    ) -> GatewayLink: ...

    async def get_status(self, order_code: int) -> GatewayStatus: ...

    async def cancel_link(self, order_code: int, reason: Optional[str] = None) -> dict: ...

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool: ...


class PayOSGateway:
    """httpx client for the PayOS merchant API"""

    def __init__(
        self,
        client_id: Optional[str] = PAYOS_CLIENT_ID,
        api_key: Optional[str] = PAYOS_API_KEY,
        checksum_key: Optional[str] = PAYOS_CHECKSUM_KEY,
        base_url: str = PAYOS_API_URL,
        timeout: float = PAYOS_TIMEOUT_SECONDS,
        max_retries: int = PAYOS_MAX_RETRIES,
        retry_delay: float = PAYOS_RETRY_DELAY_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.transport = transport

        if not self.is_available():
            logger.warning("PayOS credentials not set; payment endpoints will fail until configured")

    def is_available(self) -> bool:
        return bool(self.client_id and self.api_key and self.checksum_key)

    def _headers(self) -> dict:
        return {
            "x-client-id": self.client_id or "",
            "x-api-key": self.api_key or "",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        """
        Send a request and unwrap the PayOS envelope {code, desc, data}.

        Transient failures are retried with exponential backoff and end in
        GatewayUnavailable; 4xx responses and non-"00" envelopes raise GatewayRejected.
        """
        if not self.is_available():
            raise GatewayUnavailable("PayOS client not configured")

        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self.transport
                ) as http_client:
                    response = await http_client.request(
                        method, url, json=json, headers=self._headers()
                    )
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                logger.warning(f"⏰ PayOS {method} {path} timed out (attempt {attempt + 1}/{self.max_retries})")
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                logger.warning(f"🔄 PayOS {method} {path} transport error (attempt {attempt + 1}/{self.max_retries}): {e}")
            else:
                if response.status_code >= 500 or response.status_code == 429:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"🔄 PayOS {method} {path} returned {response.status_code} (attempt {attempt + 1}/{self.max_retries})"
                    )
                elif response.status_code >= 400:
                    logger.error(f"❌ PayOS rejected {method} {path}: {response.status_code} {response.text[:200]}")
                    raise GatewayRejected(f"PayOS returned HTTP {response.status_code}")
                else:
                    try:
                        envelope = response.json()
                    except ValueError as e:
                        raise GatewayUnavailable("PayOS returned a non-JSON response") from e

                    code = str(envelope.get("code", ""))
                    if code != PAYOS_SUCCESS_CODE:
                        desc = envelope.get("desc") or "unknown error"
                        logger.error(f"❌ PayOS rejected {method} {path}: code={code} desc={desc}")
                        raise GatewayRejected(desc, code=code)
                    return envelope.get("data") or {}

            # Exponential backoff
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2**attempt))

        logger.error(f"❌ PayOS {method} {path} unavailable after {self.max_retries} attempts: {last_error}")
        raise GatewayUnavailable(f"PayOS unavailable: {last_error}")

    async def create_link(
        self,
        amount: int,
        description: str,
        return_url: str,
        cancel_url: str,
        order_code: int,
        expired_at: datetime,
        buyer_name: Optional[str] = None,
        buyer_email: Optional[str] = None,
        buyer_phone: Optional[str] = None,
    ) -> GatewayLink:
        """Open a checkout session for order_code"""
        if not amount or amount <= 0:
            raise GatewayRejected("Amount must be greater than 0")
        if not return_url or not cancel_url:
            raise GatewayRejected("Return URL and cancel URL are required")

        description = truncate_description(description)
        if not description:
            raise GatewayRejected("Description is required")

        signed_fields = {
            "amount": amount,
            "cancelUrl": cancel_url,
            "description": description,
            "orderCode": order_code,
            "returnUrl": return_url,
        }
        payload = {
            **signed_fields,
            "items": [{"name": description, "quantity": 1, "price": amount}],
            "buyerName": buyer_name or "",
            "buyerEmail": buyer_email or "",
            "buyerPhone": buyer_phone or "",
            "expiredAt": unix_timestamp(expired_at),
            "signature": sign_payos_request(self.checksum_key or "", signed_fields),
        }

        logger.info(f"💳 Creating PayOS payment link: orderCode={order_code} amount={amount}")
        data = await self._request("POST", "/v2/payment-requests", json=payload)

        link = GatewayLink(
            checkout_url=data.get("checkoutUrl", ""),
            gateway_link_id=data.get("paymentLinkId", ""),
            qr_code=data.get("qrCode"),
        )
        logger.info(f"✅ PayOS payment link created: orderCode={order_code} linkId={link.gateway_link_id}")
        return link

    async def get_status(self, order_code: int) -> GatewayStatus:
        data = await self._request("GET", f"/v2/payment-requests/{order_code}")
        status = GatewayStatus(
            status=str(data.get("status", "PENDING")),
            amount=data.get("amount"),
            amount_paid=data.get("amountPaid"),
            transactions=data.get("transactions") or [],
        )
        logger.info(f"🔍 PayOS status for orderCode={order_code}: {status.status}")
        return status

    async def cancel_link(self, order_code: int, reason: Optional[str] = None) -> dict:
        body = {"cancellationReason": reason} if reason else {}
        data = await self._request("POST", f"/v2/payment-requests/{order_code}/cancel", json=body)
        logger.info(f"🚫 PayOS payment link cancelled: orderCode={order_code} reason={reason}")
        return data

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return verify_payos_signature(raw_body, signature, self.checksum_key)


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency; override in tests via app.dependency_overrides"""
    return PayOSGateway()
