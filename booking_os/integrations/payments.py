"""Payment verification against Razorpay."""

import hashlib
import hmac
import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from booking_os.scheduling.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

SETTLED_STATUSES = frozenset({"captured", "authorized"})


class PaymentVerification(BaseModel):
    verified: bool
    status: Optional[str] = None
    reason: Optional[str] = None


class PaymentVerifier(Protocol):
    async def verify(self, order_id: str, payment_id: str, signature: str) -> PaymentVerification: ...


class _TransientPaymentError(Exception):
    """Retryable provider failure (transport error or 5xx)."""


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class RazorpayPaymentVerifier:
    """Checks a checkout signature, then asks Razorpay for the payment's real status.

    A valid signature alone is not enough: the payment must also be reported
    as captured or authorized by the provider.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "RazorpayPaymentVerifier":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.payment_timeout,
        )

    def signature_matches(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret or not signature:
            return False
        expected = compute_signature(self.key_secret, order_id, payment_id)
        return hmac.compare_digest(expected, signature)

    async def verify(self, order_id: str, payment_id: str, signature: str) -> PaymentVerification:
        if not self.signature_matches(order_id, payment_id, signature):
            logger.warning(f"Payment signature mismatch for order {order_id}")
            return PaymentVerification(verified=False, reason="signature_mismatch")

        try:
            status = await self._fetch_status(payment_id)
        except _TransientPaymentError as e:
            raise ExternalDependencyError(f"Payment provider unavailable: {e}", dependency="razorpay") from e

        if status not in SETTLED_STATUSES:
            logger.info(f"Payment {payment_id} not settled (status={status})")
            return PaymentVerification(verified=False, status=status, reason="not_settled")
        return PaymentVerification(verified=True, status=status)

    @retry(
        retry=retry_if_exception_type(_TransientPaymentError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch_status(self, payment_id: str) -> Optional[str]:
        try:
            response = await self._client.get(
                f"{self.base_url}/payments/{payment_id}",
                auth=(self.key_id, self.key_secret),
            )
        except httpx.TransportError as e:
            raise _TransientPaymentError(str(e)) from e

        if response.status_code >= 500:
            raise _TransientPaymentError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ExternalDependencyError(
                f"Payment lookup failed with HTTP {response.status_code}", dependency="razorpay"
            )
        return response.json().get("status")

    async def close(self) -> None:
        await self._client.aclose()
