"""Payment gateway (Razorpay-style) refund client."""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from app.config import Settings, get_settings
from app.services.errors import ExternalCallFailure

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    """Rupees to paise."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RefundGateway:
    """Issues refunds against captured payments."""

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RefundGateway":
        return cls(
            base_url=settings.gateway_base_url,
            key_id=settings.gateway_key_id,
            key_secret=settings.gateway_key_secret,
            timeout=settings.http_timeout_seconds,
            **kwargs,
        )

    async def create_refund(
        self,
        payment_id: str,
        amount: Decimal,
        receipt: str,
        notes: Optional[dict] = None,
    ) -> dict:
        """Refund `amount` (major units) of a payment. Returns the gateway refund entity."""
        payload = {"amount": to_minor_units(amount), "receipt": receipt, "notes": notes or {}}
        logger.info("Requesting refund of %s for payment %s (receipt %s)", amount, payment_id, receipt)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=(self.key_id, self.key_secret),
                transport=self._transport,
            ) as client:
                resp = await client.post(f"/payments/{payment_id}/refund", json=payload)
        except httpx.HTTPError as e:
            raise ExternalCallFailure(f"Refund request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            description = (body.get("error") or {}).get("description") if isinstance(body, dict) else None
            raise ExternalCallFailure(f"Gateway refund failed: {description or f'HTTP {resp.status_code}'}")
        if not isinstance(body, dict) or not body.get("id"):
            raise ExternalCallFailure("Gateway refund response carried no refund id")
        return body


def get_refund_gateway() -> RefundGateway:
    return RefundGateway.from_settings(get_settings())
