"""Razorpay Orders API client.

Uses httpx with HTTP basic auth (key id / key secret). The secret never
leaves this module.
"""

from __future__ import annotations

import httpx

from app.core.errors import UpstreamUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)


class RazorpayClient:
    """Creates checkout orders."""

    def __init__(self, key_id: str | None, key_secret: str | None, api_url: str, timeout: float = 15):
        self.key_id = key_id
        self._key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        """Create an order. Returns the provider order dict (``id``, ``amount``, ``currency``)."""
        if not self.key_id or not self._key_secret:
            raise UpstreamUnavailable("Payment gateway not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.api_url}/orders",
                    auth=(self.key_id, self._key_secret),
                    json={
                        "amount": amount,
                        "currency": currency,
                        "receipt": receipt[:40],
                        "notes": notes or {},
                    },
                )
                resp.raise_for_status()
                order = resp.json()
        except httpx.HTTPError as e:
            logger.error(f"Razorpay order creation failed for receipt {receipt}: {e}")
            raise UpstreamUnavailable("Payment provider unavailable") from e

        logger.info(f"Created Razorpay order {order.get('id')} for receipt {receipt}")
        return order
