"""Midtrans API client: Snap payment links and Core API status lookups."""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiohttp

from membran.config.settings import AppConfig
from membran.payments.notifications import load_notification, to_gateway_update
from membran.payments.reconciler import Reconciler, ReconciliationResult

logger = logging.getLogger(__name__)

SNAP_BASE_URLS = {
    "sandbox": "https://app.sandbox.midtrans.com/snap/v1",
    "production": "https://app.midtrans.com/snap/v1",
}
CORE_BASE_URLS = {
    "sandbox": "https://api.sandbox.midtrans.com/v2",
    "production": "https://api.midtrans.com/v2",
}


class GatewayError(Exception):
    """Raised when the payment gateway rejects a request or is unreachable."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class PaymentLink:
    """Hosted payment page for one order."""

    gateway_order_id: str
    token: str
    redirect_url: str
    expires_at: datetime


class MidtransClient:
    """
    Thin async client for the two Midtrans endpoints this service needs.

    Base URLs default to the configured environment and can be overridden
    (tests point them at a local aiohttp server).
    """

    def __init__(
        self,
        server_key: str,
        environment: str = "sandbox",
        timeout_seconds: float = 10.0,
        snap_base_url: Optional[str] = None,
        core_base_url: Optional[str] = None,
        payment_expiry_hours: int = 24,
    ):
        if not server_key:
            raise ValueError("midtrans_server_key not configured")
        self._server_key = server_key
        self.snap_base_url = snap_base_url or SNAP_BASE_URLS[environment]
        self.core_base_url = core_base_url or CORE_BASE_URLS[environment]
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.payment_expiry_hours = payment_expiry_hours

    @classmethod
    def from_config(cls, config: AppConfig) -> "MidtransClient":
        return cls(
            server_key=config.midtrans_server_key.get_secret_value(),
            environment=config.midtrans_environment,
            payment_expiry_hours=config.payment_expiry_hours,
        )

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self._server_key}:".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._headers(), **kwargs) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise GatewayError(
                            f"Midtrans API error: {resp.status} {body}", status=resp.status
                        )
                    return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"Midtrans API request failed: {e}") from e

    async def create_transaction(
        self,
        gateway_order_id: str,
        amount: int,
        customer_email: str,
        item_name: str,
        expiry_hours: Optional[int] = None,
    ) -> PaymentLink:
        """
        Create a Snap payment page for one order.

        The link lives for ``expiry_hours``, defaulting to the client's
        ``payment_expiry_hours``.

        Raises:
            GatewayError: Non-2xx response or transport failure
        """
        expiry_hours = expiry_hours or self.payment_expiry_hours
        body = {
            "transaction_details": {"order_id": gateway_order_id, "gross_amount": amount},
            "customer_details": {"email": customer_email},
            "item_details": [
                {"id": item_name, "price": amount, "quantity": 1, "name": item_name[:50]}
            ],
            "expiry": {"unit": "hour", "duration": expiry_hours},
        }
        data = await self._request("POST", f"{self.snap_base_url}/transactions", json=body)

        if "token" not in data or "redirect_url" not in data:
            raise GatewayError(f"Unexpected Snap response for {gateway_order_id}: {data}")

        logger.info(f"Created payment link for order {gateway_order_id}")
        return PaymentLink(
            gateway_order_id=gateway_order_id,
            token=data["token"],
            redirect_url=data["redirect_url"],
            expires_at=datetime.now(timezone.utc) + timedelta(hours=expiry_hours),
        )

    async def get_status(self, gateway_order_id: str) -> dict[str, Any]:
        """
        Fetch the current status of one order from the Core API.

        Raises:
            GatewayError: Non-2xx response or transport failure
        """
        return await self._request("GET", f"{self.core_base_url}/{gateway_order_id}/status")


async def sync_order_status(
    reconciler: Reconciler,
    client: MidtransClient,
    gateway_order_id: str,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """
    Pull an order's status from the gateway and reconcile it.

    Used when a notification is suspected lost. The status response comes
    from an authenticated API call, so it goes straight to
    :meth:`Reconciler.apply_update` without a signature check.
    """
    status = await client.get_status(gateway_order_id)
    update = to_gateway_update(load_notification(status))
    if update.gateway_order_id != gateway_order_id:
        raise GatewayError(
            f"Status lookup for {gateway_order_id} returned order {update.gateway_order_id}"
        )
    result = await reconciler.apply_update(update, now)
    logger.info(f"Polled order {gateway_order_id}: {result.outcome.value}")
    return result
