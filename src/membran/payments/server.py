"""HTTP server: Midtrans notifications, checkout, and subscription API."""

import asyncio
import hashlib
import hmac
import json
import logging
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from membran.config.settings import get_config
from membran.payments.checkout import open_checkout
from membran.payments.errors import (
    Busy,
    InvalidTransition,
    MalformedPayload,
    NotFound,
    ReconciliationError,
    SignatureInvalid,
    UnknownOrder,
)
from membran.payments.gateway import GatewayError, MidtransClient, sync_order_status
from membran.payments.models import Transaction
from membran.payments.projection import DEFAULT_LOOKAHEAD, project
from membran.payments.reconciler import Reconciler

logger = logging.getLogger(__name__)

# Verifies a raw notification body; returns True when authentic
SignatureVerifier = Callable[[bytes], bool]

RECONCILER_KEY = web.AppKey("reconciler", Reconciler)
VERIFIER_KEY = web.AppKey("verifier", object)
LOOKAHEAD_KEY = web.AppKey("lookahead", timedelta)
GATEWAY_KEY = web.AppKey("gateway", object)

ERROR_STATUS: list[tuple[type[ReconciliationError], int]] = [
    (SignatureInvalid, 401),
    (MalformedPayload, 400),
    (NotFound, 404),
    (Busy, 503),
    # Acknowledged; redelivery would be rejected again
    (InvalidTransition, 200),
]


def midtrans_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA512 hex of order_id + status_code + gross_amount + server_key."""
    return hashlib.sha512(
        f"{order_id}{status_code}{gross_amount}{server_key}".encode()
    ).hexdigest()


def verify_midtrans_signature(payload: bytes, server_key: str) -> bool:
    """
    Check the ``signature_key`` Midtrans embeds in every notification body.

    An unparseable body or a missing field verifies as False; the payload
    itself is validated later.
    """
    if not server_key:
        logger.error("midtrans_server_key not configured; rejecting notification")
        return False
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return False
    if not isinstance(body, dict):
        return False

    received = body.get("signature_key")
    fields = [body.get("order_id"), body.get("status_code"), body.get("gross_amount")]
    if not received or any(f is None for f in fields):
        return False

    expected = midtrans_signature(*(str(f) for f in fields), server_key)
    return hmac.compare_digest(expected, str(received))


def error_status(error: ReconciliationError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def _error_response(error: ReconciliationError) -> web.Response:
    return web.json_response({"error": error.to_dict()}, status=error_status(error))


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/midtrans."""
    reconciler = request.app[RECONCILER_KEY]
    verifier: SignatureVerifier = request.app[VERIFIER_KEY]

    payload = await request.read()
    verified = verifier(payload)

    try:
        result = await reconciler.handle_notification(payload, verified)
    except ReconciliationError as e:
        return _error_response(e)
    except Exception as e:
        logger.exception(f"Error processing notification: {e}")
        # 500 so the gateway retries
        return web.json_response({"error": {"code": "internal_error"}}, status=500)

    return web.json_response(result.to_dict(), status=200)


async def subscription_endpoint(request: web.Request) -> web.Response:
    """Handle GET /subscriptions/{subscription_id}."""
    reconciler = request.app[RECONCILER_KEY]
    store = reconciler.store
    subscription_id = request.match_info["subscription_id"]

    subscription = await store.get_subscription(subscription_id)
    if subscription is None:
        return _error_response(
            NotFound(
                f"Subscription {subscription_id} not found",
                {"subscription_id": subscription_id},
            )
        )

    tier = await store.get_tier(subscription.tier_id)
    if tier is None:
        return _error_response(
            NotFound(f"Tier {subscription.tier_id} not found", {"tier_id": subscription.tier_id})
        )

    transactions = await store.list_transactions(subscription_id)
    view = project(
        subscription,
        transactions,
        tier,
        datetime.now(timezone.utc),
        request.app[LOOKAHEAD_KEY],
    )
    return web.json_response(view.to_dict())


async def cancel_endpoint(request: web.Request) -> web.Response:
    """Handle POST /subscriptions/{subscription_id}/cancel."""
    reconciler = request.app[RECONCILER_KEY]
    try:
        subscription = await reconciler.cancel_subscription(request.match_info["subscription_id"])
    except InvalidTransition as e:
        return web.json_response({"error": e.to_dict()}, status=409)
    except ReconciliationError as e:
        return _error_response(e)
    return web.json_response(
        {
            "id": subscription.id,
            "status": subscription.status.value,
            "cancelledAt": subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
        }
    )


class CheckoutRequest(BaseModel):
    """Body of POST /payments."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    member_id: str = Field(..., alias="memberId", min_length=1)
    server_id: str = Field(..., alias="serverId", min_length=1)
    tier_id: str = Field(..., alias="tierId", min_length=1)
    email: str = Field(..., min_length=3)


def _gateway_error_response(error: GatewayError) -> web.Response:
    return web.json_response(
        {"error": {"code": "gateway_error", "message": str(error), "context": {"status": error.status}}},
        status=502,
    )


def _transaction_dict(txn: Transaction) -> dict[str, Any]:
    return {
        "orderId": txn.gateway_order_id,
        "subscriptionId": txn.subscription_id,
        "status": txn.status.value,
        "amount": txn.amount,
        "currency": txn.currency,
        "paymentMethod": txn.payment_method,
        "paymentDate": txn.payment_date.isoformat() if txn.payment_date else None,
    }


def _gateway(request: web.Request) -> MidtransClient:
    gateway = request.app[GATEWAY_KEY]
    if gateway is None:
        raise web.HTTPServiceUnavailable(
            text=json.dumps({"error": {"code": "gateway_unavailable"}}),
            content_type="application/json",
        )
    return gateway


async def checkout_endpoint(request: web.Request) -> web.Response:
    """Handle POST /payments: open a checkout and return the payment link."""
    reconciler = request.app[RECONCILER_KEY]
    gateway = _gateway(request)

    try:
        body = CheckoutRequest.model_validate(await request.json())
    except (json.JSONDecodeError, ValidationError) as e:
        return _error_response(MalformedPayload(f"Invalid checkout request: {e}"))

    try:
        session = await open_checkout(
            reconciler, gateway, body.member_id, body.server_id, body.tier_id, body.email
        )
    except InvalidTransition as e:
        return web.json_response({"error": e.to_dict()}, status=409)
    except ReconciliationError as e:
        return _error_response(e)
    except GatewayError as e:
        return _gateway_error_response(e)

    payment = session.payment
    return web.json_response(
        {
            "subscriptionId": session.subscription.id,
            "gatewayOrderId": session.transaction.gateway_order_id,
            "token": payment.token,
            "redirectUrl": payment.redirect_url,
            "expiresAt": payment.expires_at.isoformat() if payment.expires_at else None,
        },
        status=201,
    )


async def payment_endpoint(request: web.Request) -> web.Response:
    """Handle GET /payments/{order_id}."""
    order_id = request.match_info["order_id"]
    txn = await request.app[RECONCILER_KEY].store.find_transaction(order_id)
    if txn is None:
        return _error_response(UnknownOrder(f"Order {order_id} not found", {"gateway_order_id": order_id}))
    return web.json_response(_transaction_dict(txn))


async def sync_endpoint(request: web.Request) -> web.Response:
    """Handle POST /payments/{order_id}/sync: poll the gateway for a lost notification."""
    reconciler = request.app[RECONCILER_KEY]
    gateway = _gateway(request)
    order_id = request.match_info["order_id"]

    try:
        result = await sync_order_status(reconciler, gateway, order_id)
    except ReconciliationError as e:
        return _error_response(e)
    except GatewayError as e:
        return _gateway_error_response(e)
    return web.json_response(result.to_dict())


async def list_subscriptions_endpoint(request: web.Request) -> web.Response:
    """Handle GET /subscriptions?memberId=...&serverId=..."""
    store = request.app[RECONCILER_KEY].store
    member_id = request.query.get("memberId")
    if not member_id:
        return _error_response(MalformedPayload("memberId query parameter is required"))

    views = []
    now = datetime.now(timezone.utc)
    for subscription in await store.list_subscriptions(member_id, request.query.get("serverId")):
        tier = await store.get_tier(subscription.tier_id)
        if tier is None:
            logger.warning(f"Subscription {subscription.id} references missing tier {subscription.tier_id}")
            continue
        transactions = await store.list_transactions(subscription.id)
        views.append(project(subscription, transactions, tier, now, request.app[LOOKAHEAD_KEY]).to_dict())
    return web.json_response(views)


def create_app(
    reconciler: Reconciler,
    verifier: Optional[SignatureVerifier] = None,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
    gateway: Optional[MidtransClient] = None,
) -> web.Application:
    """
    Create the aiohttp application.

    Args:
        reconciler: Reconciler bound to the application's store
        verifier: Signature check for raw notification bodies; defaults to the
            Midtrans SHA512 scheme with the configured server key
        lookahead: Window for the ``isExpiringSoon`` flag
        gateway: Midtrans client for checkout and status polling; without one
            the payment routes answer 503

    Returns:
        Configured aiohttp Application
    """
    if verifier is None:
        server_key = get_config().midtrans_server_key.get_secret_value()

        def _verify(payload: bytes) -> bool:
            return verify_midtrans_signature(payload, server_key)

        verifier = _verify

    app = web.Application()
    app[RECONCILER_KEY] = reconciler
    app[VERIFIER_KEY] = verifier
    app[LOOKAHEAD_KEY] = lookahead
    app[GATEWAY_KEY] = gateway
    app.router.add_post("/webhooks/midtrans", webhook_endpoint)
    app.router.add_post("/payments", checkout_endpoint)
    app.router.add_get("/payments/{order_id}", payment_endpoint)
    app.router.add_post("/payments/{order_id}/sync", sync_endpoint)
    app.router.add_get("/subscriptions", list_subscriptions_endpoint)
    app.router.add_get("/subscriptions/{subscription_id}", subscription_endpoint)
    app.router.add_post("/subscriptions/{subscription_id}/cancel", cancel_endpoint)
    return app


async def run_server(
    reconciler: Reconciler,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the HTTP server until ``shutdown_event`` is set.

    Args:
        reconciler: Reconciler bound to the application's store
        shutdown_event: Optional event to signal shutdown
    """
    config = get_config()
    gateway = None
    if config.midtrans_server_key.get_secret_value():
        gateway = MidtransClient.from_config(config)
    else:
        logger.warning("midtrans_server_key not configured; payment routes disabled")
    app = create_app(
        reconciler,
        lookahead=timedelta(days=config.expiring_soon_days),
        gateway=gateway,
    )

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", config.webhook_server_port)
    await site.start()

    logger.info(f"Webhook server listening on port {config.webhook_server_port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down webhook server...")
    await runner.cleanup()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set ``shutdown_event`` on SIGTERM/SIGINT."""

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info(f"Received signal {sig}")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

