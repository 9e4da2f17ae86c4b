"""Tests for the HTTP endpoints and Midtrans signature verification."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp import test_utils

from membran.db.models import SubscriptionStatus, TransactionStatus
from membran.payments.errors import (
    AmountMismatch,
    Busy,
    DuplicateOrder,
    MalformedPayload,
    SignatureInvalid,
    UnknownOrder,
)
from membran.payments.gateway import GatewayError, MidtransClient, PaymentLink
from membran.payments.reconciler import Reconciler
from membran.payments.server import (
    create_app,
    error_status,
    midtrans_signature,
    verify_midtrans_signature,
)

SERVER_KEY = "SB-Mid-server-test"


def _signed(body: dict) -> dict:
    body["signature_key"] = midtrans_signature(
        body["order_id"], body["status_code"], body["gross_amount"], SERVER_KEY
    )
    return body


class TestSignatureVerification:

    def test_valid_signature(self, notification):
        payload = json.dumps(_signed(notification("SUB-1-1"))).encode()
        assert verify_midtrans_signature(payload, SERVER_KEY) is True

    def test_tampered_amount(self, notification):
        body = _signed(notification("SUB-1-1"))
        body["gross_amount"] = "1.00"
        assert verify_midtrans_signature(json.dumps(body).encode(), SERVER_KEY) is False

    def test_wrong_key(self, notification):
        payload = json.dumps(_signed(notification("SUB-1-1"))).encode()
        assert verify_midtrans_signature(payload, "another-key") is False

    def test_missing_signature(self, notification):
        payload = json.dumps(notification("SUB-1-1")).encode()
        assert verify_midtrans_signature(payload, SERVER_KEY) is False

    def test_unconfigured_key_rejects(self, notification):
        payload = json.dumps(_signed(notification("SUB-1-1"))).encode()
        assert verify_midtrans_signature(payload, "") is False

    @pytest.mark.parametrize("payload", [b"not json", b"[]"])
    def test_unparseable_body(self, payload):
        assert verify_midtrans_signature(payload, SERVER_KEY) is False


class TestErrorMapping:
    @pytest.mark.parametrize(
        "error, status",
        [
            (SignatureInvalid("x"), 401),
            (MalformedPayload("x"), 400),
            (UnknownOrder("x"), 404),
            (Busy("x"), 503),
            (AmountMismatch("x"), 200),
            (DuplicateOrder("x"), 500),
        ],
    )
    def test_status_codes(self, error, status):
        assert error_status(error) == status


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_settlement_applied(self, store, reconciler, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))
            body = await resp.json()

        assert resp.status == 200
        assert body["outcome"] == "applied"
        assert body["subscriptionStatus"] == "Active"
        assert (await store.get_subscription("sub-1")).status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_redelivery_reported_duplicate(self, reconciler, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))
            resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))
            body = await resp.json()

        assert resp.status == 200
        assert body["outcome"] == "duplicate"

    @pytest.mark.asyncio
    async def test_bad_signature_401(self, store, reconciler, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        app = create_app(reconciler, verifier=lambda payload: False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))
            body = await resp.json()

        assert resp.status == 401
        assert body["error"]["code"] == "signature_invalid"
        assert (await store.find_transaction("SUB-1-1")).status is TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_default_verifier_uses_configured_key(self, store, reconciler, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        config = Mock()
        config.midtrans_server_key.get_secret_value.return_value = SERVER_KEY

        with patch("membran.payments.server.get_config", return_value=config):
            app = create_app(reconciler)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/webhooks/midtrans", data=json.dumps(_signed(notification("SUB-1-1")))
            )

        assert resp.status == 200
        assert (await store.find_transaction("SUB-1-1")).status is TransactionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_malformed_400(self, reconciler):
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/webhooks/midtrans", data=b"{}")
            body = await resp.json()

        assert resp.status == 400
        assert body["error"]["code"] == "malformed_payload"

    @pytest.mark.asyncio
    async def test_unknown_order_404(self, reconciler, notification):
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-x-1")))
            body = await resp.json()

        assert resp.status == 404
        assert body["error"]["context"]["gateway_order_id"] == "SUB-x-1"

    @pytest.mark.asyncio
    async def test_busy_503(self, store, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        app = create_app(Reconciler(store, lock_timeout=0.05), verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            async with store.locked("sub-1", 1.0):
                resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_invalid_transition_acknowledged(self, reconciler, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/webhooks/midtrans",
                data=json.dumps(notification("SUB-1-1", gross_amount="1.00")),
            )
            body = await resp.json()

        assert resp.status == 200
        assert body["error"]["code"] == "amount_mismatch"

    @pytest.mark.asyncio
    async def test_unexpected_error_500(self, reconciler, notification, monkeypatch):
        async def explode(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(reconciler, "handle_notification", explode)
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/webhooks/midtrans", data=json.dumps(notification("SUB-1-1")))

        assert resp.status == 500


class TestSubscriptionEndpoints:

    @pytest.mark.asyncio
    async def test_get_subscription_view(self, reconciler, add_subscription):
        add_subscription(
            status=SubscriptionStatus.ACTIVE,
            expiry_date=datetime.now(timezone.utc) + timedelta(days=3),
        )
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/subscriptions/sub-1")
            body = await resp.json()

        assert resp.status == 200
        assert body["id"] == "sub-1"
        assert body["status"] == "Active"
        assert body["tier"]["duration"] == "monthly"
        assert body["isExpiringSoon"] is True
        assert body["inconsistencies"] == []

    @pytest.mark.asyncio
    async def test_get_missing_subscription(self, reconciler):
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/subscriptions/nope")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_cancel(self, store, reconciler, add_subscription, now):
        add_subscription(status=SubscriptionStatus.ACTIVE, expiry_date=now + timedelta(days=400))
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/subscriptions/sub-1/cancel")
            body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "Cancelled"
        assert (await store.get_subscription("sub-1")).status is SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_expired_conflict(self, reconciler, add_subscription, now):
        add_subscription(status=SubscriptionStatus.EXPIRED, expiry_date=now - timedelta(days=1))
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/subscriptions/sub-1/cancel")

        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_list_member_subscriptions(self, store, reconciler, add_subscription, now):
        add_subscription(status=SubscriptionStatus.ACTIVE, expiry_date=now + timedelta(days=400))
        add_subscription("sub-2", member_id="member-sub-1", server_id="server-2", tier_id="yearly")
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            every = await (await client.get("/subscriptions", params={"memberId": "member-sub-1"})).json()
            resp = await client.get("/subscriptions", params={"memberId": "member-sub-1", "serverId": "server-2"})
            one_server = await resp.json()

        assert [view["id"] for view in every] == ["sub-1", "sub-2"]
        assert resp.status == 200
        assert [view["id"] for view in one_server] == ["sub-2"]
        assert one_server[0]["status"] == "Pending"

    @pytest.mark.asyncio
    async def test_list_requires_member(self, reconciler):
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/subscriptions")

        assert resp.status == 400


class TestPaymentEndpoints:

    @pytest.fixture
    def gateway(self):
        gateway = AsyncMock(spec=MidtransClient)
        gateway.create_transaction.side_effect = lambda order_id, amount, email, name, expiry_hours=None: PaymentLink(
            order_id,
            f"tok-{order_id}",
            f"https://pay.example/{order_id}",
            datetime(2024, 6, 2, 12, 0, tzinfo=timezone.utc),
        )
        return gateway

    @pytest.fixture
    def app(self, reconciler, gateway):
        return create_app(reconciler, verifier=lambda payload: True, gateway=gateway)

    @pytest.mark.asyncio
    async def test_checkout_returns_payment_link(self, store, app, gateway):
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-9", "serverId": "server-1", "tierId": "monthly", "email": "m9@example.com"},
            )
            body = await resp.json()

        assert resp.status == 201
        assert body["gatewayOrderId"].startswith(f"SUB-{body['subscriptionId']}-")
        assert body["redirectUrl"] == f"https://pay.example/{body['gatewayOrderId']}"
        assert body["expiresAt"] == "2024-06-02T12:00:00+00:00"
        txn = await store.find_transaction(body["gatewayOrderId"])
        assert txn.status is TransactionStatus.PENDING
        assert txn.amount == 50000

    @pytest.mark.asyncio
    async def test_checkout_other_tier_while_active_conflicts(self, store, app, gateway, add_subscription, now):
        add_subscription(status=SubscriptionStatus.ACTIVE, expiry_date=now + timedelta(days=400))

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-sub-1", "serverId": "server-1", "tierId": "yearly", "email": "m@example.com"},
            )
            body = await resp.json()

        assert resp.status == 409
        assert body["error"]["code"] == "active_subscription_exists"
        assert body["error"]["context"]["subscription_id"] == "sub-1"
        gateway.create_transaction.assert_not_awaited()
        assert len(await store.list_subscriptions("member-sub-1")) == 1

    @pytest.mark.asyncio
    async def test_checkout_same_tier_while_active_renews(self, app, add_subscription, now):
        add_subscription(status=SubscriptionStatus.ACTIVE, expiry_date=now + timedelta(days=3))

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-sub-1", "serverId": "server-1", "tierId": "monthly", "email": "m@example.com"},
            )
            body = await resp.json()

        assert resp.status == 201
        assert body["subscriptionId"] == "sub-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"memberId": "member-9", "serverId": "server-1", "email": "m@example.com"},
            ["not", "an", "object"],
        ],
    )
    async def test_checkout_invalid_body(self, app, gateway, payload):
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/payments", json=payload)

        assert resp.status == 400
        gateway.create_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checkout_unknown_tier(self, app):
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-9", "serverId": "server-1", "tierId": "platinum", "email": "m@example.com"},
            )

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_checkout_gateway_refusal_502(self, app, gateway):
        gateway.create_transaction.side_effect = GatewayError("Midtrans API error: 500", status=500)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-9", "serverId": "server-1", "tierId": "monthly", "email": "m@example.com"},
            )
            body = await resp.json()

        assert resp.status == 502
        assert body["error"]["context"]["status"] == 500

    @pytest.mark.asyncio
    async def test_no_gateway_503(self, reconciler):
        app = create_app(reconciler, verifier=lambda payload: True)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post(
                "/payments",
                json={"memberId": "member-9", "serverId": "server-1", "tierId": "monthly", "email": "m@example.com"},
            )

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_get_payment(self, app, add_subscription, add_order):
        add_subscription()
        add_order("SUB-1-1")

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/payments/SUB-1-1")
            body = await resp.json()
            missing = await client.get("/payments/SUB-x-1")

        assert resp.status == 200
        assert body["orderId"] == "SUB-1-1"
        assert body["subscriptionId"] == "sub-1"
        assert body["status"] == "Pending"
        assert body["amount"] == 50000
        assert body["paymentDate"] is None
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_sync_applies_polled_status(self, store, app, gateway, add_subscription, add_order, notification):
        add_subscription()
        add_order("SUB-1-1")
        gateway.get_status.return_value = notification("SUB-1-1")

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/payments/SUB-1-1/sync")
            body = await resp.json()

        assert resp.status == 200
        assert body["outcome"] == "applied"
        gateway.get_status.assert_awaited_once_with("SUB-1-1")
        assert (await store.get_subscription("sub-1")).status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_sync_gateway_unreachable_502(self, store, app, gateway, add_subscription, add_order):
        add_subscription()
        add_order("SUB-1-1")
        gateway.get_status.side_effect = GatewayError("Midtrans request failed")

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.post("/payments/SUB-1-1/sync")

        assert resp.status == 502
        assert (await store.find_transaction("SUB-1-1")).status is TransactionStatus.PENDING
