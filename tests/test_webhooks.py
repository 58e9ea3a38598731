"""Tests for payment webhook verification and reconciliation."""

import time
from decimal import Decimal

import pytest

from marketplace import cart, commands, event_store, queries, webhooks
from marketplace.commands import Actor
from marketplace.errors import InvalidSignatureError
from marketplace.gateway import GatewayEvent, PaymentGateway

from conftest import (
    CONNECTED_SECRET,
    PLATFORM_SECRET,
    gateway_event,
    payment_succeeded,
    sign,
)

RATE = Decimal("0.10")


def place(db, product_id, sku=None, quantity=1):
    db.run(cart.add_item, "buyer-1", product_id, sku, quantity)
    return db.run(commands.place_order, "buyer-1")


def succeeded(order_id):
    return GatewayEvent(
        id="evt_1",
        type="payment_intent.succeeded",
        object={"id": "pi_1", "metadata": {"orderId": order_id} if order_id else {}},
    )


class TestConstructEvent:
    @pytest.fixture
    def gateway(self):
        return PaymentGateway("", PLATFORM_SECRET, CONNECTED_SECRET)

    def test_valid_signature(self, gateway):
        payload = payment_succeeded("order-1")
        event = gateway.construct_event(payload.encode(), sign(payload))

        assert event.type == "payment_intent.succeeded"
        assert event.object["metadata"] == {"orderId": "order-1"}

    def test_tampered_payload(self, gateway):
        payload = payment_succeeded("order-1")
        header = sign(payload)
        tampered = payload.replace("order-1", "order-2")

        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(tampered.encode(), header)

    def test_missing_header(self, gateway):
        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(payment_succeeded("order-1").encode(), None)

    def test_stale_timestamp(self, gateway):
        payload = payment_succeeded("order-1")
        header = sign(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(payload.encode(), header)

    def test_secrets_are_per_endpoint(self, gateway):
        payload = gateway_event("account.updated", {"id": "acct_1"}, account="acct_1")

        event = gateway.construct_event(
            payload.encode(), sign(payload, CONNECTED_SECRET), kind="connected"
        )
        assert event.account == "acct_1"

        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(payload.encode(), sign(payload, CONNECTED_SECRET))

    def test_undecodable_body(self, gateway):
        payload = b'{"id": "evt", "type": "x", "\xff": 1}'

        with pytest.raises(InvalidSignatureError) as exc_info:
            gateway.construct_event(payload, "t=1,v1=deadbeef")
        assert "invalid payload" in str(exc_info.value)

    def test_unconfigured_secret(self):
        gateway = PaymentGateway("", "", "")
        payload = payment_succeeded("order-1")

        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(payload.encode(), sign(payload))


class TestConfirmPayment:
    def test_confirms_pending_order(self, db, market):
        order = place(db, market.tshirt, "S", 2)

        result = db.run(webhooks.handle_platform_event, succeeded(order.id), RATE)

        assert result.applied is True
        assert result.earnings == {market.shop_a: Decimal("3600")}
        stored = db.run(queries.load_order, order.id)
        assert stored.status.value == "ORDER_CONFIRMED"
        assert stored.paid_at is not None
        assert stored.version == 2

    def test_duplicate_delivery_is_noop(self, db, market):
        order = place(db, market.mug)
        db.run(webhooks.handle_platform_event, succeeded(order.id), RATE)
        first_paid_at = db.run(queries.load_order, order.id).paid_at

        result = db.run(webhooks.handle_platform_event, succeeded(order.id), RATE)

        assert result.applied is False
        assert result.reason == "not_pending"
        stored = db.run(queries.load_order, order.id)
        assert stored.paid_at == first_paid_at
        events = db.run(event_store.load_events, order.id)
        assert [e["event_type"] for e in events] == ["ORDER_PLACED", "ORDER_STATUS_UPDATED"]

    def test_late_delivery_does_not_revive_cancelled_order(self, db, market):
        order = place(db, market.mug)
        db.run(commands.update_order_status, order.id, "CANCELLED", Actor("admin-1", "ADMIN"))

        result = db.run(webhooks.confirm_payment, order.id, RATE)

        assert result.reason == "not_pending"
        assert db.run(queries.load_order, order.id).status.value == "CANCELLED"

    def test_unknown_order(self, db, market):
        result = db.run(webhooks.handle_platform_event, succeeded("no-such-order"), RATE)
        assert result.applied is False
        assert result.reason == "order_not_found"

    def test_missing_order_metadata(self, db, market):
        result = db.run(webhooks.handle_platform_event, succeeded(None), RATE)
        assert result.reason == "no_order_metadata"

    def test_lost_compare_and_set(self, db, market, monkeypatch):
        order = place(db, market.mug)
        original = queries.load_order

        async def stale_load(session, order_id):
            agg = await original(session, order_id)
            agg.version -= 1
            return agg

        monkeypatch.setattr(queries, "load_order", stale_load)
        result = db.run(webhooks.confirm_payment, order.id, RATE)

        assert result.reason == "concurrent_update"
        monkeypatch.undo()
        assert db.run(queries.load_order, order.id).status.value == "PENDING"


class TestOtherEvents:
    @pytest.mark.parametrize(
        "event_type",
        ["payout.paid", "payout.failed", "transfer.created", "application_fee.created"],
    )
    def test_observed_only(self, db, market, event_type):
        event = GatewayEvent(id="evt_2", type=event_type, object={"id": "po_1"})
        result = db.run(webhooks.handle_platform_event, event, RATE)
        assert result.reason == "observed"
        assert result.applied is False

    def test_unhandled_type(self, db, market):
        event = GatewayEvent(id="evt_3", type="customer.created", object={})
        result = db.run(webhooks.handle_platform_event, event, RATE)
        assert result.reason == "unhandled"

    def test_connected_account_event(self):
        event = GatewayEvent(id="evt_4", type="account.updated", object={"id": "acct_1"}, account="acct_1")
        assert webhooks.handle_connected_event(event).reason == "observed"
