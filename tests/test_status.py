"""Tests for manual order status transitions."""

from decimal import Decimal

import pytest

from marketplace import cart, commands, event_store, queries, webhooks
from marketplace.aggregate import MANUAL_TRANSITIONS, OrderAggregate, OrderStatus
from marketplace.commands import Actor
from marketplace.errors import (
    AuthorizationError,
    InvalidOrderStateError,
    InvalidStatusError,
    OrderNotFoundError,
    ShopNotFoundError,
)

ADMIN = Actor("admin-1", "ADMIN")
SELLER_A = Actor("seller-1", "SELLER")
SELLER_B = Actor("seller-2", "SELLER")


def confirmed_order(db, market):
    db.run(cart.add_item, "buyer-1", market.mug, None, 1)
    order = db.run(commands.place_order, "buyer-1")
    db.run(webhooks.confirm_payment, order.id, Decimal("0.10"))
    return order


def move(db, order_id, status, actor):
    return db.run(commands.update_order_status, order_id, status, actor)


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,requested,allowed",
        [
            (OrderStatus.ORDER_CONFIRMED, OrderStatus.SHIPPED, True),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED, True),
            (OrderStatus.PENDING, OrderStatus.CANCELLED, True),
            (OrderStatus.ORDER_CONFIRMED, OrderStatus.CANCELLED, True),
            (OrderStatus.PENDING, OrderStatus.ORDER_CONFIRMED, False),
            (OrderStatus.PENDING, OrderStatus.SHIPPED, False),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED, False),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED, False),
            (OrderStatus.CANCELLED, OrderStatus.PENDING, False),
            (OrderStatus.SHIPPED, OrderStatus.SHIPPED, False),
        ],
    )
    def test_can_transition_to(self, current, requested, allowed):
        agg = OrderAggregate()
        agg.status = current
        assert agg.can_transition_to(requested) is allowed

    def test_product_ids(self, db, market):
        db.run(cart.add_item, "buyer-1", market.tshirt, "S", 1)
        db.run(cart.add_item, "buyer-1", market.tshirt, "M", 1)
        db.run(cart.add_item, "buyer-1", market.poster, None, 1)
        order = db.run(commands.place_order, "buyer-1")

        assert order.product_ids() == {market.tshirt, market.poster}

    def test_terminal_states(self):
        assert MANUAL_TRANSITIONS[OrderStatus.DELIVERED] == set()
        assert MANUAL_TRANSITIONS[OrderStatus.CANCELLED] == set()


class TestUpdateOrderStatus:
    def test_seller_ships_and_delivers(self, db, market):
        order = confirmed_order(db, market)

        shipped = move(db, order.id, "SHIPPED", SELLER_A)
        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.delivered_at is None

        delivered = move(db, order.id, "DELIVERED", SELLER_A)
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.delivered_at is not None
        assert delivered.version == 4

        events = db.run(event_store.load_events, order.id)
        assert [e["event_data"].get("status") for e in events] == [
            None, "ORDER_CONFIRMED", "SHIPPED", "DELIVERED",
        ]

    def test_admin_cancels_pending(self, db, market):
        db.run(cart.add_item, "buyer-1", market.poster, None, 1)
        order = db.run(commands.place_order, "buyer-1")

        cancelled = move(db, order.id, "CANCELLED", ADMIN)
        assert cancelled.status == OrderStatus.CANCELLED

    def test_payment_confirmation_is_webhook_only(self, db, market):
        db.run(cart.add_item, "buyer-1", market.mug, None, 1)
        order = db.run(commands.place_order, "buyer-1")

        with pytest.raises(InvalidOrderStateError):
            move(db, order.id, "ORDER_CONFIRMED", ADMIN)

    def test_backwards_move_rejected(self, db, market):
        order = confirmed_order(db, market)
        move(db, order.id, "SHIPPED", ADMIN)
        move(db, order.id, "DELIVERED", ADMIN)

        with pytest.raises(InvalidOrderStateError) as exc_info:
            move(db, order.id, "SHIPPED", ADMIN)
        assert exc_info.value.current == "DELIVERED"
        assert exc_info.value.requested == "SHIPPED"

    @pytest.mark.parametrize("status", ["LOST", "shipped", ""])
    def test_non_canonical_status(self, db, market, status):
        order = confirmed_order(db, market)
        with pytest.raises(InvalidStatusError):
            move(db, order.id, status, ADMIN)

    def test_unknown_order(self, db, market):
        with pytest.raises(OrderNotFoundError):
            move(db, "no-such-order", "SHIPPED", ADMIN)

    def test_seller_of_other_shop(self, db, market):
        order = confirmed_order(db, market)
        with pytest.raises(AuthorizationError):
            move(db, order.id, "SHIPPED", SELLER_B)

    def test_seller_without_shop(self, db, market):
        order = confirmed_order(db, market)
        with pytest.raises(ShopNotFoundError):
            move(db, order.id, "SHIPPED", Actor("nobody", "SELLER"))

    def test_buyer_cannot_update(self, db, market):
        order = confirmed_order(db, market)
        with pytest.raises(AuthorizationError):
            move(db, order.id, "SHIPPED", Actor("buyer-1", "BUYER"))

    def test_stale_version(self, db, market, monkeypatch):
        order = confirmed_order(db, market)
        original = queries.load_order

        async def stale_load(session, order_id):
            agg = await original(session, order_id)
            agg.version -= 1
            return agg

        monkeypatch.setattr(queries, "load_order", stale_load)
        with pytest.raises(InvalidOrderStateError):
            move(db, order.id, "SHIPPED", ADMIN)
        monkeypatch.undo()

        assert db.run(queries.load_order, order.id).status == OrderStatus.ORDER_CONFIRMED
