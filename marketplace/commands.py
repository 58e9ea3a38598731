"""
Marketplace Service — コマンドハンドラ (Write 側)

注文の作成・ステータス更新・削除。
状態を変更するコマンドは、同じトランザクションで Outbox にイベントを追記する。
通知の配信はディスパッチャの仕事で、コマンドは結果を待たない。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from . import cart, catalog, event_store, identity, queries
from .aggregate import OrderAggregate, OrderItem, OrderStatus, ShippingAddress
from .errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    EmptyCartError,
    InsufficientStockError,
    InvalidOrderStateError,
    InvalidStatusError,
    OrderNotFoundError,
)
from .events import ORDER_PLACED, ORDER_STATUS_UPDATED, OrderPlaced, OrderStatusUpdated

logger = logging.getLogger(__name__)

# deadlock_detected / serialization_failure
LOCK_CONFLICT_SQLSTATES = {"40P01", "40001"}


def _is_lock_conflict(error: DBAPIError) -> bool:
    return getattr(error.orig, "sqlstate", None) in LOCK_CONFLICT_SQLSTATES


@dataclass(frozen=True)
class Actor:
    """リクエストを行った主体 (認証は API ゲートウェイ側で済んでいる前提)"""
    user_id: str
    role: str  # BUYER / SELLER / ADMIN


async def place_order(
    session: AsyncSession,
    buyer_id: str,
    address_id: str | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド (カート → 注文)

    1. カートを読み込む (空なら失敗)
    2. 配送先を住所録から解決しスナップショットにする
    3. 明細ごとに、トランザクション内で商品を読み直し価格と在庫を確認し、
       (product_id, sku) の順に条件付き UPDATE で在庫を減らす
    4. 注文 (PENDING) と明細を INSERT
    5. Outbox に ORDER_PLACED を追記
    6. カートを空にしてコミット

    どこで失敗してもロールバックし、在庫・注文・カートに痕跡を残さない。
    """
    try:
        cart_id, lines = await cart.load_lines(session, buyer_id)
        if not lines:
            raise EmptyCartError(buyer_id)

        address: ShippingAddress | None = None
        if address_id:
            address = await identity.resolve_shipping_address(session, buyer_id, address_id)

        items: list[OrderItem] = []
        shipping_fee = 0
        for line in lines:
            # カートの価格は信用しない: ここで読み直した値が正
            product = await catalog.require_product(session, line.product_id)
            unit_price = product.price_for(line.variant_sku)
            available = product.stock_for(line.variant_sku)
            if available < line.quantity:
                raise InsufficientStockError(
                    product.id, line.variant_sku, line.quantity, available
                )

            shipping_fee += product.line_shipping_fee
            items.append(
                OrderItem(
                    product_id=product.id,
                    variant_sku=line.variant_sku,
                    title=product.name,
                    price=unit_price,
                    quantity=line.quantity,
                )
            )

        # 行ロックは常に (product_id, sku) の順で取る。カート順だとデッドロックする。
        for item in sorted(items, key=lambda i: (i.product_id, i.variant_sku or "")):
            if not await catalog.decrement_stock(
                session, item.product_id, item.variant_sku, item.quantity
            ):
                # 読み込み後に別の注文が在庫を減らした
                current = await catalog.require_product(session, item.product_id)
                raise InsufficientStockError(
                    item.product_id,
                    item.variant_sku,
                    item.quantity,
                    current.stock_for(item.variant_sku),
                )

        now = datetime.now(timezone.utc)
        agg = OrderAggregate()
        agg.apply_order_placed(
            str(uuid.uuid4()), buyer_id, items, shipping_fee, address, now
        )

        await _insert_order(session, agg)
        await event_store.append_event(
            session,
            agg.id,
            OrderPlaced(
                order_id=agg.id,
                buyer_id=buyer_id,
                item_count=len(items),
                total=agg.total,
                timestamp=now,
            ),
            ORDER_PLACED,
            agg.version,
        )
        await cart.clear(session, cart_id)

        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        if _is_lock_conflict(e):
            logger.warning("Order placement for %s aborted by the database: %s", buyer_id, e.orig)
            raise ConcurrentUpdateError("Order placement") from e
        raise
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order %s placed by %s: subtotal=%d shipping=%d total=%d",
        agg.id, buyer_id, agg.subtotal, agg.shipping_fee, agg.total,
    )
    return agg


async def _insert_order(session: AsyncSession, agg: OrderAggregate) -> None:
    address = agg.shipping_address or ShippingAddress()
    await session.execute(
        text("""
            INSERT INTO orders
                (id, buyer_id, subtotal, shipping_fee, total, status,
                 full_name, phone, address_line, city, country, postal_code,
                 version, created_at, updated_at)
            VALUES
                (:id, :buyer_id, :subtotal, :shipping_fee, :total, :status,
                 :full_name, :phone, :address_line, :city, :country, :postal_code,
                 :version, :now, :now)
        """),
        {
            "id": agg.id,
            "buyer_id": agg.buyer_id,
            "subtotal": agg.subtotal,
            "shipping_fee": agg.shipping_fee,
            "total": agg.total,
            "status": agg.status.value,
            "full_name": address.full_name,
            "phone": address.phone,
            "address_line": address.address_line,
            "city": address.city,
            "country": address.country,
            "postal_code": address.postal_code,
            "version": agg.version,
            "now": agg.created_at,
        },
    )
    for position, item in enumerate(agg.items):
        await session.execute(
            text("""
                INSERT INTO order_items
                    (order_id, position, product_id, variant_sku, title, price, quantity)
                VALUES
                    (:order_id, :position, :product_id, :variant_sku, :title, :price, :quantity)
            """),
            {
                "order_id": agg.id,
                "position": position,
                "product_id": item.product_id,
                "variant_sku": item.variant_sku,
                "title": item.title,
                "price": item.price,
                "quantity": item.quantity,
            },
        )


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    status: str,
    actor: Actor,
) -> OrderAggregate:
    """
    注文ステータス更新コマンド (出品者・管理者)

    ORDER_CONFIRMED → SHIPPED → DELIVERED、または早い段階での CANCELLED。
    PENDING → ORDER_CONFIRMED は決済 Webhook 専用なのでここでは許可しない。
    在庫・決済には触れない。
    """
    try:
        requested = OrderStatus(status)
    except ValueError:
        raise InvalidStatusError(status) from None

    agg = await queries.load_order(session, order_id)
    if agg is None:
        raise OrderNotFoundError(order_id)

    if actor.role == "SELLER":
        shop = await catalog.require_shop_by_owner(session, actor.user_id)
        shop_products = await catalog.product_ids_for_shop(session, shop.id)
        if not agg.product_ids() & shop_products:
            raise AuthorizationError("Not authorized to update this order")
    elif actor.role != "ADMIN":
        raise AuthorizationError("Not authorized to update this order")

    if not agg.can_transition_to(requested):
        raise InvalidOrderStateError(order_id, agg.status.value, requested.value)

    previous = agg.status
    expected_version = agg.version
    now = datetime.now(timezone.utc)
    agg.apply_status_changed(requested, now)

    try:
        # version が変わっていれば他の更新 (決済確認など) に先を越された
        result = await session.execute(
            text("""
                UPDATE orders
                SET status = :status, delivered_at = :delivered_at,
                    version = :new_version, updated_at = :now
                WHERE id = :id AND version = :version
            """),
            {
                "id": order_id,
                "status": agg.status.value,
                "delivered_at": agg.delivered_at,
                "new_version": agg.version,
                "version": expected_version,
                "now": now,
            },
        )
        if result.rowcount != 1:
            raise InvalidOrderStateError(order_id, previous.value, requested.value)

        await event_store.append_event(
            session,
            order_id,
            OrderStatusUpdated(
                order_id=order_id,
                buyer_id=agg.buyer_id,
                previous_status=previous.value,
                status=agg.status.value,
                timestamp=now,
            ),
            ORDER_STATUS_UPDATED,
            agg.version,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order %s status %s -> %s by %s %s",
        order_id, previous.value, agg.status.value, actor.role, actor.user_id,
    )
    return agg


async def delete_order(session: AsyncSession, order_id: str) -> dict:
    """
    注文削除 (管理者のみ)

    監査証跡が失われるので通常は使わない。Outbox のイベントは残す。
    """
    agg = await queries.load_order(session, order_id)
    if agg is None:
        raise OrderNotFoundError(order_id)

    try:
        await session.execute(text("DELETE FROM order_items WHERE order_id = :id"), {"id": order_id})
        await session.execute(text("DELETE FROM orders WHERE id = :id"), {"id": order_id})
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.warning("Order %s deleted (status was %s)", order_id, agg.status.value)
    return {"message": "Order deleted successfully"}
