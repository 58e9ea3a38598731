"""
Marketplace Service — 決済 Webhook の突き合わせ (Reconciler)

payment_intent.succeeded を受けて注文を PENDING → ORDER_CONFIRMED にする。
Webhook は「少なくとも1回」配信されるので、同じイベントが何度届いても
状態遷移は1回だけ起きなければならない (冪等性ガード)。

    ┌──────────┐  payment_intent.succeeded  ┌────────────┐
    │  Stripe  │ ─────────────────────────▶ │ Reconciler │
    └──────────┘   (重複・順不同あり)        └─────┬──────┘
                                                   │ status = PENDING のときだけ
                                            ┌──────▼──────┐
                                            │   orders    │
                                            └─────────────┘

送金そのものは Stripe の transfer_data が行う。ここでは出品者の取り分を
ログに残すだけで、お金は動かさない。
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, event_store, queries
from .aggregate import OrderStatus
from .checkout import compute_seller_earning
from .events import ORDER_STATUS_UPDATED, OrderStatusUpdated
from .gateway import GatewayEvent

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Webhook 処理の結果。HTTP 応答は常に 200 (署名エラー・例外を除く)。"""
    event_type: str
    order_id: str | None = None
    applied: bool = False
    reason: str = ""
    earnings: dict[str, Decimal] = field(default_factory=dict)


async def confirm_payment(
    session: AsyncSession,
    order_id: str,
    commission_rate: Decimal,
) -> ReconcileResult:
    """
    注文を決済済みにする。

    - 注文がない → 何もしない (Stripe に再送させても意味がない)
    - PENDING 以外 → 何もしない (重複配信・確定済み)
    - PENDING → ORDER_CONFIRMED、paid_at を記録

    UPDATE にも status = 'PENDING' と version を条件として付け、
    同時に届いた重複イベントのうち1つだけが反映されるようにする。
    """
    result = ReconcileResult(event_type="payment_intent.succeeded", order_id=order_id)
    try:
        agg = await queries.load_order(session, order_id)
        if agg is None:
            logger.error("Order %s not found for payment confirmation", order_id)
            result.reason = "order_not_found"
            await session.rollback()
            return result

        if agg.status != OrderStatus.PENDING:
            logger.info(
                "Order %s already in status %s, skipping duplicate confirmation",
                order_id, agg.status.value,
            )
            result.reason = "not_pending"
            await session.rollback()
            return result

        expected_version = agg.version
        now = datetime.now(timezone.utc)
        agg.apply_payment_confirmed(now)

        updated = await session.execute(
            text("""
                UPDATE orders
                SET status = :status, paid_at = :now, version = :new_version, updated_at = :now
                WHERE id = :id AND status = :pending AND version = :version
            """),
            {
                "id": order_id,
                "status": OrderStatus.ORDER_CONFIRMED.value,
                "pending": OrderStatus.PENDING.value,
                "new_version": agg.version,
                "version": expected_version,
                "now": now,
            },
        )
        if updated.rowcount != 1:
            logger.info("Order %s was confirmed concurrently, skipping", order_id)
            result.reason = "concurrent_update"
            await session.rollback()
            return result

        await event_store.append_event(
            session,
            order_id,
            OrderStatusUpdated(
                order_id=order_id,
                buyer_id=agg.buyer_id,
                previous_status=OrderStatus.PENDING.value,
                status=OrderStatus.ORDER_CONFIRMED.value,
                timestamp=now,
            ),
            ORDER_STATUS_UPDATED,
            agg.version,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    result.applied = True
    logger.info("Order %s confirmed, paid_at=%s", order_id, now.isoformat())

    # トランザクションの外: 出品者の取り分を記録 (情報のみ)
    earnings: dict[str, Decimal] = defaultdict(Decimal)
    for item in agg.items:
        product = await catalog.get_product(session, item.product_id)
        if product is None:
            continue
        earnings[product.shop_id] += compute_seller_earning(item.line_total, commission_rate)
    for shop_id, earning in earnings.items():
        logger.info("Computed earning for shop %s on order %s: %s", shop_id, order_id, earning)
    result.earnings = dict(earnings)
    return result


async def handle_platform_event(
    session: AsyncSession,
    event: GatewayEvent,
    commission_rate: Decimal,
) -> ReconcileResult:
    """プラットフォーム Webhook のイベントタイプごとの振り分け"""
    if event.type == "payment_intent.succeeded":
        metadata = event.object.get("metadata") or {}
        order_id = metadata.get("orderId")
        if not order_id:
            logger.info(
                "Payment %s succeeded but no orderId in metadata, skipping order confirmation",
                event.object.get("id"),
            )
            return ReconcileResult(event_type=event.type, reason="no_order_metadata")
        return await confirm_payment(session, order_id, commission_rate)

    if event.type in ("payout.paid", "payout.failed"):
        # 出金は Stripe ダッシュボードで突き合わせる。注文には影響しない。
        logger.info("Received %s event for payout %s", event.type, event.object.get("id"))
        return ReconcileResult(event_type=event.type, reason="observed")

    if event.type in ("transfer.created", "application_fee.created"):
        logger.info("Received %s event: %s", event.type, event.object.get("id"))
        return ReconcileResult(event_type=event.type, reason="observed")

    logger.debug("Unhandled platform event: %s", event.type)
    return ReconcileResult(event_type=event.type, reason="unhandled")


def handle_connected_event(event: GatewayEvent) -> ReconcileResult:
    """接続アカウント Webhook。今のところログに残すだけ。"""
    if event.type in (
        "account.application.authorized",
        "account.application.deauthorized",
        "account.updated",
    ):
        logger.info("Received connected account event: %s %s", event.type, event.object.get("id"))
    elif event.type in ("payout.paid", "payout.failed", "transfer.created"):
        logger.info(
            "Received transfer/payout event for connected account %s: %s",
            event.account, event.type,
        )
    else:
        logger.debug("Unhandled connected event: %s", event.type)
    return ReconcileResult(event_type=event.type, reason="observed")
