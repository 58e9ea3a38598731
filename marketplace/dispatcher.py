"""
Marketplace Service — Outbox ディスパッチャ

order_events に追記されたイベントを読み出し、通知を作成し、
Redis Pub/Sub の order_events チャネルにも発行する。

┌──────────────┐  同一トランザクション  ┌──────────────┐
│ Order 変更   │ ─────────────────────▶ │ order_events │
└──────────────┘                         └──────┬───────┘
                                                │ ポーリング
                                         ┌──────▼───────┐     ┌───────────────┐
                                         │  Dispatcher  │ ──▶ │ notifications │
                                         └──────┬───────┘     └───────────────┘
                                                │ Pub/Sub (best-effort)
                                         ┌──────▼───────┐
                                         │    Redis     │
                                         └──────────────┘

通知の作成と「配信済み」の記録は同じトランザクションで行うので、
通知が二重に作られることはない。失敗したイベントは attempts を増やして
次回に再試行し、上限に達したものは諦めてログに残す。
"""

import asyncio
import json
import logging
from collections import Counter

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, event_store, queries
from .events import ORDER_PLACED, ORDER_STATUS_UPDATED
from .notifications import NotificationSender

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        sender: NotificationSender,
        redis: aioredis.Redis | None = None,
        max_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.sender = sender
        self.redis = redis
        self.max_attempts = max_attempts

    async def drain_once(self) -> int:
        """未配信イベントを1巡処理し、配信できた件数を返す。"""
        async with self.session_factory() as session:
            pending = await event_store.load_pending(session, self.max_attempts)

        dispatched = 0
        for event in pending:
            if await self._dispatch(event):
                dispatched += 1
        return dispatched

    async def _dispatch(self, event: dict) -> bool:
        async with self.session_factory() as session:
            try:
                await self._handle(session, event)
                if not await event_store.mark_dispatched(session, event["id"]):
                    # 別のディスパッチャが先に配信した
                    await session.rollback()
                    return False
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception(
                    "Failed to dispatch %s for order %s (attempt %d)",
                    event["event_type"], event["aggregate_id"], event["attempts"] + 1,
                )
                await event_store.record_failure(session, event["id"])
                await session.commit()
                if event["attempts"] + 1 >= self.max_attempts:
                    logger.error(
                        "Giving up on event %s after %d attempts", event["id"], self.max_attempts
                    )
                return False

        await self._publish(event)
        logger.info("Dispatched event: %s %s", event["event_type"], event["aggregate_id"])
        return True

    async def _handle(self, session: AsyncSession, event: dict) -> None:
        handler = {
            ORDER_PLACED: self._notify_sellers,
            ORDER_STATUS_UPDATED: self._notify_buyer,
        }.get(event["event_type"])
        if handler:
            await handler(session, event["event_data"])

    async def _notify_sellers(self, session: AsyncSession, data: dict) -> None:
        """ORDER_PLACED → 注文に商品が含まれるショップの出品者ごとに通知"""
        order = await queries.load_order(session, data["order_id"])
        if order is None:
            logger.warning("Order %s no longer exists, skipping seller notification", data["order_id"])
            return

        items_per_shop: Counter[str] = Counter()
        for item in order.items:
            product = await catalog.get_product(session, item.product_id)
            if product is None:
                continue
            items_per_shop[product.shop_id] += 1

        for shop_id, count in items_per_shop.items():
            shop = await catalog.get_shop(session, shop_id)
            if shop is None:
                continue
            await self.sender.send(
                session,
                recipient_id=shop.owner_id,
                recipient_role="SELLER",
                title="New Order",
                message=f"You have a new order containing {count} items",
                data={"orderId": order.id},
            )

    async def _notify_buyer(self, session: AsyncSession, data: dict) -> None:
        """ORDER_STATUS_UPDATED → 購入者に通知"""
        await self.sender.send(
            session,
            recipient_id=data["buyer_id"],
            recipient_role="BUYER",
            title="Order Update",
            message=(
                f"Your order is now {data['status']}. "
                "You can check the details in your order history."
            ),
            data={"orderId": data["order_id"], "status": data["status"]},
        )

    async def _publish(self, event: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                CHANNEL,
                json.dumps(
                    {
                        "event_type": event["event_type"],
                        "data": event["event_data"],
                    },
                    default=str,
                ),
            )
        except Exception:
            logger.warning("Failed to publish %s to redis", event["event_type"], exc_info=True)


async def run_dispatcher(
    dispatcher: OutboxDispatcher,
    shutdown_event: asyncio.Event,
    poll_interval: float,
) -> None:
    """
    shutdown_event がセットされるまで Outbox をポーリングする。
    FastAPI の lifespan からバックグラウンドタスクとして起動される。
    """
    logger.info("Outbox dispatcher started")
    while not shutdown_event.is_set():
        try:
            dispatched = await dispatcher.drain_once()
        except Exception:
            logger.exception("Outbox drain failed")
            dispatched = 0
        if dispatched == 0:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
    logger.info("Outbox dispatcher stopped")
