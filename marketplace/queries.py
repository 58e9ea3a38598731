"""
Marketplace Service — クエリハンドラ (Read 側)

注文の参照系。購入者・出品者・管理者それぞれの一覧と詳細を返す。
"""

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate

_ORDER_TIMESTAMPS = {
    "paid_at": DateTime(timezone=True),
    "delivered_at": DateTime(timezone=True),
    "created_at": DateTime(timezone=True),
    "updated_at": DateTime(timezone=True),
}


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list]:
    if not order_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT order_id, position, product_id, variant_sku, title, price, quantity
            FROM order_items
            WHERE order_id IN :ids
            ORDER BY order_id, position ASC
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": order_ids},
    )
    items: dict[str, list] = {oid: [] for oid in order_ids}
    for row in result.fetchall():
        items[str(row.order_id)].append(row)
    return items


async def _to_aggregates(session: AsyncSession, rows) -> list[OrderAggregate]:
    items = await _load_items(session, [str(row.id) for row in rows])
    return [OrderAggregate.from_rows(row, items[str(row.id)]) for row in rows]


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    """注文集約を読み込む。コマンド側からも使う。"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id").columns(**_ORDER_TIMESTAMPS),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    aggregates = await _to_aggregates(session, [row])
    return aggregates[0]


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    agg = await load_order(session, order_id)
    return agg.to_dict() if agg else None


async def list_orders_for_buyer(session: AsyncSession, buyer_id: str) -> list[dict]:
    """購入者自身の注文 (新しい順)"""
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE buyer_id = :buyer_id
            ORDER BY created_at DESC
        """).columns(**_ORDER_TIMESTAMPS),
        {"buyer_id": buyer_id},
    )
    return [agg.to_dict() for agg in await _to_aggregates(session, result.fetchall())]


async def list_orders_for_shop(
    session: AsyncSession,
    shop_id: str,
    status: str | None = None,
) -> list[dict]:
    """
    出品者のショップの商品を1つでも含む注文。

    status が None または "ALL" なら全ステータス。
    """
    params = {"shop_id": shop_id}
    status_clause = ""
    if status and status != "ALL":
        status_clause = "AND o.status = :status"
        params["status"] = status
    result = await session.execute(
        text(f"""
            SELECT o.* FROM orders o
            WHERE EXISTS (
                SELECT 1 FROM order_items i
                JOIN products p ON p.id = i.product_id
                WHERE i.order_id = o.id AND p.shop_id = :shop_id
            )
            {status_clause}
            ORDER BY o.created_at DESC
        """).columns(**_ORDER_TIMESTAMPS),
        params,
    )
    return [agg.to_dict() for agg in await _to_aggregates(session, result.fetchall())]


async def list_all_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM orders ORDER BY created_at DESC").columns(**_ORDER_TIMESTAMPS),
    )
    return [agg.to_dict() for agg in await _to_aggregates(session, result.fetchall())]
