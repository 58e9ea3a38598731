"""
Marketplace Service — カート

購入者ごとに1つのカート (user_id UNIQUE)。
明細の price は追加・更新時点のスナップショットで、注文時には使わない
(注文トランザクション内でカタログから読み直す)。
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import CartItemNotFoundError, CartNotFoundError, ValidationError


@dataclass
class CartLine:
    id: str
    product_id: str
    variant_sku: str | None
    quantity: int
    price: int


async def _find_cart_id(session: AsyncSession, buyer_id: str) -> str | None:
    result = await session.execute(
        text("SELECT id FROM carts WHERE user_id = :user_id"), {"user_id": buyer_id}
    )
    row = result.fetchone()
    return str(row.id) if row else None


async def load_lines(session: AsyncSession, buyer_id: str) -> tuple[str | None, list[CartLine]]:
    """カート ID と明細 (追加順) を返す。カートがなければ (None, [])。"""
    cart_id = await _find_cart_id(session, buyer_id)
    if cart_id is None:
        return None, []
    result = await session.execute(
        text("""
            SELECT id, product_id, variant_sku, quantity, price
            FROM cart_items
            WHERE cart_id = :cart_id
            ORDER BY position ASC
        """),
        {"cart_id": cart_id},
    )
    lines = [
        CartLine(
            id=str(row.id),
            product_id=str(row.product_id),
            variant_sku=row.variant_sku,
            quantity=int(row.quantity),
            price=int(row.price),
        )
        for row in result.fetchall()
    ]
    return cart_id, lines


async def get_cart(session: AsyncSession, buyer_id: str) -> dict:
    cart_id, lines = await load_lines(session, buyer_id)
    return {
        "id": cart_id,
        "user_id": buyer_id,
        "items": [
            {
                "id": line.id,
                "product_id": line.product_id,
                "variant_sku": line.variant_sku,
                "quantity": line.quantity,
                "price": line.price,
            }
            for line in lines
        ],
        "subtotal": sum(line.price * line.quantity for line in lines),
    }


async def add_item(
    session: AsyncSession,
    buyer_id: str,
    product_id: str,
    variant_sku: str | None = None,
    quantity: int = 1,
) -> dict:
    """
    カートに商品を追加する。

    同じ商品+SKU の明細があれば数量を加算し、価格スナップショットを更新する。
    在庫チェックは注文時に行うのでここではしない。
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")

    product = await catalog.require_product(session, product_id)
    sku = None
    if variant_sku:
        # 入力の揺れを吸収し、カタログ上の正式な SKU で保存する
        sku = product.require_variant(variant_sku, loose=True).sku
    unit_price = product.price_for(sku)

    now = datetime.now(timezone.utc)
    cart_id, lines = await load_lines(session, buyer_id)
    if cart_id is None:
        cart_id = str(uuid.uuid4())
        await session.execute(
            text("INSERT INTO carts (id, user_id, updated_at) VALUES (:id, :user_id, :now)"),
            {"id": cart_id, "user_id": buyer_id, "now": now},
        )

    existing = next(
        (
            line
            for line in lines
            if line.product_id == product_id and (line.variant_sku or "") == (sku or "")
        ),
        None,
    )
    if existing:
        await session.execute(
            text("""
                UPDATE cart_items SET quantity = quantity + :qty, price = :price
                WHERE id = :id
            """),
            {"id": existing.id, "qty": quantity, "price": unit_price},
        )
    else:
        position = await _next_position(session, cart_id)
        await session.execute(
            text("""
                INSERT INTO cart_items (id, cart_id, product_id, variant_sku, quantity, price, position)
                VALUES (:id, :cart_id, :product_id, :sku, :qty, :price, :position)
            """),
            {
                "id": str(uuid.uuid4()),
                "cart_id": cart_id,
                "product_id": product_id,
                "sku": sku,
                "qty": quantity,
                "price": unit_price,
                "position": position,
            },
        )
    await _touch(session, cart_id, now)
    await session.commit()
    return await get_cart(session, buyer_id)


async def update_item(
    session: AsyncSession,
    buyer_id: str,
    item_id: str,
    quantity: int,
) -> dict:
    """数量を更新する。0 以下なら明細を削除する。"""
    cart_id, lines = await load_lines(session, buyer_id)
    if cart_id is None:
        raise CartNotFoundError(buyer_id)
    line = next((line for line in lines if line.id == item_id), None)
    if line is None:
        raise CartItemNotFoundError(item_id)

    if quantity <= 0:
        await session.execute(text("DELETE FROM cart_items WHERE id = :id"), {"id": item_id})
    else:
        product = await catalog.require_product(session, line.product_id)
        await session.execute(
            text("UPDATE cart_items SET quantity = :qty, price = :price WHERE id = :id"),
            {"id": item_id, "qty": quantity, "price": product.price_for(line.variant_sku)},
        )
    await _touch(session, cart_id, datetime.now(timezone.utc))
    await session.commit()
    return await get_cart(session, buyer_id)


async def remove_item(session: AsyncSession, buyer_id: str, item_id: str) -> dict:
    cart_id, lines = await load_lines(session, buyer_id)
    if cart_id is None:
        raise CartNotFoundError(buyer_id)
    if not any(line.id == item_id for line in lines):
        raise CartItemNotFoundError(item_id)
    await session.execute(text("DELETE FROM cart_items WHERE id = :id"), {"id": item_id})
    await _touch(session, cart_id, datetime.now(timezone.utc))
    await session.commit()
    return await get_cart(session, buyer_id)


async def clear(session: AsyncSession, cart_id: str) -> None:
    """明細を全削除する。注文トランザクションの一部として呼ばれる (コミットしない)。"""
    await session.execute(text("DELETE FROM cart_items WHERE cart_id = :cart_id"), {"cart_id": cart_id})
    await _touch(session, cart_id, datetime.now(timezone.utc))


async def _next_position(session: AsyncSession, cart_id: str) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(position), -1) AS pos FROM cart_items WHERE cart_id = :cart_id"),
        {"cart_id": cart_id},
    )
    return int(result.scalar_one()) + 1


async def _touch(session: AsyncSession, cart_id: str, now: datetime) -> None:
    await session.execute(
        text("UPDATE carts SET updated_at = :now WHERE id = :id"), {"id": cart_id, "now": now}
    )
