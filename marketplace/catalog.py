"""
Marketplace Service — カタログ / 在庫台帳

商品・バリエーション・ショップの参照と、在庫の減算を扱う。
すべての関数は呼び出し側の AsyncSession を受け取り、
そのトランザクションに参加する (コミットはしない)。

在庫の減算は「読み取り → 書き込み」ではなく条件付き UPDATE で行う:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

同時に2つの注文が同じ在庫を取り合っても、行ロックの後に WHERE が
再評価されるので、在庫がマイナスになることはない。
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ProductNotFoundError, ShopNotFoundError, VariantNotFoundError


@dataclass
class Variant:
    sku: str
    price: int
    stock: int
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None


@dataclass
class Product:
    id: str
    shop_id: str
    name: str
    base_price: int | None
    sale_price: int | None
    stock: int
    shipping_fee: int
    free_shipping: bool
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None
    description: str | None = None
    variants: list[Variant] = field(default_factory=list)

    @property
    def unit_price(self) -> int:
        """バリエーションなしの実売価格: セール価格 → 基本価格 → 0"""
        if self.sale_price is not None:
            return self.sale_price
        if self.base_price is not None:
            return self.base_price
        return 0

    @property
    def line_shipping_fee(self) -> int:
        return 0 if self.free_shipping else self.shipping_fee

    def find_variant(self, sku: str, loose: bool = False) -> Variant | None:
        """
        SKU でバリエーションを探す。

        loose=True はカート追加時の入力向け (前後の空白・大文字小文字を無視)。
        注文時はカートに保存された SKU をそのまま照合する。
        """
        wanted = sku.strip().lower() if loose else sku
        for variant in self.variants:
            candidate = variant.sku.strip().lower() if loose else variant.sku
            if candidate == wanted:
                return variant
        return None

    def require_variant(self, sku: str, loose: bool = False) -> Variant:
        variant = self.find_variant(sku, loose=loose)
        if variant is None:
            raise VariantNotFoundError(self.id, sku, [v.sku for v in self.variants])
        return variant

    def price_for(self, sku: str | None, loose: bool = False) -> int:
        if sku:
            return self.require_variant(sku, loose=loose).price
        return self.unit_price

    def stock_for(self, sku: str | None) -> int:
        if sku:
            return self.require_variant(sku).stock
        return self.stock


@dataclass
class Shop:
    id: str
    owner_id: str
    name: str
    stripe_account_id: str | None = None


# ── ショップ ─────────────────────────────────────


def _shop_from_row(row) -> Shop:
    return Shop(
        id=str(row.id),
        owner_id=str(row.owner_id),
        name=row.name,
        stripe_account_id=row.stripe_account_id,
    )


async def create_shop(
    session: AsyncSession,
    owner_id: str,
    name: str,
    stripe_account_id: str | None = None,
) -> Shop:
    shop = Shop(
        id=str(uuid.uuid4()),
        owner_id=owner_id,
        name=name,
        stripe_account_id=stripe_account_id,
    )
    await session.execute(
        text("""
            INSERT INTO shops (id, owner_id, name, stripe_account_id)
            VALUES (:id, :owner_id, :name, :account)
        """),
        {"id": shop.id, "owner_id": owner_id, "name": name, "account": stripe_account_id},
    )
    return shop


async def get_shop(session: AsyncSession, shop_id: str) -> Shop | None:
    result = await session.execute(
        text("SELECT * FROM shops WHERE id = :id"), {"id": shop_id}
    )
    row = result.fetchone()
    return _shop_from_row(row) if row else None


async def get_shop_by_owner(session: AsyncSession, owner_id: str) -> Shop | None:
    result = await session.execute(
        text("SELECT * FROM shops WHERE owner_id = :owner_id"), {"owner_id": owner_id}
    )
    row = result.fetchone()
    return _shop_from_row(row) if row else None


async def require_shop_by_owner(session: AsyncSession, owner_id: str) -> Shop:
    shop = await get_shop_by_owner(session, owner_id)
    if shop is None:
        raise ShopNotFoundError(f"owner {owner_id}")
    return shop


async def set_shop_account(session: AsyncSession, shop_id: str, account_id: str) -> None:
    await session.execute(
        text("UPDATE shops SET stripe_account_id = :account WHERE id = :id"),
        {"id": shop_id, "account": account_id},
    )


# ── 商品 ─────────────────────────────────────────


async def create_product(
    session: AsyncSession,
    shop_id: str,
    name: str,
    base_price: int | None,
    sale_price: int | None = None,
    stock: int = 0,
    shipping_fee: int = 0,
    free_shipping: bool = False,
    variants: list[Variant] | None = None,
    stripe_product_id: str | None = None,
    stripe_price_id: str | None = None,
    description: str | None = None,
) -> Product:
    now = datetime.now(timezone.utc)
    product = Product(
        id=str(uuid.uuid4()),
        shop_id=shop_id,
        name=name,
        base_price=base_price,
        sale_price=sale_price,
        stock=stock,
        shipping_fee=shipping_fee,
        free_shipping=free_shipping,
        stripe_product_id=stripe_product_id,
        stripe_price_id=stripe_price_id,
        description=description,
        variants=list(variants or []),
    )
    await session.execute(
        text("""
            INSERT INTO products
                (id, shop_id, name, description, base_price, sale_price, stock,
                 shipping_fee, free_shipping, stripe_product_id, stripe_price_id,
                 created_at, updated_at)
            VALUES
                (:id, :shop_id, :name, :description, :base_price, :sale_price, :stock,
                 :shipping_fee, :free_shipping, :stripe_product_id, :stripe_price_id,
                 :now, :now)
        """),
        {
            "id": product.id,
            "shop_id": shop_id,
            "name": name,
            "description": description,
            "base_price": base_price,
            "sale_price": sale_price,
            "stock": stock,
            "shipping_fee": shipping_fee,
            "free_shipping": free_shipping,
            "stripe_product_id": stripe_product_id,
            "stripe_price_id": stripe_price_id,
            "now": now,
        },
    )
    for position, variant in enumerate(product.variants):
        await session.execute(
            text("""
                INSERT INTO product_variants
                    (product_id, sku, price, stock, position, stripe_product_id, stripe_price_id)
                VALUES
                    (:product_id, :sku, :price, :stock, :position, :stripe_product_id, :stripe_price_id)
            """),
            {
                "product_id": product.id,
                "sku": variant.sku,
                "price": variant.price,
                "stock": variant.stock,
                "position": position,
                "stripe_product_id": variant.stripe_product_id,
                "stripe_price_id": variant.stripe_price_id,
            },
        )
    return product


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    """
    商品をバリエーション込みで読み込む。

    注文トランザクション内で呼ばれるので、カートにキャッシュされた価格ではなく
    この時点のカタログが正となる。
    """
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"), {"id": product_id}
    )
    row = result.fetchone()
    if not row:
        return None
    variants_result = await session.execute(
        text("""
            SELECT sku, price, stock, stripe_product_id, stripe_price_id
            FROM product_variants
            WHERE product_id = :id
            ORDER BY position ASC
        """),
        {"id": product_id},
    )
    return Product(
        id=str(row.id),
        shop_id=str(row.shop_id),
        name=row.name,
        description=row.description,
        base_price=row.base_price,
        sale_price=row.sale_price,
        stock=int(row.stock),
        shipping_fee=int(row.shipping_fee),
        free_shipping=bool(row.free_shipping),
        stripe_product_id=row.stripe_product_id,
        stripe_price_id=row.stripe_price_id,
        variants=[
            Variant(
                sku=v.sku,
                price=int(v.price),
                stock=int(v.stock),
                stripe_product_id=v.stripe_product_id,
                stripe_price_id=v.stripe_price_id,
            )
            for v in variants_result.fetchall()
        ],
    )


async def require_product(session: AsyncSession, product_id: str) -> Product:
    product = await get_product(session, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


async def product_ids_for_shop(session: AsyncSession, shop_id: str) -> set[str]:
    result = await session.execute(
        text("SELECT id FROM products WHERE shop_id = :shop_id"), {"shop_id": shop_id}
    )
    return {str(row.id) for row in result.fetchall()}


async def update_pricing(
    session: AsyncSession,
    product_id: str,
    base_price: int | None = None,
    sale_price: int | None = None,
    variant_prices: dict[str, int] | None = None,
) -> None:
    """価格を変更する。既存の注文スナップショットには影響しない。"""
    now = datetime.now(timezone.utc)
    if base_price is not None or sale_price is not None:
        await session.execute(
            text("""
                UPDATE products
                SET base_price = COALESCE(:base_price, base_price),
                    sale_price = COALESCE(:sale_price, sale_price),
                    updated_at = :now
                WHERE id = :id
            """),
            {"id": product_id, "base_price": base_price, "sale_price": sale_price, "now": now},
        )
    for sku, price in (variant_prices or {}).items():
        await session.execute(
            text("""
                UPDATE product_variants SET price = :price
                WHERE product_id = :id AND sku = :sku
            """),
            {"id": product_id, "sku": sku, "price": price},
        )


async def set_payment_ids(
    session: AsyncSession,
    product_id: str,
    sku: str | None,
    stripe_product_id: str,
    stripe_price_id: str,
) -> None:
    """決済ゲートウェイ側の商品 ID / 価格 ID を保存する。"""
    if sku:
        await session.execute(
            text("""
                UPDATE product_variants
                SET stripe_product_id = :spid, stripe_price_id = :sprice
                WHERE product_id = :id AND sku = :sku
            """),
            {"id": product_id, "sku": sku, "spid": stripe_product_id, "sprice": stripe_price_id},
        )
    else:
        await session.execute(
            text("""
                UPDATE products
                SET stripe_product_id = :spid, stripe_price_id = :sprice, updated_at = :now
                WHERE id = :id
            """),
            {
                "id": product_id,
                "spid": stripe_product_id,
                "sprice": stripe_price_id,
                "now": datetime.now(timezone.utc),
            },
        )


# ── 在庫台帳 ─────────────────────────────────────


async def decrement_stock(
    session: AsyncSession,
    product_id: str,
    sku: str | None,
    quantity: int,
) -> bool:
    """
    在庫を quantity だけ減らす。

    在庫が足りなければ何も更新せず False を返す。
    読み込み後に別トランザクションが在庫を減らしていた場合もここで弾かれる。
    """
    if sku:
        result = await session.execute(
            text("""
                UPDATE product_variants
                SET stock = stock - :qty
                WHERE product_id = :id AND sku = :sku AND stock >= :qty
            """),
            {"id": product_id, "sku": sku, "qty": quantity},
        )
    else:
        result = await session.execute(
            text("""
                UPDATE products
                SET stock = stock - :qty, updated_at = :now
                WHERE id = :id AND stock >= :qty
            """),
            {"id": product_id, "qty": quantity, "now": datetime.now(timezone.utc)},
        )
    return result.rowcount == 1
