"""
Marketplace Service — チェックアウトセッション構築

PENDING の注文から決済ゲートウェイのホスト型チェックアウトを作る。

    1. 明細ごとに決済側の価格 ID を解決する (バリエーション → 商品)
    2. 明細ごとに送金先 (ショップの接続アカウント) を解決する
    3. 送金先が2つ以上なら失敗 (Destination charge は送金先を1つしか持てない)
    4. プラットフォーム手数料 = round(小計 × 手数料率) を合計額に対して1回だけ計算
    5. metadata に orderId を埋めてセッションを作成

ローカルには何も保存しない。注文は Webhook で確認されるまで PENDING のまま。
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, queries
from .aggregate import OrderStatus
from .errors import (
    InvalidOrderStateError,
    MissingPaymentMappingError,
    MultiSellerCheckoutUnsupportedError,
    OrderNotFoundError,
)
from .gateway import CheckoutSession, PaymentGateway

logger = logging.getLogger(__name__)


def compute_application_fee(amount: int, commission_rate: Decimal) -> int:
    """
    手数料を計算する (最小通貨単位、四捨五入)。

    明細ごとに丸めると誤差が積み上がるので、合計額に対して1回だけ掛ける。
    """
    fee = (Decimal(amount) * commission_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee)


def compute_seller_earning(line_total: int, commission_rate: Decimal) -> Decimal:
    """出品者の取り分 = 明細金額 × (1 − 手数料率)"""
    return Decimal(line_total) * (Decimal(1) - commission_rate)


async def initiate_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    *,
    commission_rate: Decimal,
    root_url: str,
    currency: str,
) -> CheckoutSession:
    order = await queries.load_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    if order.status != OrderStatus.PENDING:
        raise InvalidOrderStateError(order_id, order.status.value)

    line_items: list[dict] = []
    destinations: list[str] = []
    for item in order.items:
        product = await catalog.require_product(session, item.product_id)

        if item.variant_sku:
            price_id = product.require_variant(item.variant_sku).stripe_price_id
        else:
            price_id = product.stripe_price_id
        if not price_id:
            target = f"variant {item.variant_sku} of product" if item.variant_sku else "product"
            raise MissingPaymentMappingError(
                f"Price ID not found for {target} {product.id}", product_id=product.id
            )

        shop = await catalog.get_shop(session, product.shop_id)
        if shop is None or not shop.stripe_account_id:
            raise MissingPaymentMappingError(
                f"Product {product.id} is not mapped to a connected account",
                product_id=product.id,
            )

        line_items.append({"price": price_id, "quantity": item.quantity})
        if shop.stripe_account_id not in destinations:
            destinations.append(shop.stripe_account_id)

    if len(destinations) > 1:
        raise MultiSellerCheckoutUnsupportedError(order_id, destinations)

    # 送料は価格 ID を持たないのでインライン価格で1行追加する (手数料の対象外)
    if order.shipping_fee > 0:
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": order.shipping_fee,
                    "product_data": {"name": "Shipping"},
                },
                "quantity": 1,
            }
        )

    application_fee = compute_application_fee(order.subtotal, commission_rate)
    base = root_url.rstrip("/")
    checkout = await gateway.create_checkout_session(
        line_items=line_items,
        destination=destinations[0],
        application_fee=application_fee,
        metadata={"orderId": order_id},
        success_url=f"{base}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/checkout/cancel?order_id={order_id}",
    )
    logger.info(
        "Checkout session %s created for order %s: destination=%s fee=%d",
        checkout.id, order_id, destinations[0], application_fee,
    )
    return checkout
