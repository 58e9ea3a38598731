"""
Marketplace Service — 接続アカウント (Stripe Connect) のオンボーディング

出品者のショップに接続アカウントを作り、商品を決済ゲートウェイに登録する。
チェックアウトは登録済みの価格 ID と接続アカウントがないと作れない。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import AuthorizationError, MissingPaymentMappingError
from .gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def create_account(
    session: AsyncSession,
    gateway: PaymentGateway,
    owner_id: str,
    email: str | None = None,
    country: str = "US",
) -> dict:
    """ショップに接続アカウントを作る。既にあればそれを返す。"""
    shop = await catalog.require_shop_by_owner(session, owner_id)
    if shop.stripe_account_id:
        return {"id": shop.stripe_account_id, "shop_id": shop.id, "created": False}

    account_id = await gateway.create_account(email=email, country=country)
    await catalog.set_shop_account(session, shop.id, account_id)
    await session.commit()
    logger.info("Connected account %s created for shop %s", account_id, shop.id)
    return {"id": account_id, "shop_id": shop.id, "created": True}


async def require_own_account(session: AsyncSession, owner_id: str, account_id: str) -> None:
    shop = await catalog.require_shop_by_owner(session, owner_id)
    if shop.stripe_account_id != account_id:
        raise AuthorizationError("Account does not belong to your shop")


async def create_account_link(gateway: PaymentGateway, account_id: str, root_url: str) -> str:
    """オンボーディング用の URL を発行する。"""
    base = root_url.rstrip("/")
    return await gateway.create_account_link(
        account_id,
        refresh_url=f"{base}/connect/accounts/{account_id}/onboard/refresh",
        return_url=f"{base}/connect/accounts/{account_id}/onboard/return",
    )


async def register_product(
    session: AsyncSession,
    gateway: PaymentGateway,
    owner_id: str,
    product_id: str,
    currency: str,
) -> dict:
    """
    商品を決済ゲートウェイに登録し、商品 ID / 価格 ID を保存する。

    バリエーションがあればバリエーションごとに1つずつ登録する。
    """
    shop = await catalog.require_shop_by_owner(session, owner_id)
    product = await catalog.require_product(session, product_id)
    if product.shop_id != shop.id:
        raise AuthorizationError("Product does not belong to your shop")
    if not shop.stripe_account_id:
        raise MissingPaymentMappingError(
            f"Shop {shop.id} has no connected account; create one first",
            product_id=product_id,
        )

    registered = []
    if product.variants:
        for variant in product.variants:
            spid, sprice = await gateway.create_product(
                name=f"{product.name} ({variant.sku})",
                unit_amount=variant.price,
                currency=currency,
                connected_account=shop.stripe_account_id,
                description=product.description,
            )
            await catalog.set_payment_ids(session, product.id, variant.sku, spid, sprice)
            registered.append({"sku": variant.sku, "stripe_product_id": spid, "stripe_price_id": sprice})
    else:
        spid, sprice = await gateway.create_product(
            name=product.name,
            unit_amount=product.unit_price,
            currency=currency,
            connected_account=shop.stripe_account_id,
            description=product.description,
        )
        await catalog.set_payment_ids(session, product.id, None, spid, sprice)
        registered.append({"sku": None, "stripe_product_id": spid, "stripe_price_id": sprice})

    await session.commit()
    logger.info("Product %s registered with payment gateway (%d prices)", product_id, len(registered))
    return {"product_id": product_id, "prices": registered}
