"""Tests for connected-account onboarding."""

import asyncio

import pytest

from marketplace import catalog, connect
from marketplace.errors import (
    AuthorizationError,
    MissingPaymentMappingError,
    ShopNotFoundError,
)


class TestCreateAccount:
    def test_creates_and_stores_account(self, db, market, gateway):
        result = db.run(connect.create_account, gateway, "seller-3", "lamps@example.com", "CA")

        assert result == {"id": "acct_fake_1", "shop_id": market.shop_c, "created": True}
        assert gateway.accounts == [{"email": "lamps@example.com", "country": "CA"}]
        shop = db.run(catalog.get_shop, market.shop_c)
        assert shop.stripe_account_id == "acct_fake_1"

    def test_existing_account_is_returned(self, db, market, gateway):
        result = db.run(connect.create_account, gateway, "seller-1")

        assert result == {"id": "acct_shop_a", "shop_id": market.shop_a, "created": False}
        assert gateway.accounts == []

    def test_owner_without_shop(self, db, market, gateway):
        with pytest.raises(ShopNotFoundError):
            db.run(connect.create_account, gateway, "buyer-1")


class TestAccountOwnership:
    def test_own_account(self, db, market):
        db.run(connect.require_own_account, "seller-1", "acct_shop_a")

    def test_other_shops_account(self, db, market):
        with pytest.raises(AuthorizationError):
            db.run(connect.require_own_account, "seller-1", "acct_shop_b")

    def test_onboarding_link(self, gateway):
        url = asyncio.run(connect.create_account_link(gateway, "acct_shop_a", "http://shop.test"))
        assert url == "https://connect.test/onboard/acct_shop_a"


class TestRegisterProduct:
    def test_one_price_per_variant(self, db, market, gateway):
        result = db.run(connect.register_product, gateway, "seller-1", market.tshirt, "usd")

        assert [p["sku"] for p in result["prices"]] == ["S", "M"]
        assert [p["unit_amount"] for p in gateway.products] == [2000, 2200]
        assert {p["connected_account"] for p in gateway.products} == {"acct_shop_a"}

        product = db.run(catalog.get_product, market.tshirt)
        assert [v.stripe_price_id for v in product.variants] == ["price_fake_1", "price_fake_2"]

    def test_simple_product_uses_effective_price(self, db, market, gateway):
        db.run(connect.register_product, gateway, "seller-1", market.sticker, "usd")

        assert gateway.products[0]["unit_amount"] == 250
        product = db.run(catalog.get_product, market.sticker)
        assert product.stripe_product_id == "prod_fake_1"
        assert product.stripe_price_id == "price_fake_1"

    def test_product_of_other_shop(self, db, market, gateway):
        with pytest.raises(AuthorizationError):
            db.run(connect.register_product, gateway, "seller-1", market.poster, "usd")
        assert gateway.products == []

    def test_shop_without_account(self, db, market, gateway):
        with pytest.raises(MissingPaymentMappingError):
            db.run(connect.register_product, gateway, "seller-3", market.lamp, "usd")
