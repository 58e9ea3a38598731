"""Pytest fixtures for marketplace tests."""

import asyncio
import hashlib
import hmac
import json
import time
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from marketplace import catalog, identity, schema
from marketplace.catalog import Variant
from marketplace.gateway import CheckoutSession, PaymentGateway

PLATFORM_SECRET = "whsec_test_platform"
CONNECTED_SECRET = "whsec_test_connected"


class Database:
    """File-backed SQLite database driven from synchronous tests."""

    def __init__(self, url: str):
        self.url = url

    @asynccontextmanager
    async def factory(self):
        engine = create_async_engine(self.url, poolclass=NullPool)
        try:
            yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    def run(self, fn, *args, **kwargs):
        """Run ``fn(session, *args, **kwargs)`` on a fresh event loop."""

        async def _go():
            async with self.factory() as factory:
                async with factory() as session:
                    return await fn(session, *args, **kwargs)

        return asyncio.run(_go())

    def create_schema(self):
        async def _go():
            engine = create_async_engine(self.url, poolclass=NullPool)
            try:
                await schema.create_schema(engine)
            finally:
                await engine.dispose()

        asyncio.run(_go())


class FakeGateway(PaymentGateway):
    """Records gateway calls instead of talking to Stripe.

    Webhook verification is inherited unchanged, so signatures are checked
    by the real stripe library.
    """

    def __init__(self, fail_with: Exception | None = None):
        super().__init__("sk_test_fake", PLATFORM_SECRET, CONNECTED_SECRET)
        self.fail_with = fail_with
        self.checkout_calls: list[dict] = []
        self.accounts: list[dict] = []
        self.products: list[dict] = []

    async def create_checkout_session(
        self,
        line_items,
        destination,
        application_fee,
        metadata,
        success_url,
        cancel_url,
    ) -> CheckoutSession:
        if self.fail_with is not None:
            raise self.fail_with
        self.checkout_calls.append(
            {
                "line_items": line_items,
                "destination": destination,
                "application_fee": application_fee,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        n = len(self.checkout_calls)
        return CheckoutSession(id=f"cs_test_{n}", url=f"https://checkout.test/cs_test_{n}")

    async def create_account(self, email=None, country="US") -> str:
        self.accounts.append({"email": email, "country": country})
        return f"acct_fake_{len(self.accounts)}"

    async def create_account_link(self, account_id, refresh_url, return_url) -> str:
        return f"https://connect.test/onboard/{account_id}"

    async def retrieve_account(self, account_id) -> dict:
        return {
            "id": account_id,
            "charges_enabled": True,
            "payouts_enabled": False,
            "details_submitted": True,
            "currently_due": ["external_account"],
        }

    async def create_product(
        self, name, unit_amount, currency, connected_account, description=None
    ) -> tuple[str, str]:
        self.products.append(
            {
                "name": name,
                "unit_amount": unit_amount,
                "currency": currency,
                "connected_account": connected_account,
            }
        )
        n = len(self.products)
        return f"prod_fake_{n}", f"price_fake_{n}"


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis is down")
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self) -> None:
        pass


def sign(payload: str, secret: str = PLATFORM_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def gateway_event(event_type: str, obj: dict, event_id: str = "evt_test_1", account=None) -> str:
    body = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if account:
        body["account"] = account
    return json.dumps(body)


def payment_succeeded(order_id: str | None, event_id: str = "evt_test_1") -> str:
    metadata = {"orderId": order_id} if order_id else {}
    return gateway_event(
        "payment_intent.succeeded", {"id": "pi_test_1", "metadata": metadata}, event_id
    )


def as_user(user_id: str, role: str) -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


async def _seed(session):
    await identity.create_user(session, "Alice Buyer", "alice@example.com", country="US", user_id="buyer-1")
    await identity.create_user(session, "Bob Buyer", "bob@example.com", country="CA", user_id="buyer-2")
    address_id = await identity.add_address(
        session, "buyer-1", "Alice Buyer", "1 Main St", "Springfield",
        phone="555-0100", postal_code="12345",
    )

    shop_a = await catalog.create_shop(session, "seller-1", "Mugs & Tees", stripe_account_id="acct_shop_a")
    shop_b = await catalog.create_shop(session, "seller-2", "Posters", stripe_account_id="acct_shop_b")
    shop_c = await catalog.create_shop(session, "seller-3", "Lamps")

    mug = await catalog.create_product(
        session, shop_a.id, "Mug", base_price=1500, stock=10, shipping_fee=500,
        stripe_price_id="price_mug",
    )
    tshirt = await catalog.create_product(
        session, shop_a.id, "T-shirt", base_price=None, free_shipping=True,
        variants=[
            Variant(sku="S", price=2000, stock=5, stripe_price_id="price_ts_s"),
            Variant(sku="M", price=2200, stock=1, stripe_price_id="price_ts_m"),
        ],
    )
    sticker = await catalog.create_product(
        session, shop_a.id, "Sticker", base_price=300, sale_price=250, stock=50,
    )
    poster = await catalog.create_product(
        session, shop_b.id, "Poster", base_price=1000, stock=3, stripe_price_id="price_poster",
    )
    lamp = await catalog.create_product(
        session, shop_c.id, "Lamp", base_price=4000, stock=2, stripe_price_id="price_lamp",
    )
    await session.commit()
    return SimpleNamespace(
        address_id=address_id,
        shop_a=shop_a.id,
        shop_b=shop_b.id,
        shop_c=shop_c.id,
        mug=mug.id,
        tshirt=tshirt.id,
        sticker=sticker.id,
        poster=poster.id,
        lamp=lamp.id,
    )


@pytest.fixture
def db(tmp_path):
    """Empty database with the schema applied."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")
    database.create_schema()
    return database


@pytest.fixture
def market(db):
    """Buyers, three shops and a small catalog."""
    return db.run(_seed)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def api_client(db, market, gateway, fake_redis):
    from marketplace.main import create_app

    app = create_app(
        database_url=db.url, gateway=gateway, redis=fake_redis, start_dispatcher=False
    )
    with TestClient(app) as client:
        yield client
