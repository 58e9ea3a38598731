"""
Marketplace Service — スキーマ定義

本番は PostgreSQL、テストは SQLite で動かすため、
両方で通る素朴な DDL だけを使う。

金額はすべて通貨の最小単位 (セント) の整数で保存する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR(36) PRIMARY KEY,
        full_name   VARCHAR(255) NOT NULL,
        email       VARCHAR(255) NOT NULL UNIQUE,
        country     VARCHAR(64),
        created_at  TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS addresses (
        id          VARCHAR(36) PRIMARY KEY,
        user_id     VARCHAR(36) NOT NULL REFERENCES users(id),
        full_name   VARCHAR(255) NOT NULL,
        phone       VARCHAR(64),
        street      VARCHAR(255) NOT NULL,
        city        VARCHAR(128) NOT NULL,
        postal_code VARCHAR(32)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shops (
        id                 VARCHAR(36) PRIMARY KEY,
        owner_id           VARCHAR(36) NOT NULL UNIQUE,
        name               VARCHAR(255) NOT NULL,
        stripe_account_id  VARCHAR(255)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id                 VARCHAR(36) PRIMARY KEY,
        shop_id            VARCHAR(36) NOT NULL REFERENCES shops(id),
        name               VARCHAR(255) NOT NULL,
        description        VARCHAR(500),
        base_price         BIGINT,
        sale_price         BIGINT,
        stock              INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        shipping_fee       BIGINT NOT NULL DEFAULT 0,
        free_shipping      BOOLEAN NOT NULL DEFAULT FALSE,
        stripe_product_id  VARCHAR(255),
        stripe_price_id    VARCHAR(255),
        created_at         TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at         TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        product_id         VARCHAR(36) NOT NULL REFERENCES products(id),
        sku                VARCHAR(128) NOT NULL,
        price              BIGINT NOT NULL,
        stock              INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        position           INTEGER NOT NULL DEFAULT 0,
        stripe_product_id  VARCHAR(255),
        stripe_price_id    VARCHAR(255),
        PRIMARY KEY (product_id, sku)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS carts (
        id          VARCHAR(36) PRIMARY KEY,
        user_id     VARCHAR(36) NOT NULL UNIQUE,
        updated_at  TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id           VARCHAR(36) PRIMARY KEY,
        cart_id      VARCHAR(36) NOT NULL REFERENCES carts(id),
        product_id   VARCHAR(36) NOT NULL,
        variant_sku  VARCHAR(128),
        quantity     INTEGER NOT NULL CHECK (quantity > 0),
        price        BIGINT NOT NULL,
        position     INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id            VARCHAR(36) PRIMARY KEY,
        buyer_id      VARCHAR(36) NOT NULL,
        subtotal      BIGINT NOT NULL,
        shipping_fee  BIGINT NOT NULL DEFAULT 0,
        total         BIGINT NOT NULL,
        status        VARCHAR(32) NOT NULL,
        full_name     VARCHAR(255),
        phone         VARCHAR(64),
        address_line  VARCHAR(255),
        city          VARCHAR(128),
        country       VARCHAR(64),
        postal_code   VARCHAR(32),
        paid_at       TIMESTAMP WITH TIME ZONE,
        delivered_at  TIMESTAMP WITH TIME ZONE,
        version       INTEGER NOT NULL,
        created_at    TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at    TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_id     VARCHAR(36) NOT NULL REFERENCES orders(id),
        position     INTEGER NOT NULL,
        product_id   VARCHAR(36) NOT NULL,
        variant_sku  VARCHAR(128),
        title        VARCHAR(255) NOT NULL,
        price        BIGINT NOT NULL,
        quantity     INTEGER NOT NULL CHECK (quantity > 0),
        PRIMARY KEY (order_id, position)
    )
    """,
    # Outbox: 状態変更と同じトランザクションでイベントを追記する
    """
    CREATE TABLE IF NOT EXISTS order_events (
        id             VARCHAR(36) PRIMARY KEY,
        aggregate_id   VARCHAR(36) NOT NULL,
        event_type     VARCHAR(64) NOT NULL,
        event_data     TEXT NOT NULL,
        version        INTEGER NOT NULL,
        attempts       INTEGER NOT NULL DEFAULT 0,
        created_at     TIMESTAMP WITH TIME ZONE NOT NULL,
        dispatched_at  TIMESTAMP WITH TIME ZONE,
        UNIQUE (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id              VARCHAR(36) PRIMARY KEY,
        recipient_id    VARCHAR(36) NOT NULL,
        recipient_role  VARCHAR(16) NOT NULL,
        title           VARCHAR(255) NOT NULL,
        message         VARCHAR(1000) NOT NULL,
        data            TEXT NOT NULL,
        is_read         BOOLEAN NOT NULL DEFAULT FALSE,
        created_at      TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS ix_orders_buyer ON orders (buyer_id)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_product ON order_items (product_id)",
    "CREATE INDEX IF NOT EXISTS ix_products_shop ON products (shop_id)",
    "CREATE INDEX IF NOT EXISTS ix_order_events_pending ON order_events (dispatched_at, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_notifications_recipient ON notifications (recipient_id)",
]


async def create_schema(engine: AsyncEngine) -> None:
    """全テーブルを作成する (存在すれば何もしない)。"""
    async with engine.begin() as conn:
        for ddl in TABLES + INDEXES:
            await conn.execute(text(ddl))
