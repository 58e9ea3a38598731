"""
Marketplace Service — FastAPI エントリーポイント

注文ライフサイクル:
  1. POST /orders
     カートから注文 (PENDING) を作り、続けて Stripe Checkout を作成して URL を返す。
     チェックアウト作成に失敗しても注文は残す (checkout_error を返し、
     クライアントは POST /orders/{id}/checkout で再試行する)。
  2. 購入者が Stripe 上で支払う (非同期)
  3. POST /webhooks/stripe
     payment_intent.succeeded を受けて ORDER_CONFIRMED に。重複配信は無視。
  4. PATCH /orders/{id}/status
     出品者・管理者が SHIPPED → DELIVERED (または CANCELLED) に進める。

認証は API ゲートウェイで済んでいる前提で、X-User-Id / X-User-Role ヘッダを信頼する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import (
    cart,
    catalog,
    checkout,
    commands,
    config,
    connect,
    event_store,
    notifications,
    queries,
    schema,
    webhooks,
)
from .commands import Actor
from .dispatcher import OutboxDispatcher, run_dispatcher
from .errors import (
    AuthorizationError,
    ExternalServiceError,
    InvalidSignatureError,
    MarketplaceError,
    OrderNotFoundError,
)
from .gateway import PaymentGateway
from .notifications import NotificationSender

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ROLES = ("BUYER", "SELLER", "ADMIN")

router = APIRouter()


# ── Request Models ───────────────────────────────


class AddCartItemRequest(BaseModel):
    product_id: str
    variant_sku: str | None = None
    quantity: int = 1


class UpdateCartItemRequest(BaseModel):
    quantity: int


class PlaceOrderRequest(BaseModel):
    address_id: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str


class CreateAccountRequest(BaseModel):
    email: str | None = None
    country: str = "US"


# ── Dependencies ─────────────────────────────────


async def get_session(request: Request):
    async with request.app.state.async_session() as session:
        yield session


def current_actor(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise AuthorizationError("Missing actor identity")
    role = x_user_role.upper()
    if role not in ROLES:
        raise AuthorizationError(f"Unknown role: {x_user_role}")
    return Actor(user_id=x_user_id, role=role)


def require_role(*roles: str):
    def dependency(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role not in roles:
            raise AuthorizationError(f"Requires role: {', '.join(roles)}")
        return actor

    return dependency


async def drain_outbox(dispatcher: OutboxDispatcher) -> None:
    """コミット後の通知配信。失敗してもリクエストには影響させない。"""
    try:
        await dispatcher.drain_once()
    except Exception:
        logger.exception("Post-commit outbox drain failed")


async def _check_order_access(session: AsyncSession, order_id: str, actor: Actor) -> dict:
    order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    if actor.role == "BUYER" and order["buyer_id"] != actor.user_id:
        raise AuthorizationError("Not authorized to view this order")
    if actor.role == "SELLER":
        shop = await catalog.require_shop_by_owner(session, actor.user_id)
        shop_products = await catalog.product_ids_for_shop(session, shop.id)
        if not any(item["product_id"] in shop_products for item in order["items"]):
            raise AuthorizationError("Not authorized to view this order")
    return order


async def _start_checkout(request: Request, session: AsyncSession, order_id: str):
    return await checkout.initiate_checkout(
        session,
        request.app.state.gateway,
        order_id,
        commission_rate=config.PLATFORM_COMMISSION,
        root_url=config.ROOT_URL,
        currency=config.CURRENCY,
    )


# ── Cart ─────────────────────────────────────────


@router.get("/cart")
async def get_cart(
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    return await cart.get_cart(session, actor.user_id)


@router.post("/cart/items")
async def add_cart_item(
    req: AddCartItemRequest,
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    return await cart.add_item(
        session, actor.user_id, req.product_id, req.variant_sku, req.quantity
    )


@router.patch("/cart/items/{item_id}")
async def update_cart_item(
    item_id: str,
    req: UpdateCartItemRequest,
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    return await cart.update_item(session, actor.user_id, item_id, req.quantity)


@router.delete("/cart/items/{item_id}")
async def delete_cart_item(
    item_id: str,
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    return await cart.remove_item(session, actor.user_id, item_id)


# ── Orders (Command) ─────────────────────────────


@router.post("/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    """
    注文作成 → チェックアウト開始

    チェックアウト作成に失敗しても注文はロールバックしない。
    失敗は checkout_error として返す。
    """
    order = await commands.place_order(session, actor.user_id, req.address_id)
    background_tasks.add_task(drain_outbox, request.app.state.dispatcher)

    try:
        session_info = await _start_checkout(request, session, order.id)
    except MarketplaceError as e:
        logger.warning("Checkout initiation failed for order %s: %s", order.id, e)
        return {
            "order": order.to_dict(),
            "checkout": None,
            "checkout_error": {
                "error_type": type(e).__name__,
                "detail": str(e),
                "retryable": isinstance(e, ExternalServiceError),
            },
        }

    return {
        "order": order.to_dict(),
        "checkout": {"session_id": session_info.id, "url": session_info.url},
        "checkout_error": None,
    }


@router.post("/orders/{order_id}/checkout")
async def retry_checkout(
    order_id: str,
    request: Request,
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    """チェックアウトの再試行 (注文作成時に失敗した場合)"""
    await _check_order_access(session, order_id, actor)
    session_info = await _start_checkout(request, session, order_id)
    return {"session_id": session_info.id, "url": session_info.url}


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("SELLER", "ADMIN")),
    session: AsyncSession = Depends(get_session),
):
    agg = await commands.update_order_status(session, order_id, req.status, actor)
    background_tasks.add_task(drain_outbox, request.app.state.dispatcher)
    return agg.to_dict()


@router.delete("/orders/{order_id}")
async def delete_order(
    order_id: str,
    actor: Actor = Depends(require_role("ADMIN")),
    session: AsyncSession = Depends(get_session),
):
    return await commands.delete_order(session, order_id)


# ── Orders (Query) ───────────────────────────────


@router.get("/orders")
async def list_my_orders(
    actor: Actor = Depends(require_role("BUYER")),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_orders_for_buyer(session, actor.user_id)


@router.get("/orders/all")
async def list_all_orders(
    actor: Actor = Depends(require_role("ADMIN")),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_all_orders(session)


@router.get("/orders/seller")
async def list_seller_orders(
    status: str | None = None,
    actor: Actor = Depends(require_role("SELLER")),
    session: AsyncSession = Depends(get_session),
):
    shop = await catalog.require_shop_by_owner(session, actor.user_id)
    return await queries.list_orders_for_shop(session, shop.id, status)


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await _check_order_access(session, order_id, actor)


@router.get("/orders/{order_id}/events")
async def get_order_events(
    order_id: str,
    actor: Actor = Depends(require_role("ADMIN")),
    session: AsyncSession = Depends(get_session),
):
    """Outbox に残っている注文のイベント履歴 (監査・デバッグ用)"""
    return await event_store.load_events(session, order_id)


# ── Webhooks (生のボディが必要) ──────────────────


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(None),
):
    """
    プラットフォーム Webhook

    署名エラー → 400 (業務ロジックは一切実行しない)
    ハンドラ例外 → 500 (Stripe に再送させる)
    それ以外 → 200 (何もしなかった場合も含む)
    """
    payload = await request.body()
    try:
        event = request.app.state.gateway.construct_event(payload, stripe_signature, "platform")
    except InvalidSignatureError as e:
        logger.warning("Stripe webhook signature validation failed: %s", e)
        return JSONResponse(status_code=400, content={"detail": f"Webhook Error: {e}"})

    try:
        async with request.app.state.async_session() as session:
            result = await webhooks.handle_platform_event(
                session, event, config.PLATFORM_COMMISSION
            )
    except Exception:
        logger.exception("Webhook handler error for %s", event.type)
        return JSONResponse(status_code=500, content={"detail": "Handler error"})

    if result.applied:
        background_tasks.add_task(drain_outbox, request.app.state.dispatcher)
    return {"received": True, "applied": result.applied}


@router.post("/webhooks/stripe/connect")
async def stripe_connect_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
):
    """接続アカウント Webhook (ログのみ)"""
    payload = await request.body()
    try:
        event = request.app.state.gateway.construct_event(payload, stripe_signature, "connected")
    except InvalidSignatureError as e:
        logger.warning("Stripe connect webhook signature validation failed: %s", e)
        return JSONResponse(status_code=400, content={"detail": f"Webhook Error: {e}"})

    webhooks.handle_connected_event(event)
    return {"received": True}


# ── Connect (出品者オンボーディング) ──────────────


@router.post("/connect/accounts")
async def create_connected_account(
    req: CreateAccountRequest,
    request: Request,
    actor: Actor = Depends(require_role("SELLER")),
    session: AsyncSession = Depends(get_session),
):
    return await connect.create_account(
        session, request.app.state.gateway, actor.user_id, req.email, req.country
    )


@router.post("/connect/accounts/{account_id}/onboard")
async def create_account_link(
    account_id: str,
    request: Request,
    actor: Actor = Depends(require_role("SELLER")),
    session: AsyncSession = Depends(get_session),
):
    await connect.require_own_account(session, actor.user_id, account_id)
    url = await connect.create_account_link(request.app.state.gateway, account_id, config.ROOT_URL)
    return {"url": url}


@router.get("/connect/accounts/{account_id}/status")
async def get_account_status(
    account_id: str,
    request: Request,
    actor: Actor = Depends(require_role("SELLER", "ADMIN")),
    session: AsyncSession = Depends(get_session),
):
    if actor.role == "SELLER":
        await connect.require_own_account(session, actor.user_id, account_id)
    return {"account": await request.app.state.gateway.retrieve_account(account_id)}


@router.post("/connect/products/{product_id}")
async def register_product(
    product_id: str,
    request: Request,
    actor: Actor = Depends(require_role("SELLER")),
    session: AsyncSession = Depends(get_session),
):
    return await connect.register_product(
        session, request.app.state.gateway, actor.user_id, product_id, config.CURRENCY
    )


# ── Notifications ────────────────────────────────


@router.get("/notifications")
async def list_notifications(
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await notifications.list_notifications(session, actor.user_id)


@router.patch("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(current_actor),
    session: AsyncSession = Depends(get_session),
):
    await notifications.mark_read(session, actor.user_id, notification_id)
    return {"id": notification_id, "is_read": True}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "marketplace-service"}


# ── App ──────────────────────────────────────────


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """MarketplaceError のサブクラスを HTTP レスポンスに変換する。"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


def create_app(
    database_url: str | None = None,
    gateway: PaymentGateway | None = None,
    redis: aioredis.Redis | None = None,
    start_dispatcher: bool = True,
) -> FastAPI:
    engine = create_async_engine(database_url or config.DATABASE_URL, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_pool = redis if redis is not None else aioredis.from_url(
            config.REDIS_URL, decode_responses=True
        )
        if config.AUTO_CREATE_SCHEMA:
            await schema.create_schema(engine)

        app.state.dispatcher = OutboxDispatcher(
            async_session, NotificationSender(), redis_pool, config.OUTBOX_MAX_ATTEMPTS
        )
        shutdown_event = asyncio.Event()
        dispatcher_task = None
        if start_dispatcher:
            dispatcher_task = asyncio.create_task(
                run_dispatcher(app.state.dispatcher, shutdown_event, config.OUTBOX_POLL_INTERVAL)
            )
        yield
        shutdown_event.set()
        if dispatcher_task is not None:
            dispatcher_task.cancel()
            try:
                await dispatcher_task
            except asyncio.CancelledError:
                pass
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Marketplace Service", lifespan=lifespan)
    app.state.engine = engine
    app.state.async_session = async_session
    app.state.gateway = gateway or PaymentGateway(
        config.STRIPE_SECRET_KEY,
        config.STRIPE_WEBHOOK_SECRET_PLATFORM,
        config.STRIPE_WEBHOOK_SECRET_CONNECTED,
    )
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.include_router(router)
    return app


app = create_app()
