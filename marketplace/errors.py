"""
Marketplace Service — 例外定義

ドメイン例外はすべて MarketplaceError を継承する。
status_code は API 層 (main.py) で HTTP レスポンスに変換される。
"""


class MarketplaceError(Exception):
    """すべてのドメイン例外の基底クラス"""

    status_code = 500


# ── 分類 (Taxonomy) ─────────────────────────────


class ValidationError(MarketplaceError):
    """入力が不正"""

    status_code = 400


class NotFoundError(MarketplaceError):
    """対象エンティティが存在しない"""

    status_code = 404


class ConflictError(MarketplaceError):
    """現在の状態では要求を実行できない (在庫不足・状態不整合)"""

    status_code = 409


class ExternalServiceError(MarketplaceError):
    """決済ゲートウェイなど外部サービスの呼び出しに失敗した"""

    status_code = 502


class AuthorizationError(MarketplaceError):
    """アクターに権限がない"""

    status_code = 403


# ── Validation ──────────────────────────────────


class EmptyCartError(ValidationError):
    def __init__(self, buyer_id: str):
        self.buyer_id = buyer_id
        super().__init__("Cart is empty")


class AddressNotFoundError(ValidationError):
    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__(f"Address {address_id} not found")


class InvalidStatusError(ValidationError):
    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Invalid order status: {status}")


class MissingPaymentMappingError(ValidationError):
    """出品者が決済ゲートウェイへの商品登録を完了していない"""

    def __init__(self, message: str, product_id: str | None = None):
        self.product_id = product_id
        super().__init__(message)


class InvalidSignatureError(ValidationError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        msg = "Webhook signature verification failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


# ── Not found ───────────────────────────────────


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class VariantNotFoundError(NotFoundError):
    def __init__(self, product_id: str, sku: str, available: list[str] | None = None):
        self.product_id = product_id
        self.sku = sku
        self.available = available or []
        msg = f"Variant {sku} not found for product {product_id}"
        if available:
            msg = f"{msg}. Available SKUs: {', '.join(available)}"
        super().__init__(msg)


class ShopNotFoundError(NotFoundError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Shop not found: {key}")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class CartNotFoundError(NotFoundError):
    def __init__(self, buyer_id: str):
        self.buyer_id = buyer_id
        super().__init__("Cart not found")


class CartItemNotFoundError(NotFoundError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Cart item {item_id} not found")


class NotificationNotFoundError(NotFoundError):
    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification {notification_id} not found")


# ── Conflict ────────────────────────────────────


class InsufficientStockError(ConflictError):
    """在庫不足。どの明細が原因かをクライアントに伝える。"""

    def __init__(
        self,
        product_id: str,
        sku: str | None,
        requested: int,
        available: int,
    ):
        self.product_id = product_id
        self.sku = sku
        self.requested = requested
        self.available = available
        target = f"product {product_id}"
        if sku:
            target = f"variant {sku} of product {product_id}"
        super().__init__(
            f"Insufficient stock for {target}: requested={requested}, available={available}"
        )


class InvalidOrderStateError(ConflictError):
    def __init__(self, order_id: str, current: str, requested: str | None = None):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        if requested:
            msg = f"Order {order_id} cannot move from {current} to {requested}"
        else:
            msg = f"Order {order_id} is {current}; expected PENDING"
        super().__init__(msg)


class ConcurrentUpdateError(ConflictError):
    """データベースがデッドロック・直列化失敗でトランザクションを中断した"""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} conflicted with a concurrent update; retry the request")


class MultiSellerCheckoutUnsupportedError(ConflictError):
    """1つのチェックアウトセッションは1つの接続アカウントにしか送金できない"""

    def __init__(self, order_id: str, accounts: list[str]):
        self.order_id = order_id
        self.accounts = accounts
        super().__init__(
            f"Order {order_id} spans {len(accounts)} seller accounts; "
            "hosted checkout supports a single destination. Split the order per seller."
        )
