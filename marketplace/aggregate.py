"""
Marketplace Service — 注文集約 (Order Aggregate)

注文は明細スナップショットとステータスを持つ集約ルート。
明細・金額は作成時に一度だけ計算され、以後カタログが変わっても再計算しない。

状態遷移:
    PENDING         → ORDER_CONFIRMED  (決済 Webhook のみ)
    PENDING         → CANCELLED
    ORDER_CONFIRMED → SHIPPED
    ORDER_CONFIRMED → CANCELLED
    SHIPPED         → DELIVERED
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# 出品者・管理者によるステータス更新で許可される遷移。
# PENDING → ORDER_CONFIRMED は含まない (決済確認でのみ起きる)。
MANUAL_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CANCELLED},
    OrderStatus.ORDER_CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class OrderItem:
    """注文明細のスナップショット (不変)"""

    product_id: str
    variant_sku: str | None
    title: str
    price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


@dataclass(frozen=True)
class ShippingAddress:
    """配送先のスナップショット。住所録への参照は持たない。"""

    full_name: str | None = None
    phone: str | None = None
    address_line: str | None = None
    city: str | None = None
    country: str | None = None
    postal_code: str | None = None


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.buyer_id: str = ""
        self.items: list[OrderItem] = []
        self.subtotal: int = 0
        self.shipping_fee: int = 0
        self.total: int = 0
        self.status: OrderStatus = OrderStatus.PENDING
        self.shipping_address: ShippingAddress | None = None
        self.paid_at: datetime | None = None
        self.delivered_at: datetime | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    # ── 状態変更メソッド ──────────────────────────

    def apply_order_placed(
        self,
        order_id: str,
        buyer_id: str,
        items: list[OrderItem],
        shipping_fee: int,
        shipping_address: ShippingAddress | None,
        now: datetime,
    ) -> None:
        self.id = order_id
        self.buyer_id = buyer_id
        self.items = list(items)
        self.subtotal = sum(item.line_total for item in items)
        self.shipping_fee = shipping_fee
        self.total = self.subtotal + shipping_fee
        self.status = OrderStatus.PENDING
        self.shipping_address = shipping_address
        self.created_at = now
        self.updated_at = now
        self.version = 1

    def apply_payment_confirmed(self, paid_at: datetime) -> None:
        self.status = OrderStatus.ORDER_CONFIRMED
        self.paid_at = paid_at
        self.updated_at = paid_at
        self.version += 1

    def apply_status_changed(self, status: OrderStatus, now: datetime) -> None:
        self.status = status
        if status == OrderStatus.DELIVERED and self.delivered_at is None:
            self.delivered_at = now
        self.updated_at = now
        self.version += 1

    # ── 遷移チェック ─────────────────────────────

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in MANUAL_TRANSITIONS[self.status]

    def product_ids(self) -> set[str]:
        return {item.product_id for item in self.items}

    # ── 永続化との変換 ───────────────────────────

    @classmethod
    def from_rows(cls, row, item_rows) -> "OrderAggregate":
        """orders 行と order_items 行から集約を復元する。"""
        agg = cls()
        agg.id = str(row.id)
        agg.buyer_id = str(row.buyer_id)
        agg.items = [
            OrderItem(
                product_id=str(it.product_id),
                variant_sku=it.variant_sku,
                title=it.title,
                price=int(it.price),
                quantity=int(it.quantity),
            )
            for it in item_rows
        ]
        agg.subtotal = int(row.subtotal)
        agg.shipping_fee = int(row.shipping_fee)
        agg.total = int(row.total)
        agg.status = OrderStatus(row.status)
        if any(
            getattr(row, f) is not None
            for f in ("full_name", "phone", "address_line", "city", "country", "postal_code")
        ):
            agg.shipping_address = ShippingAddress(
                full_name=row.full_name,
                phone=row.phone,
                address_line=row.address_line,
                city=row.city,
                country=row.country,
                postal_code=row.postal_code,
            )
        agg.paid_at = row.paid_at
        agg.delivered_at = row.delivered_at
        agg.created_at = row.created_at
        agg.updated_at = row.updated_at
        agg.version = int(row.version)
        return agg

    def to_dict(self) -> dict:
        address = self.shipping_address
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "items": [
                {
                    "product_id": it.product_id,
                    "variant_sku": it.variant_sku,
                    "title": it.title,
                    "price": it.price,
                    "quantity": it.quantity,
                }
                for it in self.items
            ],
            "subtotal": self.subtotal,
            "shipping_fee": self.shipping_fee,
            "total": self.total,
            "status": self.status.value,
            "shipping_address": {
                "full_name": address.full_name,
                "phone": address.phone,
                "address_line": address.address_line,
                "city": address.city,
                "country": address.country,
                "postal_code": address.postal_code,
            }
            if address
            else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }
