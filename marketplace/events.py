"""
Marketplace Service — イベント定義

注文ドメインで発生した事実(イベント)。
Outbox に JSON で追記され、ディスパッチャが通知・Pub/Sub に配信する。
"""

from datetime import datetime

from pydantic import BaseModel

ORDER_PLACED = "ORDER_PLACED"
ORDER_STATUS_UPDATED = "ORDER_STATUS_UPDATED"


class OrderPlaced(BaseModel):
    """注文が作成された (PENDING)"""
    order_id: str
    buyer_id: str
    item_count: int
    total: int
    timestamp: datetime


class OrderStatusUpdated(BaseModel):
    """注文ステータスが変わった (決済確認・出荷・配達・キャンセル)"""
    order_id: str
    buyer_id: str
    previous_status: str
    status: str
    timestamp: datetime
