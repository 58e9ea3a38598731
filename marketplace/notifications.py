"""
Marketplace Service — 通知

通知はアプリ内の notifications テーブルに保存する。
プッシュ配信などの外部チャネルは対象外。
"""

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotificationNotFoundError


class NotificationSender:
    """ディスパッチャから注入される送信口"""

    async def send(
        self,
        session: AsyncSession,
        recipient_id: str,
        recipient_role: str,
        title: str,
        message: str,
        data: dict | None = None,
    ) -> str:
        notification_id = str(uuid.uuid4())
        await session.execute(
            text("""
                INSERT INTO notifications
                    (id, recipient_id, recipient_role, title, message, data, is_read, created_at)
                VALUES
                    (:id, :recipient_id, :role, :title, :message, :data, :is_read, :now)
            """),
            {
                "id": notification_id,
                "recipient_id": recipient_id,
                "role": recipient_role,
                "title": title,
                "message": message,
                "data": json.dumps(data or {}),
                "is_read": False,
                "now": datetime.now(timezone.utc),
            },
        )
        return notification_id


def _from_row(row) -> dict:
    return {
        "id": str(row.id),
        "recipient_id": str(row.recipient_id),
        "recipient_role": row.recipient_role,
        "title": row.title,
        "message": row.message,
        "data": json.loads(row.data) if isinstance(row.data, str) else row.data,
        "is_read": bool(row.is_read),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def list_notifications(session: AsyncSession, recipient_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM notifications
            WHERE recipient_id = :recipient_id
            ORDER BY created_at DESC
        """).columns(created_at=DateTime(timezone=True)),
        {"recipient_id": recipient_id},
    )
    return [_from_row(row) for row in result.fetchall()]


async def mark_read(session: AsyncSession, recipient_id: str, notification_id: str) -> None:
    result = await session.execute(
        text("""
            UPDATE notifications SET is_read = :is_read
            WHERE id = :id AND recipient_id = :recipient_id
        """),
        {"id": notification_id, "recipient_id": recipient_id, "is_read": True},
    )
    if result.rowcount != 1:
        raise NotificationNotFoundError(notification_id)
    await session.commit()
