"""
Marketplace Service — イベントストア (Transactional Outbox)

状態変更と同じトランザクションでイベントを order_events に追記する。
コミットされたイベントだけがディスパッチャから配信されるので、
ロールバックされた注文の通知が飛ぶことはない。

aggregate_id + version の UNIQUE 制約で二重追記を検知する (楽観的ロック)。
"""

import json
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    event: BaseModel,
    event_type: str,
    version: int,
) -> None:
    """イベントを Outbox に追記する。コミットは呼び出し側が行う。"""
    await session.execute(
        text("""
            INSERT INTO order_events
                (id, aggregate_id, event_type, event_data, version, attempts, created_at)
            VALUES
                (:id, :agg_id, :evt_type, :evt_data, :version, 0, :now)
        """),
        {
            "id": str(uuid.uuid4()),
            "agg_id": aggregate_id,
            "evt_type": event_type,
            "evt_data": event.model_dump_json(),
            "version": version,
            "now": datetime.now(timezone.utc),
        },
    )


def _event_from_row(row) -> dict:
    return {
        "id": str(row.id),
        "aggregate_id": str(row.aggregate_id),
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "version": row.version,
        "attempts": row.attempts,
        "created_at": row.created_at,
        "dispatched_at": row.dispatched_at,
    }


_TIMESTAMPS = {"created_at": DateTime(timezone=True), "dispatched_at": DateTime(timezone=True)}


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT id, aggregate_id, event_type, event_data, version, attempts,
                   created_at, dispatched_at
            FROM order_events
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """).columns(**_TIMESTAMPS),
        {"agg_id": aggregate_id},
    )
    return [_event_from_row(row) for row in result.fetchall()]


async def load_pending(
    session: AsyncSession,
    max_attempts: int,
    limit: int = 100,
) -> list[dict]:
    """未配信のイベントを古い順に返す。"""
    result = await session.execute(
        text("""
            SELECT id, aggregate_id, event_type, event_data, version, attempts,
                   created_at, dispatched_at
            FROM order_events
            WHERE dispatched_at IS NULL AND attempts < :max_attempts
            ORDER BY created_at ASC, version ASC
            LIMIT :limit
        """).columns(**_TIMESTAMPS),
        {"max_attempts": max_attempts, "limit": limit},
    )
    return [_event_from_row(row) for row in result.fetchall()]


async def mark_dispatched(session: AsyncSession, event_id: str) -> bool:
    """
    配信済みにする。

    dispatched_at IS NULL を条件にするので、
    複数のディスパッチャが同じイベントを取り合っても配信済みにできるのは1つだけ。
    """
    result = await session.execute(
        text("""
            UPDATE order_events
            SET dispatched_at = :now
            WHERE id = :id AND dispatched_at IS NULL
        """),
        {"id": event_id, "now": datetime.now(timezone.utc)},
    )
    return result.rowcount == 1


async def record_failure(session: AsyncSession, event_id: str) -> None:
    await session.execute(
        text("UPDATE order_events SET attempts = attempts + 1 WHERE id = :id"),
        {"id": event_id},
    )
