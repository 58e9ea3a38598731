"""
Marketplace Service — ユーザー / 住所録

注文時の配送先スナップショットに必要な最小限の機能だけを持つ。
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import ShippingAddress
from .errors import AddressNotFoundError, UserNotFoundError


@dataclass
class User:
    id: str
    full_name: str
    email: str
    country: str | None = None


async def create_user(
    session: AsyncSession,
    full_name: str,
    email: str,
    country: str | None = None,
    user_id: str | None = None,
) -> User:
    user = User(id=user_id or str(uuid.uuid4()), full_name=full_name, email=email, country=country)
    await session.execute(
        text("""
            INSERT INTO users (id, full_name, email, country, created_at)
            VALUES (:id, :full_name, :email, :country, :now)
        """),
        {
            "id": user.id,
            "full_name": full_name,
            "email": email,
            "country": country,
            "now": datetime.now(timezone.utc),
        },
    )
    return user


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(
        text("SELECT id, full_name, email, country FROM users WHERE id = :id"),
        {"id": user_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return User(id=str(row.id), full_name=row.full_name, email=row.email, country=row.country)


async def add_address(
    session: AsyncSession,
    user_id: str,
    full_name: str,
    street: str,
    city: str,
    phone: str | None = None,
    postal_code: str | None = None,
) -> str:
    address_id = str(uuid.uuid4())
    await session.execute(
        text("""
            INSERT INTO addresses (id, user_id, full_name, phone, street, city, postal_code)
            VALUES (:id, :user_id, :full_name, :phone, :street, :city, :postal_code)
        """),
        {
            "id": address_id,
            "user_id": user_id,
            "full_name": full_name,
            "phone": phone,
            "street": street,
            "city": city,
            "postal_code": postal_code,
        },
    )
    return address_id


async def resolve_shipping_address(
    session: AsyncSession,
    user_id: str,
    address_id: str,
) -> ShippingAddress:
    """住所録から配送先を解決し、注文に埋め込むスナップショットを作る。"""
    user = await get_user(session, user_id)
    if user is None:
        raise UserNotFoundError(user_id)

    result = await session.execute(
        text("""
            SELECT full_name, phone, street, city, postal_code
            FROM addresses
            WHERE id = :id AND user_id = :user_id
        """),
        {"id": address_id, "user_id": user_id},
    )
    row = result.fetchone()
    if not row:
        raise AddressNotFoundError(address_id)

    return ShippingAddress(
        full_name=row.full_name,
        phone=row.phone,
        address_line=row.street,
        city=row.city,
        country=user.country,
        postal_code=row.postal_code,
    )
