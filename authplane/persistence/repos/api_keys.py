from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import ApiKey


async def get_api_key(session: AsyncSession, api_key_id: str) -> ApiKey | None:
    result = await session.execute(select(ApiKey).where(ApiKey.id == api_key_id))
    return result.scalar_one_or_none()


async def get_api_key_by_hash(session: AsyncSession, key_hash: str) -> ApiKey | None:
    result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    return result.scalar_one_or_none()


async def list_api_keys(
    session: AsyncSession,
    tenant_id: str,
    *,
    include_revoked: bool = True,
) -> list[ApiKey]:
    stmt = select(ApiKey).where(ApiKey.tenant_id == tenant_id)
    if not include_revoked:
        stmt = stmt.where(ApiKey.revoked_at.is_(None))
    result = await session.execute(stmt.order_by(ApiKey.created_at.desc(), ApiKey.id.asc()))
    return list(result.scalars().all())


async def touch_last_used(session: AsyncSession, api_key_id: str, now: datetime) -> None:
    await session.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=now))
