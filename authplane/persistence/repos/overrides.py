from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import AdminOverride


def _active_predicate(now: datetime):
    # Expiry is evaluated at read time; expired rows stay until explicit cleanup.
    return or_(AdminOverride.expires_at.is_(None), AdminOverride.expires_at > now)


async def list_active_overrides(
    session: AsyncSession,
    tenant_id: str,
    now: datetime,
    *,
    override_type: str | None = None,
) -> list[AdminOverride]:
    stmt = select(AdminOverride).where(
        AdminOverride.tenant_id == tenant_id,
        _active_predicate(now),
    )
    if override_type is not None:
        stmt = stmt.where(AdminOverride.type == override_type)
    result = await session.execute(stmt.order_by(AdminOverride.created_at.asc(), AdminOverride.id.asc()))
    return list(result.scalars().all())


async def list_overrides(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    now: datetime | None = None,
    include_expired: bool = False,
) -> list[AdminOverride]:
    stmt = select(AdminOverride)
    if tenant_id is not None:
        stmt = stmt.where(AdminOverride.tenant_id == tenant_id)
    if not include_expired and now is not None:
        stmt = stmt.where(_active_predicate(now))
    result = await session.execute(stmt.order_by(AdminOverride.created_at.desc(), AdminOverride.id.asc()))
    return list(result.scalars().all())


async def get_override(session: AsyncSession, override_id: str) -> AdminOverride | None:
    result = await session.execute(select(AdminOverride).where(AdminOverride.id == override_id))
    return result.scalar_one_or_none()


async def delete_override(session: AsyncSession, override_id: str) -> int:
    result = await session.execute(delete(AdminOverride).where(AdminOverride.id == override_id))
    return int(result.rowcount or 0)


async def delete_overrides_for_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    override_type: str | None = None,
) -> int:
    stmt = delete(AdminOverride).where(AdminOverride.tenant_id == tenant_id)
    if override_type is not None:
        stmt = stmt.where(AdminOverride.type == override_type)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def delete_expired_overrides(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(
        delete(AdminOverride).where(
            AdminOverride.expires_at.is_not(None),
            AdminOverride.expires_at <= now,
        )
    )
    return int(result.rowcount or 0)
