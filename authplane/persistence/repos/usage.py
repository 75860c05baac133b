from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import UsageEvent


def _apply_window(
    stmt: Select,
    period: str | None,
    since: datetime | None,
    until: datetime | None,
) -> Select:
    # Monthly buckets match the stored label; hour/day windows match created_at.
    if period is not None:
        stmt = stmt.where(UsageEvent.period == period)
    if since is not None:
        stmt = stmt.where(UsageEvent.created_at >= since)
    if until is not None:
        stmt = stmt.where(UsageEvent.created_at < until)
    return stmt


async def get_by_idempotency_key(session: AsyncSession, idempotency_key: str) -> UsageEvent | None:
    result = await session.execute(
        select(UsageEvent).where(UsageEvent.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def sum_tenant_usage(
    session: AsyncSession,
    tenant_id: str,
    *,
    period: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> tuple[int, int]:
    # Return (total_quantity, event_count).
    stmt = select(
        func.coalesce(func.sum(UsageEvent.quantity), 0), func.count(UsageEvent.id)
    ).where(UsageEvent.tenant_id == tenant_id)
    result = await session.execute(_apply_window(stmt, period, since, until))
    total, count = result.one()
    return int(total or 0), int(count or 0)


async def sum_api_key_usage(
    session: AsyncSession,
    api_key_id: str,
    *,
    period: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> tuple[int, int]:
    stmt = select(
        func.coalesce(func.sum(UsageEvent.quantity), 0), func.count(UsageEvent.id)
    ).where(UsageEvent.api_key_id == api_key_id)
    result = await session.execute(_apply_window(stmt, period, since, until))
    total, count = result.one()
    return int(total or 0), int(count or 0)


async def list_events(
    session: AsyncSession,
    tenant_id: str,
    *,
    period: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    service: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[UsageEvent]:
    stmt = _apply_window(select(UsageEvent).where(UsageEvent.tenant_id == tenant_id), period, since, until)
    if service is not None:
        stmt = stmt.where(UsageEvent.service == service)
    stmt = stmt.order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc()).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())
