from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import FeatureFlag


async def get_flag(session: AsyncSession, flag_id: str) -> FeatureFlag | None:
    result = await session.execute(select(FeatureFlag).where(FeatureFlag.id == flag_id))
    return result.scalar_one_or_none()


async def get_flag_by_name(session: AsyncSession, name: str) -> FeatureFlag | None:
    result = await session.execute(select(FeatureFlag).where(FeatureFlag.name == name))
    return result.scalar_one_or_none()


async def get_flags_by_names(session: AsyncSession, names: list[str]) -> list[FeatureFlag]:
    if not names:
        return []
    result = await session.execute(select(FeatureFlag).where(FeatureFlag.name.in_(names)))
    return list(result.scalars().all())


async def list_flags(session: AsyncSession, *, active_only: bool = False) -> list[FeatureFlag]:
    stmt = select(FeatureFlag)
    if active_only:
        stmt = stmt.where(FeatureFlag.active.is_(True))
    result = await session.execute(stmt.order_by(FeatureFlag.name.asc()))
    return list(result.scalars().all())
