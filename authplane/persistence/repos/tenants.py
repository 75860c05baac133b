from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import Tenant, TenantUser
from authplane.domain.records import ROLE_OWNER


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_name(session: AsyncSession, name: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.name == name))
    return result.scalar_one_or_none()


async def get_global_quota_limit(session: AsyncSession, tenant_id: str) -> tuple[bool, int | None]:
    # Return (exists, limit) so callers can distinguish a missing tenant from an unlimited one.
    result = await session.execute(
        select(Tenant.global_quota_limit).where(Tenant.id == tenant_id)
    )
    row = result.first()
    if row is None:
        return False, None
    return True, row[0]


async def get_membership(session: AsyncSession, tenant_id: str, user_id: str) -> TenantUser | None:
    result = await session.execute(
        select(TenantUser).where(
            TenantUser.tenant_id == tenant_id,
            TenantUser.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_memberships_for_tenant(session: AsyncSession, tenant_id: str) -> list[TenantUser]:
    result = await session.execute(
        select(TenantUser)
        .where(TenantUser.tenant_id == tenant_id)
        .order_by(TenantUser.created_at.asc(), TenantUser.user_id.asc())
    )
    return list(result.scalars().all())


async def list_memberships_for_user(session: AsyncSession, user_id: str) -> list[TenantUser]:
    result = await session.execute(
        select(TenantUser)
        .where(TenantUser.user_id == user_id)
        .order_by(TenantUser.created_at.asc(), TenantUser.tenant_id.asc())
    )
    return list(result.scalars().all())


async def count_owners(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(TenantUser)
        .where(TenantUser.tenant_id == tenant_id, TenantUser.role == ROLE_OWNER)
    )
    return int(result.scalar_one())


async def delete_membership(session: AsyncSession, tenant_id: str, user_id: str) -> int:
    result = await session.execute(
        delete(TenantUser).where(
            TenantUser.tenant_id == tenant_id,
            TenantUser.user_id == user_id,
        )
    )
    return int(result.rowcount or 0)
