from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import utc_now
from authplane.core.errors import (
    ConflictError,
    LastOwnerError,
    MembershipNotFoundError,
    TenantNotFoundError,
)
from authplane.core.ids import generate_id
from authplane.domain.models import Tenant, TenantUser
from authplane.domain.records import (
    ROLE_MEMBER,
    ROLE_OWNER,
    ROLES,
    MembershipRecord,
    TenantRecord,
)
from authplane.persistence.mappers import membership_to_record, tenant_to_record
from authplane.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _require_role(role: str) -> None:
    if role not in ROLES:
        raise ValueError(f"Unsupported role: {role}")


class TenantService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._time_provider = time_provider or utc_now

    async def create_tenant(
        self,
        *,
        name: str,
        owner_id: str,
        global_quota_limit: int | None = None,
    ) -> TenantRecord:
        # The creator becomes the first owner in the same transaction as the tenant.
        now = self._time_provider()
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant_by_name(session, name) is not None:
                raise ConflictError(f"Tenant name {name} already exists")
            tenant = Tenant(
                id=generate_id("tenant"),
                name=name,
                global_quota_limit=global_quota_limit,
                created_at=now,
                updated_at=now,
            )
            session.add(tenant)
            try:
                # Flush the tenant first so the membership foreign key resolves.
                await session.flush()
                session.add(TenantUser(tenant_id=tenant.id, user_id=owner_id, role=ROLE_OWNER, created_at=now))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Tenant name {name} already exists") from exc
            record = tenant_to_record(tenant)
        logger.info("tenant_created tenant_id=%s owner_id=%s", record.id, owner_id)
        return record

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            row = await tenants_repo.get_tenant(session, tenant_id)
            return tenant_to_record(row) if row else None

    async def get_tenant_by_name(self, name: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            row = await tenants_repo.get_tenant_by_name(session, name)
            return tenant_to_record(row) if row else None

    async def update_tenant(
        self,
        tenant_id: str,
        *,
        name: str | None = None,
        global_quota_limit: int | None = _UNSET,
    ) -> TenantRecord:
        # Pass global_quota_limit=None to make the tenant unlimited.
        async with self._session_factory() as session:
            row = await tenants_repo.get_tenant(session, tenant_id)
            if row is None:
                raise TenantNotFoundError(tenant_id)
            if name is not None and name != row.name:
                if await tenants_repo.get_tenant_by_name(session, name) is not None:
                    raise ConflictError(f"Tenant name {name} already exists")
                row.name = name
            if global_quota_limit is not _UNSET:
                row.global_quota_limit = global_quota_limit
            row.updated_at = self._time_provider()
            await session.commit()
            return tenant_to_record(row)

    async def get_membership(self, tenant_id: str, user_id: str) -> MembershipRecord | None:
        async with self._session_factory() as session:
            row = await tenants_repo.get_membership(session, tenant_id, user_id)
            return membership_to_record(row) if row else None

    async def add_user(self, tenant_id: str, user_id: str, role: str = ROLE_MEMBER) -> MembershipRecord:
        _require_role(role)
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            if await tenants_repo.get_membership(session, tenant_id, user_id) is not None:
                raise ConflictError(f"User {user_id} is already a member of tenant {tenant_id}")
            row = TenantUser(tenant_id=tenant_id, user_id=user_id, role=role, created_at=self._time_provider())
            session.add(row)
            await session.commit()
            record = membership_to_record(row)
        logger.info("tenant_user_added tenant_id=%s user_id=%s role=%s", tenant_id, user_id, role)
        return record

    async def remove_user(self, tenant_id: str, user_id: str) -> None:
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            row = await tenants_repo.get_membership(session, tenant_id, user_id)
            if row is None:
                raise MembershipNotFoundError(f"{tenant_id}:{user_id}")
            if row.role == ROLE_OWNER and await tenants_repo.count_owners(session, tenant_id) <= 1:
                raise LastOwnerError("Cannot remove the last owner of a tenant")
            await tenants_repo.delete_membership(session, tenant_id, user_id)
            await session.commit()
        logger.info("tenant_user_removed tenant_id=%s user_id=%s", tenant_id, user_id)

    async def update_user_role(self, tenant_id: str, user_id: str, role: str) -> MembershipRecord:
        _require_role(role)
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            row = await tenants_repo.get_membership(session, tenant_id, user_id)
            if row is None:
                raise MembershipNotFoundError(f"{tenant_id}:{user_id}")
            if (
                row.role == ROLE_OWNER
                and role != ROLE_OWNER
                and await tenants_repo.count_owners(session, tenant_id) <= 1
            ):
                raise LastOwnerError("Cannot demote the last owner of a tenant")
            row.role = role
            await session.commit()
            record = membership_to_record(row)
        logger.info("tenant_user_role_updated tenant_id=%s user_id=%s role=%s", tenant_id, user_id, role)
        return record

    async def list_users(self, tenant_id: str) -> list[MembershipRecord]:
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            rows = await tenants_repo.list_memberships_for_tenant(session, tenant_id)
            return [membership_to_record(row) for row in rows]

    async def list_user_tenants(self, user_id: str) -> list[MembershipRecord]:
        async with self._session_factory() as session:
            rows = await tenants_repo.list_memberships_for_user(session, user_id)
            return [membership_to_record(row) for row in rows]
