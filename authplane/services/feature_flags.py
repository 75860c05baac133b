from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import utc_now
from authplane.core.errors import ConflictError, FeatureFlagNotFoundError
from authplane.core.ids import generate_id
from authplane.domain.models import FeatureFlag
from authplane.domain.records import STATUS_ACTIVE, FeatureFlagRecord
from authplane.persistence.mappers import encode_string_list, feature_flag_to_record
from authplane.persistence.repos import flags as flags_repo
from authplane.persistence.repos import subscriptions as subscriptions_repo


logger = logging.getLogger(__name__)

_UINT32 = 2**32
_INT32_SIGN = 2**31


def rollout_hash(tenant_id: str, flag_name: str) -> int:
    """Return the non-negative rollout hash for a (tenant, flag) pair.

    Iterates UTF-16 code units of ``"<tenant_id>:<flag_name>"`` with
    ``h = h * 31 + unit`` in 32-bit arithmetic, then takes the absolute value
    of the signed result. Buckets must stay stable across deployments, so the
    arithmetic is fixed.
    """
    value = 0
    data = f"{tenant_id}:{flag_name}".encode("utf-16-le")
    for index in range(0, len(data), 2):
        unit = data[index] | (data[index + 1] << 8)
        value = (value * 31 + unit) % _UINT32
    if value >= _INT32_SIGN:
        value -= _UINT32
    return abs(value)


def rollout_bucket(tenant_id: str, flag_name: str) -> int:
    return rollout_hash(tenant_id, flag_name) % 100


def _validate_rollout(rollout_percentage: int) -> int:
    if not 0 <= int(rollout_percentage) <= 100:
        raise ValueError("rollout_percentage must be between 0 and 100")
    return int(rollout_percentage)


def evaluate_flag(flag: FeatureFlagRecord, tenant_id: str, tier: str | None) -> bool:
    # Tier lookups happen before this is called; this is the pure decision.
    if not flag.active:
        return False
    if tenant_id in flag.enabled_tenants:
        return True
    if tier is not None and tier in flag.enabled_tiers:
        return True
    if flag.rollout_percentage > 0:
        return rollout_bucket(tenant_id, flag.name) < flag.rollout_percentage
    return False


class FeatureFlagEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._time_provider = time_provider or utc_now

    async def _active_tier(self, session: AsyncSession, tenant_id: str) -> str | None:
        subscription = await subscriptions_repo.get_subscription_for_tenant(session, tenant_id)
        if subscription is None or subscription.status != STATUS_ACTIVE:
            return None
        return subscription.tier

    async def feature_enabled(self, flag_name: str, tenant_id: str, tier: str | None = None) -> bool:
        async with self._session_factory() as session:
            row = await flags_repo.get_flag_by_name(session, flag_name)
            if row is None:
                # Unknown flags are disabled.
                return False
            flag = feature_flag_to_record(row)
            if flag.active and tier is None and flag.enabled_tiers and tenant_id not in flag.enabled_tenants:
                tier = await self._active_tier(session, tenant_id)
        return evaluate_flag(flag, tenant_id, tier)

    async def features_enabled(
        self,
        flag_names: Iterable[str],
        tenant_id: str,
        tier: str | None = None,
    ) -> dict[str, bool]:
        names = list(dict.fromkeys(flag_names))
        async with self._session_factory() as session:
            # Resolve the tier once for the whole batch.
            if tier is None:
                tier = await self._active_tier(session, tenant_id)
            rows = await flags_repo.get_flags_by_names(session, names)
        flags = {row.name: feature_flag_to_record(row) for row in rows}
        results: dict[str, bool] = {}
        for name in names:
            flag = flags.get(name)
            results[name] = evaluate_flag(flag, tenant_id, tier) if flag else False
        return results

    async def create_flag(
        self,
        *,
        name: str,
        description: str | None = None,
        enabled_tiers: Iterable[str] | None = None,
        enabled_tenants: Iterable[str] | None = None,
        rollout_percentage: int = 0,
        active: bool = True,
    ) -> FeatureFlagRecord:
        rollout = _validate_rollout(rollout_percentage)
        now = self._time_provider()
        async with self._session_factory() as session:
            if await flags_repo.get_flag_by_name(session, name) is not None:
                raise ConflictError(f"Feature flag {name} already exists")
            row = FeatureFlag(
                id=generate_id("ff"),
                name=name,
                description=description,
                enabled_tiers=encode_string_list(enabled_tiers),
                enabled_tenants=encode_string_list(enabled_tenants),
                rollout_percentage=rollout,
                active=active,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                # Lost a concurrent create with the same name.
                await session.rollback()
                raise ConflictError(f"Feature flag {name} already exists") from exc
            record = feature_flag_to_record(row)
        logger.info("feature_flag_created flag_id=%s name=%s", record.id, name)
        return record

    async def get_flag(self, flag_id: str) -> FeatureFlagRecord | None:
        async with self._session_factory() as session:
            row = await flags_repo.get_flag(session, flag_id)
            return feature_flag_to_record(row) if row else None

    async def get_flag_by_name(self, name: str) -> FeatureFlagRecord | None:
        async with self._session_factory() as session:
            row = await flags_repo.get_flag_by_name(session, name)
            return feature_flag_to_record(row) if row else None

    async def list_flags(self, *, active_only: bool = False) -> list[FeatureFlagRecord]:
        async with self._session_factory() as session:
            rows = await flags_repo.list_flags(session, active_only=active_only)
            return [feature_flag_to_record(row) for row in rows]

    async def update_flag(
        self,
        flag_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        enabled_tiers: Iterable[str] | None = None,
        enabled_tenants: Iterable[str] | None = None,
        rollout_percentage: int | None = None,
        active: bool | None = None,
    ) -> FeatureFlagRecord:
        async with self._session_factory() as session:
            row = await flags_repo.get_flag(session, flag_id)
            if row is None:
                raise FeatureFlagNotFoundError(flag_id)
            if name is not None and name != row.name:
                if await flags_repo.get_flag_by_name(session, name) is not None:
                    raise ConflictError(f"Feature flag {name} already exists")
                row.name = name
            if description is not None:
                row.description = description
            if enabled_tiers is not None:
                row.enabled_tiers = encode_string_list(enabled_tiers)
            if enabled_tenants is not None:
                row.enabled_tenants = encode_string_list(enabled_tenants)
            if rollout_percentage is not None:
                row.rollout_percentage = _validate_rollout(rollout_percentage)
            if active is not None:
                row.active = active
            row.updated_at = self._time_provider()
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Feature flag {name} already exists") from exc
            record = feature_flag_to_record(row)
        logger.info("feature_flag_updated flag_id=%s", flag_id)
        return record

    async def delete_flag(self, flag_id: str) -> None:
        async with self._session_factory() as session:
            row = await flags_repo.get_flag(session, flag_id)
            if row is None:
                raise FeatureFlagNotFoundError(flag_id)
            await session.delete(row)
            await session.commit()
        logger.info("feature_flag_deleted flag_id=%s", flag_id)

    async def toggle_flag(self, flag_id: str) -> FeatureFlagRecord:
        flag = await self.get_flag(flag_id)
        if flag is None:
            raise FeatureFlagNotFoundError(flag_id)
        return await self.update_flag(flag_id, active=not flag.active)

    async def enable_for_tenant(self, flag_id: str, tenant_id: str) -> FeatureFlagRecord:
        flag = await self.get_flag(flag_id)
        if flag is None:
            raise FeatureFlagNotFoundError(flag_id)
        if tenant_id in flag.enabled_tenants:
            return flag
        return await self.update_flag(flag_id, enabled_tenants=[*flag.enabled_tenants, tenant_id])

    async def disable_for_tenant(self, flag_id: str, tenant_id: str) -> FeatureFlagRecord:
        flag = await self.get_flag(flag_id)
        if flag is None:
            raise FeatureFlagNotFoundError(flag_id)
        if tenant_id not in flag.enabled_tenants:
            return flag
        remaining = [tenant for tenant in flag.enabled_tenants if tenant != tenant_id]
        return await self.update_flag(flag_id, enabled_tenants=remaining)
