from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import utc_now
from authplane.core.errors import (
    ConflictError,
    InvalidTierChangeError,
    SubscriptionNotFoundError,
    TenantNotFoundError,
)
from authplane.core.ids import generate_id
from authplane.domain.models import Subscription
from authplane.domain.records import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    SUBSCRIPTION_STATUSES,
    TIER_FREE,
    TIERS,
    SubscriptionItemRecord,
    SubscriptionRecord,
    tier_rank,
)
from authplane.persistence.mappers import subscription_item_to_record, subscription_to_record
from authplane.persistence.repos import subscriptions as subscriptions_repo
from authplane.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionWithItems:
    subscription: SubscriptionRecord
    items: tuple[SubscriptionItemRecord, ...]


def _require_tier(tier: str) -> None:
    if tier not in TIERS:
        raise ValueError(f"Unsupported tier: {tier}")


class SubscriptionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        period_days: int = 30,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._period_days = period_days
        self._time_provider = time_provider or utc_now

    async def create_subscription(
        self,
        tenant_id: str,
        *,
        tier: str = TIER_FREE,
        period_days: int | None = None,
    ) -> SubscriptionRecord:
        _require_tier(tier)
        now = self._time_provider()
        days = period_days if period_days is not None else self._period_days
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            if await subscriptions_repo.get_subscription_for_tenant(session, tenant_id) is not None:
                raise ConflictError(f"Tenant {tenant_id} already has a subscription")
            row = Subscription(
                id=generate_id("sub"),
                tenant_id=tenant_id,
                tier=tier,
                status=STATUS_ACTIVE,
                current_period_start=now,
                current_period_end=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Tenant {tenant_id} already has a subscription") from exc
            record = subscription_to_record(row)
        logger.info("subscription_created tenant_id=%s tier=%s", tenant_id, tier)
        return record

    async def get_subscription(self, tenant_id: str) -> SubscriptionRecord | None:
        async with self._session_factory() as session:
            row = await subscriptions_repo.get_subscription_for_tenant(session, tenant_id)
            return subscription_to_record(row) if row else None

    async def get_subscription_by_id(self, subscription_id: str) -> SubscriptionRecord | None:
        async with self._session_factory() as session:
            row = await subscriptions_repo.get_subscription(session, subscription_id)
            return subscription_to_record(row) if row else None

    async def update_subscription(
        self,
        tenant_id: str,
        *,
        tier: str | None = None,
        status: str | None = None,
        period_days: int | None = None,
    ) -> SubscriptionRecord:
        if tier is not None:
            _require_tier(tier)
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unsupported subscription status: {status}")
        now = self._time_provider()
        async with self._session_factory() as session:
            row = await subscriptions_repo.get_subscription_for_tenant(session, tenant_id)
            if row is None:
                raise SubscriptionNotFoundError(tenant_id)
            if tier is not None:
                row.tier = tier
            if status is not None:
                row.status = status
                if status == STATUS_CANCELED:
                    row.canceled_at = now
            if period_days is not None:
                row.current_period_end = now + timedelta(days=period_days)
            row.updated_at = now
            await session.commit()
            record = subscription_to_record(row)
        logger.info(
            "subscription_updated tenant_id=%s tier=%s status=%s",
            tenant_id,
            record.tier,
            record.status,
        )
        return record

    async def upgrade_tier(self, tenant_id: str, new_tier: str) -> SubscriptionRecord:
        _require_tier(new_tier)
        current = await self.get_subscription(tenant_id)
        if current is None:
            raise SubscriptionNotFoundError(tenant_id)
        if tier_rank(new_tier) <= tier_rank(current.tier):
            raise InvalidTierChangeError("New tier must be higher than current tier")
        return await self.update_subscription(tenant_id, tier=new_tier)

    async def downgrade_tier(self, tenant_id: str, new_tier: str) -> SubscriptionRecord:
        _require_tier(new_tier)
        current = await self.get_subscription(tenant_id)
        if current is None:
            raise SubscriptionNotFoundError(tenant_id)
        if tier_rank(new_tier) >= tier_rank(current.tier):
            raise InvalidTierChangeError("New tier must be lower than current tier")
        return await self.update_subscription(tenant_id, tier=new_tier)

    async def cancel_subscription(self, tenant_id: str) -> SubscriptionRecord:
        return await self.update_subscription(tenant_id, status=STATUS_CANCELED)

    async def renew_subscription(self, tenant_id: str, period_days: int | None = None) -> SubscriptionRecord:
        # Extend from the later of now and the current period end so early renewals keep paid time.
        now = self._time_provider()
        days = period_days if period_days is not None else self._period_days
        async with self._session_factory() as session:
            row = await subscriptions_repo.get_subscription_for_tenant(session, tenant_id)
            if row is None:
                raise SubscriptionNotFoundError(tenant_id)
            base = max(now, row.current_period_end)
            row.status = STATUS_ACTIVE
            row.current_period_end = base + timedelta(days=days)
            row.updated_at = now
            await session.commit()
            record = subscription_to_record(row)
        logger.info("subscription_renewed tenant_id=%s period_end=%s", tenant_id, record.current_period_end.isoformat())
        return record

    async def is_active(self, tenant_id: str) -> bool:
        subscription = await self.get_subscription(tenant_id)
        if subscription is None:
            return False
        return subscription.status == STATUS_ACTIVE and subscription.current_period_end > self._time_provider()

    async def get_tier(self, tenant_id: str) -> str | None:
        subscription = await self.get_subscription(tenant_id)
        return subscription.tier if subscription else None

    async def get_subscription_with_items(self, tenant_id: str) -> SubscriptionWithItems | None:
        async with self._session_factory() as session:
            row = await subscriptions_repo.get_subscription_for_tenant(session, tenant_id)
            if row is None:
                return None
            items = await subscriptions_repo.list_items(session, row.id)
            return SubscriptionWithItems(
                subscription=subscription_to_record(row),
                items=tuple(subscription_item_to_record(item) for item in items),
            )

    async def is_service_enabled(self, subscription_id: str, service: str) -> bool:
        # No row means disabled.
        async with self._session_factory() as session:
            item = await subscriptions_repo.get_item(session, subscription_id, service)
            return bool(item is not None and item.enabled)

    async def _set_service(self, subscription_id: str, service: str, enabled: bool) -> SubscriptionItemRecord:
        async with self._session_factory() as session:
            if await subscriptions_repo.get_subscription(session, subscription_id) is None:
                raise SubscriptionNotFoundError(subscription_id)
            item = await subscriptions_repo.upsert_item(session, subscription_id, service, enabled=enabled)
            item.updated_at = self._time_provider()
            await session.commit()
            record = subscription_item_to_record(item)
        logger.info(
            "subscription_service_toggled subscription_id=%s service=%s enabled=%s",
            subscription_id,
            service,
            enabled,
        )
        return record

    async def enable_service(self, subscription_id: str, service: str) -> SubscriptionItemRecord:
        return await self._set_service(subscription_id, service, True)

    async def disable_service(self, subscription_id: str, service: str) -> SubscriptionItemRecord:
        return await self._set_service(subscription_id, service, False)

    async def list_items(self, subscription_id: str) -> list[SubscriptionItemRecord]:
        async with self._session_factory() as session:
            items = await subscriptions_repo.list_items(session, subscription_id)
            return [subscription_item_to_record(item) for item in items]
