from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.domain.models import Subscription, SubscriptionItem


async def get_subscription_for_tenant(session: AsyncSession, tenant_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, subscription_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_item(session: AsyncSession, subscription_id: str, service: str) -> SubscriptionItem | None:
    result = await session.execute(
        select(SubscriptionItem).where(
            SubscriptionItem.subscription_id == subscription_id,
            SubscriptionItem.service == service,
        )
    )
    return result.scalar_one_or_none()


async def list_items(session: AsyncSession, subscription_id: str) -> list[SubscriptionItem]:
    result = await session.execute(
        select(SubscriptionItem)
        .where(SubscriptionItem.subscription_id == subscription_id)
        .order_by(SubscriptionItem.service.asc())
    )
    return list(result.scalars().all())


async def upsert_item(
    session: AsyncSession,
    subscription_id: str,
    service: str,
    *,
    enabled: bool,
) -> SubscriptionItem:
    # Service toggles update the existing row in place or create it on first use.
    item = await get_item(session, subscription_id, service)
    if item is None:
        item = SubscriptionItem(subscription_id=subscription_id, service=service, enabled=enabled)
        session.add(item)
    else:
        item.enabled = enabled
    await session.flush()
    return item
