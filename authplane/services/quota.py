from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging
import math
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import (
    PERIOD_GRANULARITIES,
    PERIOD_MONTH,
    format_period,
    period_window,
    utc_now,
)
from authplane.core.ids import generate_id
from authplane.domain.models import ApiKey, UsageEvent
from authplane.domain.records import UsageEventRecord
from authplane.persistence.mappers import usage_event_to_record
from authplane.persistence.repos import api_keys as api_keys_repo
from authplane.persistence.repos import tenants as tenants_repo
from authplane.persistence.repos import usage as usage_repo


logger = logging.getLogger(__name__)

LEVEL_API_KEY = "api_key"
LEVEL_TENANT = "tenant"
LEVEL_UNLIMITED = "unlimited"

# Largest integer every JSON consumer can represent exactly.
UNLIMITED_REMAINING = 2**53 - 1

DEFAULT_BUFFER_RATIO = 0.99

RACE_MESSAGE = "Quota exceeded due to concurrent requests"


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    remaining: int
    level: str
    limit: int | None = None
    used: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "level": self.level,
            "limit": self.limit,
            "used": self.used,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "QuotaCheckResult":
        return cls(
            allowed=bool(payload.get("allowed")),
            remaining=int(payload.get("remaining") or 0),
            level=str(payload.get("level") or LEVEL_UNLIMITED),
            limit=payload.get("limit"),
            used=payload.get("used"),
            message=payload.get("message"),
        )


@dataclass(frozen=True)
class UsageSummary:
    tenant_id: str
    period: str
    total_quantity: int
    event_count: int


def _unlimited() -> QuotaCheckResult:
    return QuotaCheckResult(allowed=True, remaining=UNLIMITED_REMAINING, level=LEVEL_UNLIMITED)


def evaluate_limit(
    level: str,
    limit: int,
    used: int,
    quantity: int,
    buffer_ratio: float = DEFAULT_BUFFER_RATIO,
) -> QuotaCheckResult:
    # The buffer leaves headroom for requests admitted between check and write.
    effective_limit = math.floor(limit * buffer_ratio)
    return QuotaCheckResult(
        allowed=used + quantity <= effective_limit,
        remaining=max(0, effective_limit - used),
        level=level,
        limit=limit,
        used=used,
    )


def apply_quota_boost(result: QuotaCheckResult, boost: int, quantity: int) -> QuotaCheckResult:
    """Raise a limited result's ceiling by ``boost`` units.

    The boosted limit is not buffered; ``used`` and ``level`` are kept from
    the unboosted result. Unlimited results and zero boosts pass through.
    """
    if not boost or result.limit is None:
        return result
    used = result.used or 0
    boosted_limit = result.limit + boost
    return replace(
        result,
        allowed=used + quantity <= boosted_limit,
        remaining=max(0, boosted_limit - used),
        limit=boosted_limit,
        used=used,
    )


def _period_filter(period: str) -> dict[str, Any]:
    # Monthly labels are stored on each event; hour/day labels are created_at windows.
    granularity, start, end = period_window(period)
    if granularity == PERIOD_MONTH:
        return {"period": period}
    return {"since": start, "until": end}


def current_period(granularity: str = PERIOD_MONTH, now: datetime | None = None) -> str:
    return format_period(now or utc_now(), granularity)


class QuotaEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        buffer_ratio: float = DEFAULT_BUFFER_RATIO,
        page_size: int = 100,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._buffer_ratio = buffer_ratio
        self._page_size = page_size
        # Allow time injection for deterministic period rollover tests.
        self._time_provider = time_provider or utc_now

    def current_period(self, granularity: str = PERIOD_MONTH) -> str:
        return current_period(granularity, self._time_provider())

    async def record_usage(
        self,
        *,
        tenant_id: str,
        service: str,
        action: str,
        idempotency_key: str,
        quantity: int = 1,
        api_key_id: str | None = None,
        user_id: str | None = None,
    ) -> UsageEventRecord:
        # Retries with the same key return the stored event instead of double counting.
        if quantity < 0:
            raise ValueError("quantity must be non-negative")
        now = self._time_provider()
        async with self._session_factory() as session:
            existing = await usage_repo.get_by_idempotency_key(session, idempotency_key)
            if existing is not None:
                return usage_event_to_record(existing)

            row = UsageEvent(
                id=generate_id("ue"),
                tenant_id=tenant_id,
                api_key_id=api_key_id,
                user_id=user_id,
                service=service,
                action=action,
                quantity=quantity,
                period=format_period(now, PERIOD_MONTH),
                idempotency_key=idempotency_key,
                created_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent writer stored the same key first; theirs is the ledger entry.
                await session.rollback()
                existing = await usage_repo.get_by_idempotency_key(session, idempotency_key)
                if existing is None:
                    raise
                logger.info(
                    "usage_event_duplicate tenant_id=%s idempotency_key=%s",
                    tenant_id,
                    idempotency_key,
                )
                return usage_event_to_record(existing)
            return usage_event_to_record(row)

    async def get_usage(self, tenant_id: str, period: str | None = None) -> UsageSummary:
        target = period or self.current_period()
        async with self._session_factory() as session:
            total, count = await usage_repo.sum_tenant_usage(session, tenant_id, **_period_filter(target))
        return UsageSummary(tenant_id=tenant_id, period=target, total_quantity=total, event_count=count)

    async def get_api_key_usage(self, api_key_id: str, period: str | None = None) -> UsageSummary:
        target = period or self.current_period()
        async with self._session_factory() as session:
            row = await api_keys_repo.get_api_key(session, api_key_id)
            total, count = await usage_repo.sum_api_key_usage(
                session, api_key_id, **_period_filter(target)
            )
        return UsageSummary(
            tenant_id=row.tenant_id if row else "",
            period=target,
            total_quantity=total,
            event_count=count,
        )

    async def list_usage_events(
        self,
        tenant_id: str,
        *,
        period: str | None = None,
        service: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UsageEventRecord]:
        async with self._session_factory() as session:
            rows = await usage_repo.list_events(
                session,
                tenant_id,
                **(_period_filter(period) if period else {}),
                service=service,
                limit=limit or self._page_size,
                offset=max(0, offset),
            )
            return [usage_event_to_record(row) for row in rows]

    async def _api_key_used(self, session: AsyncSession, api_key: ApiKey, now: datetime) -> int:
        granularity = api_key.quota_period if api_key.quota_period in PERIOD_GRANULARITIES else PERIOD_MONTH
        total, _ = await usage_repo.sum_api_key_usage(
            session, api_key.id, **_period_filter(format_period(now, granularity))
        )
        return total

    async def check_quota(
        self,
        tenant_id: str,
        quantity: int = 1,
        api_key_id: str | None = None,
    ) -> QuotaCheckResult:
        now = self._time_provider()
        async with self._session_factory() as session:
            if api_key_id:
                api_key = await api_keys_repo.get_api_key(session, api_key_id)
                if api_key is None:
                    return QuotaCheckResult(
                        allowed=False, remaining=0, level=LEVEL_API_KEY, message="API key not found"
                    )
                # A key-level limit is authoritative; the tenant limit is not consulted.
                if api_key.quota_limit is not None:
                    used = await self._api_key_used(session, api_key, now)
                    return evaluate_limit(
                        LEVEL_API_KEY, api_key.quota_limit, used, quantity, self._buffer_ratio
                    )

            exists, limit = await tenants_repo.get_global_quota_limit(session, tenant_id)
            if not exists:
                return QuotaCheckResult(
                    allowed=False, remaining=0, level=LEVEL_TENANT, message="Tenant not found"
                )
            if limit is None:
                return _unlimited()
            used, _ = await usage_repo.sum_tenant_usage(
                session, tenant_id, period=format_period(now, PERIOD_MONTH)
            )
        return evaluate_limit(LEVEL_TENANT, limit, used, quantity, self._buffer_ratio)

    async def check_and_record_usage(
        self,
        *,
        tenant_id: str,
        service: str,
        action: str,
        idempotency_key: str,
        quantity: int = 1,
        api_key_id: str | None = None,
        user_id: str | None = None,
    ) -> QuotaCheckResult:
        """Check, record, then re-check to catch concurrent over-admission.

        The re-check runs with quantity 0, so it is denied exactly when
        ``used > effective_limit``. That comparison is made before
        ``remaining`` is clamped, so an overage is detected even though the
        reported remaining never goes below zero. The recorded event is kept
        either way; only the returned ``allowed`` flag changes.
        """
        check = await self.check_quota(tenant_id, quantity, api_key_id)
        if not check.allowed:
            logger.info(
                "quota_denied tenant_id=%s level=%s used=%s limit=%s",
                tenant_id,
                check.level,
                check.used,
                check.limit,
            )
            return check

        await self.record_usage(
            tenant_id=tenant_id,
            service=service,
            action=action,
            idempotency_key=idempotency_key,
            quantity=quantity,
            api_key_id=api_key_id,
            user_id=user_id,
        )

        post = await self.check_quota(tenant_id, 0, api_key_id)
        if not post.allowed:
            logger.warning(
                "quota_race_detected tenant_id=%s level=%s used=%s limit=%s",
                tenant_id,
                post.level,
                post.used,
                post.limit,
            )
            return QuotaCheckResult(
                allowed=False,
                remaining=0,
                level=post.level,
                limit=post.limit,
                used=post.used,
                message=RACE_MESSAGE,
            )
        return replace(check, remaining=post.remaining, used=post.used)
