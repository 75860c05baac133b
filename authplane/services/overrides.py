from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import utc_now
from authplane.core.errors import OverrideNotFoundError
from authplane.core.ids import generate_id
from authplane.domain.models import AdminOverride
from authplane.domain.records import (
    OVERRIDE_FEATURE_GRANT,
    OVERRIDE_QUOTA_BOOST,
    OVERRIDE_TIER_UPGRADE,
    OVERRIDE_TYPES,
    OverrideRecord,
    tier_rank,
)
from authplane.persistence.mappers import override_to_record
from authplane.persistence.repos import overrides as overrides_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedOverrides:
    # Merged effect of every active override for one tenant.
    quota_boost: int = 0
    tier_upgrade: str | None = None
    feature_grants: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "quota_boost": self.quota_boost,
            "tier_upgrade": self.tier_upgrade,
            "feature_grants": list(self.feature_grants),
        }


EMPTY_OVERRIDES = ParsedOverrides()


def _parse_boost(value: str) -> int | None:
    try:
        return int(value.strip())
    except (ValueError, AttributeError):
        return None


def fold_overrides(overrides: list[OverrideRecord]) -> ParsedOverrides:
    """Fold active overrides into one effect.

    Boosts are summed, the highest-ranked known tier wins, and feature grants
    are deduplicated in first-seen order. Unparseable boosts and unknown tier
    names are skipped.
    """
    boost = 0
    tier: str | None = None
    grants: list[str] = []
    for override in overrides:
        if override.type == OVERRIDE_QUOTA_BOOST:
            parsed = _parse_boost(override.value)
            if parsed is None:
                logger.warning("override_boost_unparseable override_id=%s", override.id)
                continue
            boost += parsed
        elif override.type == OVERRIDE_TIER_UPGRADE:
            rank = tier_rank(override.value)
            if rank >= 0 and rank > tier_rank(tier):
                tier = override.value
        elif override.type == OVERRIDE_FEATURE_GRANT:
            if override.value not in grants:
                grants.append(override.value)
    return ParsedOverrides(quota_boost=boost, tier_upgrade=tier, feature_grants=tuple(grants))


class OverrideEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or utc_now

    async def get_active_overrides(self, tenant_id: str) -> list[OverrideRecord]:
        now = self._time_provider()
        async with self._session_factory() as session:
            rows = await overrides_repo.list_active_overrides(session, tenant_id, now)
            return [override_to_record(row) for row in rows]

    async def get_overrides_by_type(self, tenant_id: str, override_type: str) -> list[OverrideRecord]:
        now = self._time_provider()
        async with self._session_factory() as session:
            rows = await overrides_repo.list_active_overrides(
                session, tenant_id, now, override_type=override_type
            )
            return [override_to_record(row) for row in rows]

    async def get_parsed_overrides(self, tenant_id: str) -> ParsedOverrides:
        return fold_overrides(await self.get_active_overrides(tenant_id))

    async def has_feature_grant(self, tenant_id: str, feature_name: str) -> bool:
        grants = await self.get_overrides_by_type(tenant_id, OVERRIDE_FEATURE_GRANT)
        return any(override.value == feature_name for override in grants)

    async def get_quota_boost(self, tenant_id: str) -> int:
        return fold_overrides(await self.get_overrides_by_type(tenant_id, OVERRIDE_QUOTA_BOOST)).quota_boost

    async def get_tier_upgrade(self, tenant_id: str) -> str | None:
        return fold_overrides(await self.get_overrides_by_type(tenant_id, OVERRIDE_TIER_UPGRADE)).tier_upgrade

    async def create_override(
        self,
        *,
        tenant_id: str,
        override_type: str,
        value: str,
        reason: str | None = None,
        granted_by: str | None = None,
        expires_in_seconds: int | None = None,
    ) -> OverrideRecord:
        if override_type not in OVERRIDE_TYPES:
            raise ValueError(f"Unsupported override type: {override_type}")
        now = self._time_provider()
        expires_at = now + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None
        row = AdminOverride(
            id=generate_id("ov"),
            tenant_id=tenant_id,
            type=override_type,
            value=value,
            reason=reason,
            granted_by=granted_by,
            expires_at=expires_at,
            created_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            record = override_to_record(row)
        logger.info(
            "override_created override_id=%s tenant_id=%s type=%s granted_by=%s",
            record.id,
            tenant_id,
            override_type,
            granted_by,
        )
        return record

    async def get_override(self, override_id: str) -> OverrideRecord | None:
        async with self._session_factory() as session:
            row = await overrides_repo.get_override(session, override_id)
            return override_to_record(row) if row else None

    async def list_overrides(self, tenant_id: str, *, include_expired: bool = True) -> list[OverrideRecord]:
        async with self._session_factory() as session:
            rows = await overrides_repo.list_overrides(
                session,
                tenant_id=tenant_id,
                now=self._time_provider(),
                include_expired=include_expired,
            )
            return [override_to_record(row) for row in rows]

    async def delete_override(self, override_id: str) -> None:
        async with self._session_factory() as session:
            deleted = await overrides_repo.delete_override(session, override_id)
            if not deleted:
                raise OverrideNotFoundError(override_id)
            await session.commit()
        logger.info("override_deleted override_id=%s", override_id)

    async def revoke_all_overrides(self, tenant_id: str) -> int:
        async with self._session_factory() as session:
            deleted = await overrides_repo.delete_overrides_for_tenant(session, tenant_id)
            await session.commit()
        logger.info("overrides_revoked tenant_id=%s count=%s", tenant_id, deleted)
        return deleted

    async def expire_override(self, override_id: str) -> OverrideRecord:
        # Set expiry to now so reads stop seeing it; the row stays for audit until cleanup.
        now = self._time_provider()
        async with self._session_factory() as session:
            row = await overrides_repo.get_override(session, override_id)
            if row is None:
                raise OverrideNotFoundError(override_id)
            row.expires_at = now
            await session.commit()
            return override_to_record(row)

    async def extend_override(self, override_id: str, additional_seconds: int) -> OverrideRecord:
        # A non-expiring override becomes one that expires relative to now.
        now = self._time_provider()
        async with self._session_factory() as session:
            row = await overrides_repo.get_override(session, override_id)
            if row is None:
                raise OverrideNotFoundError(override_id)
            base = row.expires_at or now
            row.expires_at = base + timedelta(seconds=additional_seconds)
            await session.commit()
            return override_to_record(row)

    async def cleanup_expired_overrides(self) -> int:
        now = self._time_provider()
        async with self._session_factory() as session:
            deleted = await overrides_repo.delete_expired_overrides(session, now)
            await session.commit()
        logger.info("overrides_cleanup_completed deleted=%s", deleted)
        return deleted
