from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import utc_now
from authplane.domain.records import (
    STATUS_ACTIVE,
    WILDCARD_SERVICE,
    MembershipRecord,
    SessionRecord,
    role_rank,
    tier_rank,
)
from authplane.persistence.mappers import membership_to_record, session_to_record
from authplane.persistence.repos import sessions as sessions_repo
from authplane.persistence.repos import tenants as tenants_repo
from authplane.services.cache import (
    DEFAULT_CACHE_TTL_S,
    CacheKeyPrefix,
    CachedResult,
    DecisionCache,
    build_cache_key,
    with_cache_fallback,
)
from authplane.services.feature_flags import FeatureFlagEngine
from authplane.services.overrides import OverrideEngine, ParsedOverrides
from authplane.services.quota import QuotaCheckResult, QuotaEngine, apply_quota_boost
from authplane.services.subscriptions import SubscriptionService


logger = logging.getLogger(__name__)

RESOURCE_PLACEHOLDER = "_"


class DenyReason:
    SESSION_INVALID = "session is invalid or expired"
    SESSION_REVOKED = "session has been revoked"
    USER_NOT_IN_TENANT = "user is not a member of this tenant"
    SUBSCRIPTION_NOT_FOUND = "no subscription found for tenant"
    SUBSCRIPTION_INACTIVE = "subscription is not active"
    SERVICE_DISABLED = "service is not enabled for this subscription"
    FEATURE_DISABLED = "required feature is not enabled"
    QUOTA_EXCEEDED = "quota limit exceeded"
    INSUFFICIENT_ROLE = "insufficient role permissions"
    INTERNAL_ERROR = "internal authorization error"


AUTHORIZED = "authorized"


@dataclass(frozen=True)
class AuthorizeContext:
    user_id: str
    tenant_id: str
    service: str
    action: str
    session_id: str | None = None
    resource: str | None = None
    api_key_id: str | None = None
    required_feature: str | None = None
    required_role: str | None = None
    quantity: int = 1


@dataclass
class AuthorizeChecks:
    # True once a stage has passed; stages skipped for lack of a requirement count as passed.
    session: bool = False
    membership: bool = False
    override: bool = False
    subscription: bool = False
    service_enabled: bool = False
    feature: bool = False
    quota: bool = False
    rbac: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "session": self.session,
            "membership": self.membership,
            "override": self.override,
            "subscription": self.subscription,
            "service_enabled": self.service_enabled,
            "feature": self.feature,
            "quota": self.quota,
            "rbac": self.rbac,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AuthorizeChecks":
        return cls(**{name: bool(payload.get(name, False)) for name in cls().to_dict()})


@dataclass
class AuthorizeMetadata:
    checks: AuthorizeChecks = field(default_factory=AuthorizeChecks)
    role: str | None = None
    tier: str | None = None
    quota: QuotaCheckResult | None = None
    overrides: ParsedOverrides | None = None
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checks": self.checks.to_dict(),
            "role": self.role,
            "tier": self.tier,
            "quota": self.quota.to_dict() if self.quota else None,
            "overrides": self.overrides.to_dict() if self.overrides else None,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AuthorizeMetadata":
        quota = payload.get("quota")
        overrides = payload.get("overrides")
        return cls(
            checks=AuthorizeChecks.from_dict(payload.get("checks") or {}),
            role=payload.get("role"),
            tier=payload.get("tier"),
            quota=QuotaCheckResult.from_dict(quota) if quota else None,
            overrides=ParsedOverrides(
                quota_boost=int(overrides.get("quota_boost") or 0),
                tier_upgrade=overrides.get("tier_upgrade"),
                feature_grants=tuple(overrides.get("feature_grants") or ()),
            )
            if overrides
            else None,
            degraded=bool(payload.get("degraded", False)),
        )


@dataclass(frozen=True)
class AuthorizeResult:
    allowed: bool
    reason: str
    metadata: AuthorizeMetadata

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "metadata": self.metadata.to_dict()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AuthorizeResult":
        return cls(
            allowed=bool(payload["allowed"]),
            reason=str(payload["reason"]),
            metadata=AuthorizeMetadata.from_dict(payload.get("metadata") or {}),
        )


def role_allows(role: str | None, required_role: str) -> bool:
    # member=0 < admin=1 < owner=2; unknown roles never satisfy a requirement.
    if role is None:
        return False
    return role_rank(role) >= role_rank(required_role) >= 0


def build_decision_key(ctx: AuthorizeContext) -> str:
    return build_cache_key(
        CacheKeyPrefix.AUTH_DECISION,
        ctx.tenant_id,
        ctx.user_id,
        ctx.service,
        ctx.action,
        ctx.resource or RESOURCE_PLACEHOLDER,
    )


def context_from_claims(
    claims: Mapping[str, Any],
    *,
    service: str,
    action: str,
    user_id: str | None = None,
    tenant_id: str | None = None,
    session_id: str | None = None,
    api_key_id: str | None = None,
    resource: str | None = None,
    required_feature: str | None = None,
    required_role: str | None = None,
    quantity: int = 1,
) -> AuthorizeContext:
    """Build a context from already-verified token claims.

    Session tokens carry ``sub``, ``tenant_id`` and ``session_id``; API-key
    tokens carry ``sub`` and ``api_key_id``. Explicit arguments win over
    claim values.
    """
    resolved_user = user_id or claims.get("sub")
    resolved_tenant = tenant_id or claims.get("tenant_id")
    if not resolved_user:
        raise ValueError("claims are missing a subject")
    if not resolved_tenant:
        raise ValueError("tenant_id is required when the token does not carry one")
    return AuthorizeContext(
        user_id=str(resolved_user),
        tenant_id=str(resolved_tenant),
        service=service,
        action=action,
        session_id=session_id or claims.get("session_id"),
        resource=resource,
        api_key_id=api_key_id or claims.get("api_key_id"),
        required_feature=required_feature,
        required_role=required_role,
        quantity=quantity,
    )


def _session_to_cache(record: SessionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "tenant_id": record.tenant_id,
        "service": record.service,
        "expires_at": record.expires_at.isoformat(),
        "revoked_at": record.revoked_at.isoformat() if record.revoked_at else None,
        "created_at": record.created_at.isoformat(),
    }


def _session_from_cache(payload: Mapping[str, Any]) -> SessionRecord:
    revoked_at = payload.get("revoked_at")
    return SessionRecord(
        id=payload["id"],
        user_id=payload["user_id"],
        tenant_id=payload["tenant_id"],
        service=payload["service"],
        expires_at=datetime.fromisoformat(payload["expires_at"]),
        revoked_at=datetime.fromisoformat(revoked_at) if revoked_at else None,
        created_at=datetime.fromisoformat(payload["created_at"]),
    )


def _membership_to_cache(record: MembershipRecord) -> dict[str, Any]:
    return {
        "tenant_id": record.tenant_id,
        "user_id": record.user_id,
        "role": record.role,
        "created_at": record.created_at.isoformat(),
    }


def _membership_from_cache(payload: Mapping[str, Any]) -> MembershipRecord:
    return MembershipRecord(
        tenant_id=payload["tenant_id"],
        user_id=payload["user_id"],
        role=payload["role"],
        created_at=datetime.fromisoformat(payload["created_at"]),
    )


class _Denied(Exception):
    # Internal short-circuit carrying a denial reason out of the pipeline.
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AuthorizationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        quota: QuotaEngine,
        subscriptions: SubscriptionService,
        feature_flags: FeatureFlagEngine,
        overrides: OverrideEngine,
        cache: DecisionCache | None = None,
        cache_ttl_s: int = DEFAULT_CACHE_TTL_S,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._quota = quota
        self._subscriptions = subscriptions
        self._feature_flags = feature_flags
        self._overrides = overrides
        self._cache = cache
        self._cache_ttl_s = cache_ttl_s
        self._time_provider = time_provider or utc_now

    async def authorize(self, ctx: AuthorizeContext) -> AuthorizeResult:
        key = build_decision_key(ctx)
        cached = await self._read_decision(key)
        if cached is not None:
            # Cached decisions were not computed for this request.
            return replace(cached, metadata=replace(cached.metadata, degraded=True))

        result = await self._evaluate(ctx)
        if result.reason != DenyReason.INTERNAL_ERROR and not result.metadata.degraded:
            await self._write_decision(key, result)
        return result

    async def invalidate_tenant(self, tenant_id: str) -> None:
        if self._cache is None:
            return
        prefix = build_cache_key(CacheKeyPrefix.AUTH_DECISION, tenant_id, "")
        try:
            await self._cache.delete_by_prefix(prefix)
        except Exception as exc:  # noqa: BLE001 - invalidation is best-effort; entries expire by TTL
            logger.warning("decision_cache_invalidate_failed tenant_id=%s", tenant_id, exc_info=exc)

    async def _read_decision(self, key: str) -> AuthorizeResult | None:
        if self._cache is None:
            return None
        try:
            entry = await self._cache.get(key)
        except Exception as exc:  # noqa: BLE001 - a cache outage must not block decisions
            logger.warning("decision_cache_read_failed key=%s", key, exc_info=exc)
            return None
        if entry is None:
            return None
        try:
            return AuthorizeResult.from_dict(entry.data)
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("decision_cache_entry_invalid key=%s", key)
            return None

    async def _write_decision(self, key: str, result: AuthorizeResult) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, result.to_dict(), self._cache_ttl_s)
        except Exception as exc:  # noqa: BLE001 - a cache outage must not block decisions
            logger.warning("decision_cache_write_failed key=%s", key, exc_info=exc)

    async def _evaluate(self, ctx: AuthorizeContext) -> AuthorizeResult:
        metadata = AuthorizeMetadata()
        checks = metadata.checks
        try:
            if ctx.session_id:
                await self._check_session(ctx, metadata)
            checks.session = True

            membership = await self._load_membership(ctx, metadata)
            if membership is None:
                raise _Denied(DenyReason.USER_NOT_IN_TENANT)
            metadata.role = membership.role
            checks.membership = True

            overrides = await self._load_overrides(ctx.tenant_id)
            if overrides is not None:
                metadata.overrides = overrides
                checks.override = True

            subscription = await self._subscriptions.get_subscription(ctx.tenant_id)
            if subscription is None:
                raise _Denied(DenyReason.SUBSCRIPTION_NOT_FOUND)
            if subscription.status != STATUS_ACTIVE:
                raise _Denied(DenyReason.SUBSCRIPTION_INACTIVE)
            tier = subscription.tier
            upgrade = overrides.tier_upgrade if overrides else None
            if upgrade is not None and tier_rank(upgrade) > tier_rank(tier):
                tier = upgrade
            metadata.tier = tier
            checks.subscription = True

            if not await self._subscriptions.is_service_enabled(subscription.id, ctx.service):
                raise _Denied(DenyReason.SERVICE_DISABLED)
            checks.service_enabled = True

            if ctx.required_feature:
                granted = overrides is not None and ctx.required_feature in overrides.feature_grants
                if not granted and not await self._feature_flags.feature_enabled(
                    ctx.required_feature, ctx.tenant_id, tier
                ):
                    raise _Denied(DenyReason.FEATURE_DISABLED)
            checks.feature = True

            quota = await self._quota.check_quota(ctx.tenant_id, ctx.quantity, ctx.api_key_id)
            if overrides is not None:
                quota = apply_quota_boost(quota, overrides.quota_boost, ctx.quantity)
            metadata.quota = quota
            if not quota.allowed:
                raise _Denied(DenyReason.QUOTA_EXCEEDED)
            checks.quota = True

            if ctx.required_role and not role_allows(metadata.role, ctx.required_role):
                raise _Denied(DenyReason.INSUFFICIENT_ROLE)
            checks.rbac = True
        except _Denied as denied:
            logger.info(
                "authorization_denied tenant_id=%s user_id=%s service=%s action=%s reason=%s",
                ctx.tenant_id,
                ctx.user_id,
                ctx.service,
                ctx.action,
                denied.reason,
            )
            return AuthorizeResult(allowed=False, reason=denied.reason, metadata=metadata)
        except Exception:
            # Fail closed on any unexpected error.
            logger.exception(
                "authorization_internal_error tenant_id=%s user_id=%s service=%s action=%s",
                ctx.tenant_id,
                ctx.user_id,
                ctx.service,
                ctx.action,
            )
            return AuthorizeResult(allowed=False, reason=DenyReason.INTERNAL_ERROR, metadata=metadata)

        return AuthorizeResult(allowed=True, reason=AUTHORIZED, metadata=metadata)

    async def _check_session(self, ctx: AuthorizeContext, metadata: AuthorizeMetadata) -> None:
        session_id = ctx.session_id or ""

        async def fetch() -> SessionRecord | None:
            async with self._session_factory() as session:
                row = await sessions_repo.get_session(session, session_id)
                return session_to_record(row) if row else None

        loaded = await self._read_through(
            build_cache_key(CacheKeyPrefix.SESSION, session_id),
            fetch,
            encode=_session_to_cache,
            decode=_session_from_cache,
        )
        if loaded.degraded:
            metadata.degraded = True
        record = loaded.data
        if record is None:
            raise _Denied(DenyReason.SESSION_INVALID)
        if record.revoked_at is not None:
            raise _Denied(DenyReason.SESSION_REVOKED)
        if record.expires_at < self._time_provider():
            raise _Denied(DenyReason.SESSION_INVALID)
        if record.user_id != ctx.user_id:
            raise _Denied(DenyReason.SESSION_INVALID)
        if record.service != ctx.service and record.service != WILDCARD_SERVICE:
            raise _Denied(DenyReason.SESSION_INVALID)

    async def _load_membership(
        self,
        ctx: AuthorizeContext,
        metadata: AuthorizeMetadata,
    ) -> MembershipRecord | None:
        async def fetch() -> MembershipRecord | None:
            async with self._session_factory() as session:
                row = await tenants_repo.get_membership(session, ctx.tenant_id, ctx.user_id)
                return membership_to_record(row) if row else None

        loaded = await self._read_through(
            build_cache_key(CacheKeyPrefix.MEMBERSHIP, ctx.tenant_id, ctx.user_id),
            fetch,
            encode=_membership_to_cache,
            decode=_membership_from_cache,
        )
        if loaded.degraded:
            metadata.degraded = True
        return loaded.data

    async def _read_through(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        *,
        encode: Callable[[Any], Any],
        decode: Callable[[Any], Any],
    ) -> CachedResult[Any]:
        # Without a cache, store failures propagate and fail the decision closed.
        if self._cache is None:
            return CachedResult(data=await fetch(), degraded=False)
        return await with_cache_fallback(
            self._cache, key, fetch, self._cache_ttl_s, encode=encode, decode=decode
        )

    async def _load_overrides(self, tenant_id: str) -> ParsedOverrides | None:
        try:
            return await self._overrides.get_parsed_overrides(tenant_id)
        except Exception as exc:  # noqa: BLE001 - overrides are optional to the pipeline
            logger.warning("override_fetch_failed tenant_id=%s", tenant_id, exc_info=exc)
            return None
