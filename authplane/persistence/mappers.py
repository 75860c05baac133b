from __future__ import annotations

import json
import logging
from typing import Iterable

from authplane.domain.models import (
    AdminOverride,
    ApiKey,
    AuthSession,
    FeatureFlag,
    Subscription,
    SubscriptionItem,
    Tenant,
    TenantUser,
    UsageEvent,
)
from authplane.domain.records import (
    ApiKeyRecord,
    FeatureFlagRecord,
    MembershipRecord,
    OverrideRecord,
    SessionRecord,
    SubscriptionItemRecord,
    SubscriptionRecord,
    TenantRecord,
    UsageEventRecord,
)


logger = logging.getLogger(__name__)


def encode_string_list(values: Iterable[str] | None) -> str:
    # Keep list columns as JSON text so both PostgreSQL and SQLite store them identically.
    return json.dumps(list(values or []))


def decode_string_list(raw: str | None) -> tuple[str, ...]:
    # Treat malformed or non-list payloads as empty rather than leaking shape errors.
    if not raw:
        return ()
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("string_list_decode_failed raw=%r", raw[:64])
        return ()
    if not isinstance(decoded, list):
        return ()
    return tuple(str(item) for item in decoded if isinstance(item, str))


def tenant_to_record(row: Tenant) -> TenantRecord:
    return TenantRecord(
        id=row.id,
        name=row.name,
        global_quota_limit=row.global_quota_limit,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def membership_to_record(row: TenantUser) -> MembershipRecord:
    return MembershipRecord(
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        role=row.role,
        created_at=row.created_at,
    )


def session_to_record(row: AuthSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        service=row.service,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )


def api_key_to_record(row: ApiKey) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        key_prefix=row.key_prefix,
        scopes=decode_string_list(row.scopes),
        quota_limit=row.quota_limit,
        quota_period=row.quota_period or "month",
        status=row.status,
        created_by=row.created_by,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )


def subscription_to_record(row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        tier=row.tier,
        status=row.status,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        canceled_at=row.canceled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def subscription_item_to_record(row: SubscriptionItem) -> SubscriptionItemRecord:
    return SubscriptionItemRecord(
        subscription_id=row.subscription_id,
        service=row.service,
        enabled=bool(row.enabled),
        updated_at=row.updated_at,
    )


def usage_event_to_record(row: UsageEvent) -> UsageEventRecord:
    return UsageEventRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        api_key_id=row.api_key_id,
        user_id=row.user_id,
        service=row.service,
        action=row.action,
        quantity=int(row.quantity),
        period=row.period,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
    )


def feature_flag_to_record(row: FeatureFlag) -> FeatureFlagRecord:
    return FeatureFlagRecord(
        id=row.id,
        name=row.name,
        description=row.description,
        enabled_tiers=decode_string_list(row.enabled_tiers),
        enabled_tenants=decode_string_list(row.enabled_tenants),
        rollout_percentage=int(row.rollout_percentage or 0),
        active=bool(row.active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def override_to_record(row: AdminOverride) -> OverrideRecord:
    return OverrideRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        type=row.type,
        value=row.value,
        reason=row.reason,
        granted_by=row.granted_by,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
