from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLES = (ROLE_MEMBER, ROLE_ADMIN, ROLE_OWNER)

TIER_FREE = "free"
TIER_PRO = "pro"
TIER_ENTERPRISE = "enterprise"
# Ordered lowest to highest rank.
TIERS = (TIER_FREE, TIER_PRO, TIER_ENTERPRISE)

STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"
SUBSCRIPTION_STATUSES = (STATUS_ACTIVE, STATUS_CANCELED, STATUS_PAST_DUE)

OVERRIDE_QUOTA_BOOST = "quota_boost"
OVERRIDE_TIER_UPGRADE = "tier_upgrade"
OVERRIDE_FEATURE_GRANT = "feature_grant"
OVERRIDE_TYPES = (OVERRIDE_QUOTA_BOOST, OVERRIDE_TIER_UPGRADE, OVERRIDE_FEATURE_GRANT)

API_KEY_ACTIVE = "active"
API_KEY_REVOKED = "revoked"

WILDCARD_SERVICE = "*"


def role_rank(role: str) -> int:
    # Unknown roles rank below member so they never satisfy a requirement.
    try:
        return ROLES.index(role)
    except ValueError:
        return -1


def tier_rank(tier: str | None) -> int:
    if tier is None:
        return -1
    try:
        return TIERS.index(tier)
    except ValueError:
        return -1


@dataclass(frozen=True)
class TenantRecord:
    id: str
    name: str
    global_quota_limit: int | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MembershipRecord:
    tenant_id: str
    user_id: str
    role: str
    created_at: datetime


@dataclass(frozen=True)
class SessionRecord:
    id: str
    user_id: str
    tenant_id: str
    service: str
    expires_at: datetime
    revoked_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    tenant_id: str
    name: str | None
    key_prefix: str
    scopes: tuple[str, ...]
    quota_limit: int | None
    quota_period: str
    status: str
    created_by: str | None
    expires_at: datetime | None
    last_used_at: datetime | None
    revoked_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    tenant_id: str
    tier: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    canceled_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SubscriptionItemRecord:
    subscription_id: str
    service: str
    enabled: bool
    updated_at: datetime


@dataclass(frozen=True)
class UsageEventRecord:
    id: str
    tenant_id: str
    api_key_id: str | None
    user_id: str | None
    service: str
    action: str
    quantity: int
    period: str
    idempotency_key: str
    created_at: datetime


@dataclass(frozen=True)
class FeatureFlagRecord:
    id: str
    name: str
    description: str | None
    enabled_tiers: tuple[str, ...]
    enabled_tenants: tuple[str, ...]
    rollout_percentage: int
    active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OverrideRecord:
    id: str
    tenant_id: str
    type: str
    value: str
    reason: str | None
    granted_by: str | None
    expires_at: datetime | None
    created_at: datetime
