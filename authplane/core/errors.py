from __future__ import annotations


class AuthPlaneError(Exception):
    """Base error for authplane."""


class NotFoundError(AuthPlaneError):
    """A row targeted by an administrative operation does not exist."""


class TenantNotFoundError(NotFoundError):
    """Tenant does not exist."""


class MembershipNotFoundError(NotFoundError):
    """User is not a member of the tenant."""


class SubscriptionNotFoundError(NotFoundError):
    """Tenant has no subscription."""


class FeatureFlagNotFoundError(NotFoundError):
    """Feature flag does not exist."""


class OverrideNotFoundError(NotFoundError):
    """Admin override does not exist."""


class ApiKeyNotFoundError(NotFoundError):
    """API key does not exist."""


class ConflictError(AuthPlaneError):
    """Write would violate a uniqueness rule (tenant name, flag name, subscription)."""


class LastOwnerError(AuthPlaneError):
    """Removing or demoting the user would leave the tenant without an owner."""


class InvalidTierChangeError(AuthPlaneError):
    """Requested tier change does not move in the requested direction."""


class CacheUnavailableError(AuthPlaneError):
    """Cache backend could not be reached."""
