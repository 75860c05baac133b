from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
from typing import Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authplane.core.clock import PERIOD_GRANULARITIES, PERIOD_MONTH, is_expired, utc_now
from authplane.core.crypto import generate_random_token, hash_sha256
from authplane.core.errors import ApiKeyNotFoundError, TenantNotFoundError
from authplane.core.ids import generate_id
from authplane.domain.models import ApiKey
from authplane.domain.records import API_KEY_ACTIVE, API_KEY_REVOKED, ApiKeyRecord
from authplane.persistence.mappers import api_key_to_record, encode_string_list
from authplane.persistence.repos import api_keys as api_keys_repo
from authplane.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "apk_live_"
# Random characters kept in the display prefix for operator identification.
DISPLAY_CHARS = 8


@dataclass(frozen=True)
class ApiKeyCreateResult:
    api_key: ApiKeyRecord
    # Returned exactly once; only its hash is stored.
    plaintext: str


@dataclass(frozen=True)
class ApiKeyValidation:
    valid: bool
    api_key: ApiKeyRecord | None = None
    error: str | None = None


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX, secret_length: int = 32) -> tuple[str, str, str]:
    # Return (plaintext, key_hash, display_prefix).
    secret = generate_random_token(secret_length)
    plaintext = f"{prefix}{secret}"
    return plaintext, hash_sha256(plaintext), f"{prefix}{secret[:DISPLAY_CHARS]}"


class ApiKeyService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        secret_length: int = 32,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._key_prefix = key_prefix
        self._secret_length = secret_length
        self._time_provider = time_provider or utc_now

    async def create_api_key(
        self,
        *,
        tenant_id: str,
        created_by: str | None = None,
        name: str | None = None,
        scopes: Iterable[str] | None = None,
        quota_limit: int | None = None,
        quota_period: str = PERIOD_MONTH,
        expires_in_seconds: int | None = None,
    ) -> ApiKeyCreateResult:
        if quota_period not in PERIOD_GRANULARITIES:
            raise ValueError(f"Unsupported quota period: {quota_period}")
        if quota_limit is not None and quota_limit < 0:
            raise ValueError("quota_limit must be non-negative")
        now = self._time_provider()
        plaintext, key_hash, display_prefix = generate_api_key(self._key_prefix, self._secret_length)
        row = ApiKey(
            id=generate_id("ak"),
            tenant_id=tenant_id,
            name=name,
            key_hash=key_hash,
            key_prefix=display_prefix,
            scopes=encode_string_list(scopes),
            quota_limit=quota_limit,
            quota_period=quota_period,
            status=API_KEY_ACTIVE,
            created_by=created_by,
            expires_at=now + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None,
            created_at=now,
        )
        async with self._session_factory() as session:
            if await tenants_repo.get_tenant(session, tenant_id) is None:
                raise TenantNotFoundError(tenant_id)
            session.add(row)
            await session.commit()
            record = api_key_to_record(row)
        logger.info("api_key_created api_key_id=%s tenant_id=%s prefix=%s", record.id, tenant_id, display_prefix)
        return ApiKeyCreateResult(api_key=record, plaintext=plaintext)

    async def get_api_key(self, api_key_id: str) -> ApiKeyRecord | None:
        async with self._session_factory() as session:
            row = await api_keys_repo.get_api_key(session, api_key_id)
            return api_key_to_record(row) if row else None

    async def list_api_keys(self, tenant_id: str, *, include_revoked: bool = True) -> list[ApiKeyRecord]:
        async with self._session_factory() as session:
            rows = await api_keys_repo.list_api_keys(session, tenant_id, include_revoked=include_revoked)
            return [api_key_to_record(row) for row in rows]

    async def validate_api_key(self, plaintext: str) -> ApiKeyValidation:
        # Reject malformed keys before touching the database.
        if not plaintext or not plaintext.startswith(self._key_prefix):
            return ApiKeyValidation(valid=False, error="Invalid API key format")
        now = self._time_provider()
        async with self._session_factory() as session:
            row = await api_keys_repo.get_api_key_by_hash(session, hash_sha256(plaintext))
            if row is None:
                return ApiKeyValidation(valid=False, error="Invalid API key")
            if row.status == API_KEY_REVOKED or row.revoked_at is not None:
                return ApiKeyValidation(valid=False, error="API key has been revoked")
            if is_expired(row.expires_at, now):
                return ApiKeyValidation(valid=False, error="API key has expired")
            await api_keys_repo.touch_last_used(session, row.id, now)
            await session.commit()
            return ApiKeyValidation(valid=True, api_key=replace(api_key_to_record(row), last_used_at=now))

    async def revoke_api_key(self, api_key_id: str) -> ApiKeyRecord:
        # Revocation is terminal; revoking twice keeps the first timestamp.
        async with self._session_factory() as session:
            row = await api_keys_repo.get_api_key(session, api_key_id)
            if row is None:
                raise ApiKeyNotFoundError(api_key_id)
            if row.revoked_at is None:
                row.status = API_KEY_REVOKED
                row.revoked_at = self._time_provider()
                await session.commit()
                logger.info("api_key_revoked api_key_id=%s tenant_id=%s", api_key_id, row.tenant_id)
            return api_key_to_record(row)
