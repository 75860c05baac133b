from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authplane.core.clock import utc_now
from authplane.core.ids import generate_id
from authplane.domain.models import AuthSession


async def get_session(session: AsyncSession, session_id: str) -> AuthSession | None:
    result = await session.execute(select(AuthSession).where(AuthSession.id == session_id))
    return result.scalar_one_or_none()


async def create_session(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    service: str,
    expires_at: datetime,
    session_id: str | None = None,
) -> AuthSession:
    # Login flows own credential checks; this only persists the resulting session row.
    row = AuthSession(
        id=session_id or generate_id("ses"),
        user_id=user_id,
        tenant_id=tenant_id,
        service=service,
        expires_at=expires_at,
    )
    session.add(row)
    await session.flush()
    return row


async def revoke_session(
    session: AsyncSession,
    session_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    # Keep the first revocation timestamp; repeated revokes are no-ops.
    result = await session.execute(
        update(AuthSession)
        .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
        .values(revoked_at=now or utc_now())
    )
    return bool(result.rowcount)
