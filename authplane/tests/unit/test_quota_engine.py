from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from authplane.persistence.repos import usage as usage_repo
from authplane.services.quota import (
    LEVEL_API_KEY,
    LEVEL_TENANT,
    LEVEL_UNLIMITED,
    RACE_MESSAGE,
    UNLIMITED_REMAINING,
    QuotaCheckResult,
    QuotaEngine,
    apply_quota_boost,
    evaluate_limit,
)
from authplane.tests.utils.seed import seed_api_key, seed_tenant, seed_usage


def test_evaluate_limit_applies_buffer_and_clamps_remaining() -> None:
    result = evaluate_limit(LEVEL_TENANT, 1000, 985, 5)
    assert result.allowed is True
    assert result.remaining == 5

    over = evaluate_limit(LEVEL_TENANT, 1000, 985, 6)
    assert over.allowed is False

    exhausted = evaluate_limit(LEVEL_TENANT, 1000, 1200, 1)
    assert exhausted.allowed is False
    assert exhausted.remaining == 0


def test_evaluate_limit_treats_zero_as_a_real_limit() -> None:
    result = evaluate_limit(LEVEL_TENANT, 0, 0, 1)
    assert result.allowed is False
    assert result.remaining == 0


def test_quota_boost_raises_ceiling_without_buffer() -> None:
    base = evaluate_limit(LEVEL_TENANT, 100, 99, 1)
    assert base.allowed is False

    boosted = apply_quota_boost(base, 50, 1)
    assert boosted.allowed is True
    assert boosted.limit == 150
    assert boosted.remaining == 51
    assert boosted.used == 99
    assert boosted.level == LEVEL_TENANT


def test_quota_boost_ignored_for_unlimited_and_zero_boost() -> None:
    unlimited = QuotaCheckResult(allowed=True, remaining=UNLIMITED_REMAINING, level=LEVEL_UNLIMITED)
    assert apply_quota_boost(unlimited, 500, 1) is unlimited
    limited = evaluate_limit(LEVEL_TENANT, 10, 3, 1)
    assert apply_quota_boost(limited, 0, 1) is limited


@pytest.mark.asyncio
async def test_tenant_limit_is_buffered(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=1000)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=985, created_at=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    allowed = await engine.check_quota(tenant_id, 5)
    assert allowed.allowed is True
    assert allowed.level == LEVEL_TENANT
    assert allowed.limit == 1000
    assert allowed.used == 985
    assert allowed.remaining == 5

    denied = await engine.check_quota(tenant_id, 6)
    assert denied.allowed is False


@pytest.mark.asyncio
async def test_unlimited_tenant_reports_unlimited_level(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 10_000)
    assert result.allowed is True
    assert result.level == LEVEL_UNLIMITED
    assert result.remaining == UNLIMITED_REMAINING


@pytest.mark.asyncio
async def test_missing_tenant_is_denied(session_factory, now) -> None:
    engine = QuotaEngine(session_factory, time_provider=lambda: now)
    result = await engine.check_quota("t-missing", 1)
    assert result.allowed is False
    assert result.message == "Tenant not found"


@pytest.mark.asyncio
async def test_api_key_limit_is_authoritative_over_tenant(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=10)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=50, created_at=now)
    api_key_id = await seed_api_key(session_factory, tenant_id=tenant_id, quota_limit=100, now=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1, api_key_id)
    assert result.allowed is True
    assert result.level == LEVEL_API_KEY
    assert result.used == 0
    assert result.remaining == 99


@pytest.mark.asyncio
async def test_api_key_one_unit_below_buffered_limit_is_denied(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    api_key_id = await seed_api_key(session_factory, tenant_id=tenant_id, quota_limit=100, now=now)
    await seed_usage(session_factory, tenant_id=tenant_id, api_key_id=api_key_id, quantity=99, created_at=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1, api_key_id)
    assert result.allowed is False
    assert result.level == LEVEL_API_KEY
    assert result.used == 99
    assert result.remaining == 0


@pytest.mark.asyncio
async def test_api_key_without_limit_falls_back_to_tenant(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=10)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=9, created_at=now)
    api_key_id = await seed_api_key(session_factory, tenant_id=tenant_id, quota_limit=None, now=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1, api_key_id)
    assert result.level == LEVEL_TENANT
    assert result.allowed is False


@pytest.mark.asyncio
async def test_unknown_api_key_is_denied(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1, "ak-missing")
    assert result.allowed is False
    assert result.level == LEVEL_API_KEY
    assert result.message == "API key not found"


@pytest.mark.asyncio
async def test_hourly_api_key_quota_only_counts_current_hour(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    api_key_id = await seed_api_key(
        session_factory, tenant_id=tenant_id, quota_limit=100, quota_period="hour", now=now
    )
    await seed_usage(
        session_factory,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        quantity=80,
        created_at=now - timedelta(hours=2),
    )
    await seed_usage(
        session_factory,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        quantity=7,
        created_at=now - timedelta(minutes=10),
    )
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1, api_key_id)
    assert result.used == 7
    assert result.remaining == 92


@pytest.mark.asyncio
async def test_usage_from_previous_month_is_not_counted(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=100)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=500, created_at=now - timedelta(days=30))
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_quota(tenant_id, 1)
    assert result.allowed is True
    assert result.used == 0


@pytest.mark.asyncio
async def test_record_usage_is_idempotent(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    first = await engine.record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="req-1", quantity=3
    )
    second = await engine.record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="req-1", quantity=3
    )
    assert first.id == second.id
    assert first.period == "2026-03"

    usage = await engine.get_usage(tenant_id)
    assert usage.total_quantity == 3
    assert usage.event_count == 1


@pytest.mark.asyncio
async def test_record_usage_rejects_negative_quantity(session_factory, now) -> None:
    engine = QuotaEngine(session_factory, time_provider=lambda: now)
    with pytest.raises(ValueError):
        await engine.record_usage(
            tenant_id="t-any", service="api", action="call", idempotency_key="neg", quantity=-1
        )


@pytest.mark.asyncio
async def test_check_and_record_reports_post_write_remaining(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=100)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_and_record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="car-1", quantity=5
    )
    assert result.allowed is True
    assert result.used == 5
    assert result.remaining == 94


@pytest.mark.asyncio
async def test_check_and_record_detects_concurrent_overrun(session_factory, now, monkeypatch) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=100)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=90, created_at=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)
    original_record = engine.record_usage

    async def racing_record(**kwargs):
        # Another request lands between the check and our write.
        await seed_usage(session_factory, tenant_id=tenant_id, quantity=10, created_at=now)
        return await original_record(**kwargs)

    monkeypatch.setattr(engine, "record_usage", racing_record)

    result = await engine.check_and_record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="race-1", quantity=5
    )
    assert result.allowed is False
    assert result.remaining == 0
    assert result.message == RACE_MESSAGE

    # The event stays in the ledger even though the caller was denied.
    usage = await engine.get_usage(tenant_id)
    assert usage.total_quantity == 105


@pytest.mark.asyncio
async def test_check_and_record_denied_before_write(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=10)
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=9, created_at=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    result = await engine.check_and_record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="deny-1", quantity=1
    )
    assert result.allowed is False
    assert result.message is None
    usage = await engine.get_usage(tenant_id)
    assert usage.event_count == 1


@pytest.mark.asyncio
async def test_list_usage_events_filters_and_pages(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    for minute in range(3):
        await seed_usage(
            session_factory,
            tenant_id=tenant_id,
            quantity=1,
            created_at=now - timedelta(minutes=minute),
            service="search",
        )
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=1, created_at=now, service="chat")
    engine = QuotaEngine(session_factory, time_provider=lambda: now, page_size=2)

    first_page = await engine.list_usage_events(tenant_id, service="search")
    assert len(first_page) == 2
    assert first_page[0].created_at >= first_page[1].created_at
    rest = await engine.list_usage_events(tenant_id, service="search", offset=2)
    assert len(rest) == 1
    all_events = await engine.list_usage_events(tenant_id, period="2026-03", limit=10)
    assert len(all_events) == 4


@pytest.mark.asyncio
async def test_api_key_usage_summary(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    api_key_id = await seed_api_key(session_factory, tenant_id=tenant_id, quota_limit=None, now=now)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)
    await engine.record_usage(
        tenant_id=tenant_id,
        service="search",
        action="query",
        idempotency_key="key-usage-1",
        quantity=4,
        api_key_id=api_key_id,
        user_id="u1",
    )
    await seed_usage(session_factory, tenant_id=tenant_id, quantity=9, created_at=now)

    assert engine.current_period() == "2026-03"
    assert engine.current_period("hour") == "2026-03-15-12"
    summary = await engine.get_api_key_usage(api_key_id)
    assert summary.tenant_id == tenant_id
    assert summary.total_quantity == 4
    assert summary.event_count == 1
    assert (await engine.get_usage(tenant_id, "2026-02")).total_quantity == 0


@pytest.mark.asyncio
async def test_day_and_hour_usage_reports_match_enforcement(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    api_key_id = await seed_api_key(
        session_factory, tenant_id=tenant_id, quota_limit=100, quota_period="day", now=now
    )
    await seed_usage(
        session_factory,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        quantity=7,
        created_at=now - timedelta(minutes=10),
    )
    await seed_usage(
        session_factory,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        quantity=20,
        created_at=now - timedelta(days=1),
    )
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    check = await engine.check_quota(tenant_id, 1, api_key_id)
    assert check.used == 7

    today = await engine.get_api_key_usage(api_key_id, "2026-03-15")
    assert today.total_quantity == check.used
    assert (await engine.get_api_key_usage(api_key_id, "2026-03-14")).total_quantity == 20
    assert (await engine.get_usage(tenant_id, "2026-03-15")).total_quantity == 7
    assert (await engine.get_usage(tenant_id, "2026-03-15-12")).total_quantity == 7
    assert (await engine.get_usage(tenant_id, "2026-03-15-11")).total_quantity == 0
    assert (await engine.get_usage(tenant_id)).total_quantity == 27

    yesterday = await engine.list_usage_events(tenant_id, period="2026-03-14")
    assert [event.quantity for event in yesterday] == [20]

    with pytest.raises(ValueError):
        await engine.get_usage(tenant_id, "last-week")


@pytest.mark.asyncio
async def test_concurrent_records_with_same_key_store_one_event(session_factory, now) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)

    records = await asyncio.gather(
        *(
            engine.record_usage(
                tenant_id=tenant_id, service="api", action="call", idempotency_key="burst-1", quantity=2
            )
            for _ in range(6)
        )
    )

    assert len({record.id for record in records}) == 1
    usage = await engine.get_usage(tenant_id)
    assert usage.event_count == 1
    assert usage.total_quantity == 2


@pytest.mark.asyncio
async def test_record_usage_returns_winner_after_unique_conflict(session_factory, now, monkeypatch) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=now, global_quota_limit=None)
    engine = QuotaEngine(session_factory, time_provider=lambda: now)
    winner = await engine.record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="dup-1", quantity=4
    )

    original_lookup = usage_repo.get_by_idempotency_key
    lookups = []

    async def stale_lookup(session, idempotency_key):
        # The first read misses, as if the other writer had not committed yet.
        lookups.append(idempotency_key)
        if len(lookups) == 1:
            return None
        return await original_lookup(session, idempotency_key)

    monkeypatch.setattr(usage_repo, "get_by_idempotency_key", stale_lookup)

    loser = await engine.record_usage(
        tenant_id=tenant_id, service="api", action="call", idempotency_key="dup-1", quantity=4
    )
    assert loser.id == winner.id
    assert len(lookups) == 2
    usage = await engine.get_usage(tenant_id)
    assert usage.event_count == 1
    assert usage.total_quantity == 4
