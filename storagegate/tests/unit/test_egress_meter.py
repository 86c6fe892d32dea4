from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from storagegate.persistence.db import SessionLocal
from storagegate.services.egress_meter import EgressMeter, month_key
from storagegate.tests.utils.seed import GB, fixed_clock, seed_tenant, utc


def test_month_key_is_zero_padded() -> None:
    assert month_key(utc(2026, 3, 31)) == "2026-03"
    assert month_key(utc(2026, 12, 1)) == "2026-12"


@pytest.mark.asyncio
async def test_record_accumulates_within_month() -> None:
    tenant_id = await seed_tenant()
    meter = EgressMeter(time_provider=fixed_clock(utc(2026, 3, 10)))
    async with SessionLocal() as session:
        assert await meter.current_month_usage(session, tenant_id) == Decimal("0.0000")
        await meter.record(session, tenant_id, GB)
        total = await meter.record(session, tenant_id, GB // 2)
    assert total == Decimal("1.5000")


@pytest.mark.asyncio
async def test_months_are_tracked_separately() -> None:
    tenant_id = await seed_tenant()
    march = EgressMeter(time_provider=fixed_clock(utc(2026, 3, 31, 23)))
    april = EgressMeter(time_provider=fixed_clock(utc(2026, 4, 1, 0)))
    async with SessionLocal() as session:
        await march.record(session, tenant_id, 3 * GB)
        await april.record(session, tenant_id, GB)
        assert await march.current_month_usage(session, tenant_id) == Decimal("3.0000")
        assert await april.current_month_usage(session, tenant_id) == Decimal("1.0000")
        history = await april.history(session, tenant_id)
    assert [row.month_key for row in history] == ["2026-04", "2026-03"]


@pytest.mark.asyncio
async def test_concurrent_records_do_not_lose_updates() -> None:
    tenant_id = await seed_tenant()
    meter = EgressMeter(time_provider=fixed_clock(utc(2026, 5, 2)))

    async def _download() -> None:
        async with SessionLocal() as session:
            await meter.record(session, tenant_id, 10 * GB)

    await asyncio.gather(_download(), _download())

    async with SessionLocal() as session:
        assert await meter.current_month_usage(session, tenant_id) == Decimal("20.0000")
        history = await meter.history(session, tenant_id)
    assert len(history) == 1
