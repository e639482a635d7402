"""Tests for grant expiry, expiring-credit lookups and warnings."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from sqlalchemy import select

from credit_engine.core.cache import InMemoryBalanceCache
from credit_engine.models import CreditGrant, CreditTransaction
from credit_engine.services import expiry_service
from credit_engine.services.balance_store import get_balance
from credit_engine.services.consumption_service import consume_credits
from credit_engine.services.expiry_service import (
    get_expiring_credits,
    get_expiry_stats,
    process_expired_credits,
    send_expiry_warnings,
)
from tests.conftest import add_config, fund

NOW = datetime.now(timezone.utc)


class TestSweep:
    async def test_lapsed_grant_is_removed_from_balance(self, db, fresh_db, tenant_id):
        await fund(db, tenant_id, 100)
        await fund(db, tenant_id, 40, expires_at=NOW + timedelta(days=2), source="promo")

        summary = await process_expired_credits(db, now=NOW + timedelta(days=3))

        assert summary["expired_count"] == 1
        assert summary["total_expired"] == Decimal("40")
        assert summary["affected_balances"] == 1

        balance = await get_balance(db, tenant_id)
        assert balance.available_credits == Decimal("100")
        assert balance.total_expired == Decimal("40")

        row = (
            await fresh_db.execute(
                select(CreditTransaction).where(CreditTransaction.transaction_type == "expiry")
            )
        ).scalar_one()
        assert row.direction == "debit"
        assert row.previous_balance == Decimal("140")
        assert row.new_balance == Decimal("100")

    async def test_second_sweep_is_a_no_op(self, db, tenant_id):
        await fund(db, tenant_id, 40, expires_at=NOW + timedelta(days=2))
        later = NOW + timedelta(days=3)

        await process_expired_credits(db, now=later)
        again = await process_expired_credits(db, now=later)

        assert again["expired_count"] == 0
        assert again["total_expired"] == Decimal("0")
        assert (await get_balance(db, tenant_id)).available_credits == Decimal("0")

    async def test_grant_not_yet_due_is_kept(self, db, tenant_id):
        await fund(db, tenant_id, 40, expires_at=NOW + timedelta(days=10))

        summary = await process_expired_credits(db, now=NOW + timedelta(days=3))

        assert summary["expired_count"] == 0
        assert (await get_balance(db, tenant_id)).available_credits == Decimal("40")

    async def test_sweep_locks_balance_before_grant(self, db, tenant_id, monkeypatch):
        await fund(db, tenant_id, 40, expires_at=NOW + timedelta(days=2))
        order = []
        real_lock_balance = expiry_service.lock_balance
        real_lock_grant = expiry_service._lock_grant

        async def lock_balance(session, tid, entity_id):
            order.append("balance")
            return await real_lock_balance(session, tid, entity_id)

        async def lock_grant(session, grant_id):
            order.append("grant")
            return await real_lock_grant(session, grant_id)

        monkeypatch.setattr(expiry_service, "lock_balance", lock_balance)
        monkeypatch.setattr(expiry_service, "_lock_grant", lock_grant)

        summary = await process_expired_credits(db, now=NOW + timedelta(days=3))

        assert summary["expired_count"] == 1
        assert order == ["balance", "grant"]

    async def test_only_unspent_part_expires(self, db, fresh_db, tenant_id):
        await fund(db, tenant_id, 50, expires_at=NOW + timedelta(days=2))
        await add_config(db, "operation", "crm.leads.create", credit_cost=30)
        await consume_credits(db, tenant_id, "crm.leads.create")

        summary = await process_expired_credits(db, now=NOW + timedelta(days=3))

        assert summary["total_expired"] == Decimal("20")
        assert (await get_balance(db, tenant_id)).available_credits == Decimal("0")
        grant = (await fresh_db.execute(select(CreditGrant))).scalar_one()
        assert grant.is_expired
        assert grant.expired_credits == Decimal("20")

    async def test_fully_spent_grant_is_closed_without_a_ledger_row(self, db, fresh_db, tenant_id):
        await fund(db, tenant_id, 30, expires_at=NOW + timedelta(days=2))
        await add_config(db, "operation", "crm.leads.create", credit_cost=30)
        await consume_credits(db, tenant_id, "crm.leads.create")

        summary = await process_expired_credits(db, now=NOW + timedelta(days=3))

        assert summary["expired_count"] == 1
        assert summary["affected_balances"] == 0
        rows = (
            await fresh_db.execute(
                select(CreditTransaction).where(CreditTransaction.transaction_type == "expiry")
            )
        ).scalars().all()
        assert rows == []

    async def test_sweep_invalidates_cached_balance(self, db, tenant_id):
        cache = InMemoryBalanceCache()
        await fund(db, tenant_id, 40, expires_at=NOW + timedelta(days=2))
        await get_balance(db, tenant_id, cache=cache)

        await process_expired_credits(db, now=NOW + timedelta(days=3), cache=cache)

        view = await get_balance(db, tenant_id, cache=cache)
        assert not view.cached
        assert view.available_credits == Decimal("0")

    async def test_batch_size_limits_one_run(self, db, tenant_id):
        for _ in range(3):
            await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=1))

        first = await process_expired_credits(db, now=NOW + timedelta(days=2), batch_size=2)
        second = await process_expired_credits(db, now=NOW + timedelta(days=2), batch_size=2)

        assert first["expired_count"] == 2
        assert second["expired_count"] == 1


class TestExpiringCredits:
    async def test_window_groups_per_entity(self, db, tenant_id):
        await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=2))
        await fund(db, tenant_id, 15, expires_at=NOW + timedelta(days=5))
        await fund(db, tenant_id, 99, expires_at=NOW + timedelta(days=20))

        entries = await get_expiring_credits(db, days_ahead=7, tenant_id=tenant_id, now=NOW)

        assert len(entries) == 1
        entry = entries[0]
        assert entry["entity_id"] == tenant_id
        assert entry["expiring_credits"] == Decimal("25")
        assert entry["grant_count"] == 2
        assert entry["earliest_expiry"].date() == (NOW + timedelta(days=2)).date()

    async def test_other_tenants_are_filtered_out(self, db, tenant_id):
        await fund(db, uuid.uuid4(), 10, expires_at=NOW + timedelta(days=2))
        assert await get_expiring_credits(db, tenant_id=tenant_id, now=NOW) == []

    async def test_stats(self, db, tenant_id):
        await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=1))
        await fund(db, tenant_id, 20, expires_at=NOW + timedelta(days=3))
        await fund(db, tenant_id, 30, expires_at=NOW + timedelta(days=20))
        await process_expired_credits(db, now=NOW + timedelta(days=2))

        stats = await get_expiry_stats(db, tenant_id, now=NOW + timedelta(days=2))

        assert stats["expiring_in_7_days"] == Decimal("20")
        assert stats["expiring_in_30_days"] == Decimal("50")
        assert stats["total_expired"] == Decimal("10")


class TestWarnings:
    async def test_each_entity_is_notified(self, db, tenant_id):
        other = uuid.uuid4()
        await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=2))
        await fund(db, other, 10, expires_at=NOW + timedelta(days=2))
        notifier = AsyncMock()

        summary = await send_expiry_warnings(db, days_ahead=7, notifier=notifier, now=NOW)

        assert summary == {"warnings_sent": 2, "failed": 0, "days_ahead": 7}
        notified = {call.args[0] for call in notifier.notify.await_args_list}
        assert notified == {tenant_id, other}

    async def test_failed_notification_does_not_stop_the_run(self, db, tenant_id):
        await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=2))
        await fund(db, uuid.uuid4(), 10, expires_at=NOW + timedelta(days=2))
        notifier = AsyncMock()
        notifier.notify.side_effect = [RuntimeError("smtp down"), None]

        summary = await send_expiry_warnings(db, days_ahead=7, notifier=notifier, now=NOW)

        assert summary["warnings_sent"] == 1
        assert summary["failed"] == 1

    async def test_warnings_do_not_touch_balances(self, db, tenant_id):
        await fund(db, tenant_id, 10, expires_at=NOW + timedelta(days=2))

        await send_expiry_warnings(db, days_ahead=7, now=NOW)

        assert (await get_balance(db, tenant_id)).available_credits == Decimal("10")
