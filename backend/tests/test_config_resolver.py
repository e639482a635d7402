"""Tests for credit pricing resolution and config writes."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from credit_engine.core.config import settings
from credit_engine.models import CreditConfig
from credit_engine.services import config_resolver
from credit_engine.services.config_resolver import (
    build_strategies,
    deactivate_config,
    get_app_config,
    get_module_config,
    get_operation_config,
    level_chain,
    list_configs,
    resolve_cost,
    save_config,
    set_app_config,
    set_config,
    set_configs,
    set_module_config,
    set_operation_config,
    validate_config_data,
)
from credit_engine.services.credit_result import InvalidConfiguration
from tests.conftest import add_config

OP = "crm.leads.create"


class TestLevelChain:
    def test_operation_walks_module_then_application(self):
        assert level_chain("operation", OP) == [
            ("operation", "crm.leads.create"),
            ("module", "crm.leads"),
            ("application", "crm"),
        ]

    def test_module_starts_one_level_up(self):
        assert level_chain("module", "crm.leads") == [("module", "crm.leads"), ("application", "crm")]

    def test_single_segment_code_has_no_parents(self):
        assert level_chain("operation", "export") == [("operation", "export")]

    def test_tenant_strategies_come_before_global(self):
        names = [s.name for s in build_strategies("operation", OP)]
        assert names == [
            "tenant_operation",
            "tenant_module",
            "tenant_application",
            "global_operation",
            "global_module",
            "global_application",
        ]


class TestResolution:
    async def test_tenant_override_beats_global(self, db, tenant_id):
        await add_config(db, "operation", OP, credit_cost=10)
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=5)

        mine = await resolve_cost(db, OP, tenant_id)
        other = await resolve_cost(db, OP, uuid.uuid4())

        assert mine.credit_cost == Decimal("5")
        assert mine.source == "tenant_operation"
        assert other.credit_cost == Decimal("10")
        assert other.source == "global_operation"

    async def test_unconfigured_operation_uses_fallback(self, db, tenant_id):
        effective = await resolve_cost(db, "billing.invoices.export", tenant_id)

        assert effective.is_fallback
        assert effective.credit_cost == Decimal(str(settings.CREDIT_FALLBACK_COST))
        assert effective.config_id is None

    async def test_malformed_code_still_prices(self, db, tenant_id):
        effective = await resolve_cost(db, "   ", tenant_id)
        assert effective.is_fallback

    async def test_global_module_default_applies_to_operation(self, db, tenant_id):
        await add_config(db, "module", "crm.leads", credit_cost=3)

        effective = await resolve_cost(db, OP, tenant_id)

        assert effective.credit_cost == Decimal("3")
        assert effective.source == "global_module"

    async def test_tenant_module_beats_global_operation(self, db, tenant_id):
        await add_config(db, "operation", OP, credit_cost=10)
        await add_config(db, "module", "crm.leads", tenant_id=tenant_id, credit_cost=2)

        effective = await resolve_cost(db, OP, tenant_id)

        assert effective.credit_cost == Decimal("2")
        assert effective.source == "tenant_module"

    async def test_application_default_is_last_configured_level(self, db, tenant_id):
        await add_config(db, "application", "crm", credit_cost=7)

        effective = await resolve_cost(db, OP, tenant_id)

        assert effective.credit_cost == Decimal("7")
        assert effective.source == "global_application"

    async def test_module_lookup_falls_through_to_application(self, db, tenant_id):
        await add_config(db, "application", "crm", credit_cost=4)

        effective = await get_module_config(db, "crm.leads", tenant_id)

        assert effective.level == "module"
        assert effective.credit_cost == Decimal("4")

    async def test_app_lookup_without_rows_is_fallback(self, db, tenant_id):
        effective = await get_app_config(db, "crm", tenant_id)
        assert effective.is_fallback

    async def test_inherited_row_fills_unset_fields_from_global(self, db, tenant_id):
        await add_config(
            db, "operation", OP, credit_cost=10, free_allowance=5, free_allowance_period="week"
        )
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=4, is_inherited=True)

        effective = await resolve_cost(db, OP, tenant_id)

        assert effective.credit_cost == Decimal("4")
        assert effective.free_allowance == 5
        assert effective.free_allowance_period == "week"
        assert effective.inherited_from == ["global_operation"]

    async def test_non_inherited_row_does_not_merge(self, db, tenant_id):
        await add_config(db, "operation", OP, credit_cost=10, free_allowance=5)
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=4)

        effective = await resolve_cost(db, OP, tenant_id)

        assert effective.credit_cost == Decimal("4")
        assert effective.free_allowance == 0
        assert effective.inherited_from == []

    async def test_deactivated_config_is_skipped(self, db, tenant_id):
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=5)
        await add_config(db, "operation", OP, credit_cost=10)

        assert await deactivate_config(db, "operation", OP, tenant_id) == 1
        await db.commit()

        effective = await resolve_cost(db, OP, tenant_id)
        assert effective.credit_cost == Decimal("10")


class TestConfigWrites:
    async def test_rewrite_updates_the_active_row(self, db, tenant_id):
        first = await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=5)
        second = await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=6)

        assert first.id == second.id
        rows = await list_configs(db, tenant_id, level="operation")
        assert [(r.code, r.credit_cost) for r in rows] == [(OP, Decimal("6"))]

    async def test_tenant_row_gets_organization_scope(self, db, tenant_id):
        config = await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=5)
        assert config.scope == "organization"

        global_config = await add_config(db, "operation", OP, credit_cost=5)
        assert global_config.scope == "global"

    async def test_list_configs_includes_global_rows(self, db, tenant_id):
        await add_config(db, "operation", OP, credit_cost=10)
        await add_config(db, "module", "crm.leads", tenant_id=tenant_id, credit_cost=2)
        await add_config(db, "module", "crm.deals", tenant_id=uuid.uuid4(), credit_cost=2)

        rows = await list_configs(db, tenant_id)

        assert {(r.config_level, r.code) for r in rows} == {("operation", OP), ("module", "crm.leads")}

    async def test_unknown_level_rejected(self, db):
        with pytest.raises(InvalidConfiguration):
            await set_config(db, "feature", OP, {"credit_cost": 1})


class TestValidation:
    def test_tiers_must_increase(self):
        with pytest.raises(InvalidConfiguration) as exc:
            validate_config_data({
                "volume_tiers": [{"up_to": 100, "credit_cost": 1}, {"up_to": 50, "credit_cost": 0.5}],
            })
        assert exc.value.field == "volume_tiers"

    def test_only_last_tier_open_ended(self):
        with pytest.raises(InvalidConfiguration):
            validate_config_data({
                "volume_tiers": [{"up_to": None, "credit_cost": 1}, {"up_to": 50, "credit_cost": 0.5}],
            })

    def test_negative_cost_rejected(self):
        with pytest.raises(InvalidConfiguration):
            validate_config_data({"credit_cost": -1})

    def test_unknown_unit_rejected(self):
        with pytest.raises(InvalidConfiguration):
            validate_config_data({"credit_cost": 1, "unit": "parsec"})

    def test_overage_limit_with_overage_disallowed_is_contradictory(self):
        with pytest.raises(InvalidConfiguration):
            validate_config_data({
                "credit_cost": 1,
                "free_allowance": 10,
                "allow_overage": False,
                "overage_limit": 5,
            })

    def test_overage_limit_needs_free_allowance(self):
        with pytest.raises(InvalidConfiguration):
            validate_config_data({"credit_cost": 1, "overage_limit": 5})

    def test_valid_payload_is_normalised(self):
        cleaned = validate_config_data({
            "credit_cost": "2.5",
            "unit": "record",
            "free_allowance": 100,
            "free_allowance_period": "month",
            "volume_tiers": [{"up_to": 1000, "credit_cost": 1}, {"credit_cost": 0.5}],
        })
        assert cleaned["credit_cost"] == Decimal("2.5")
        assert cleaned["volume_tiers"][1] == {"up_to": None, "credit_cost": 0.5}
        assert cleaned["is_inherited"] is False


class TestLevelShortcuts:
    async def test_writers_for_each_level(self, db, tenant_id):
        await set_app_config(db, "crm", {"credit_cost": 9}, tenant_id=tenant_id)
        await set_module_config(db, "crm.leads", {"credit_cost": 3}, tenant_id=tenant_id)
        await set_operation_config(db, OP, {"credit_cost": 8}, tenant_id=tenant_id)
        await db.commit()

        operation = await get_operation_config(db, OP, tenant_id)
        sibling = await get_operation_config(db, "crm.leads.delete", tenant_id)

        assert operation.credit_cost == Decimal("8")
        assert sibling.credit_cost == Decimal("3")
        assert sibling.source == "tenant_module"
        assert (await get_app_config(db, "crm", tenant_id)).credit_cost == Decimal("9")


class TestConcurrentFirstWrites:
    async def test_second_active_tenant_row_is_rejected(self, db, fresh_db, tenant_id):
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=1)

        fresh_db.add(CreditConfig(config_level="operation", code=OP, tenant_id=tenant_id, credit_cost=Decimal("2")))
        with pytest.raises(IntegrityError):
            await fresh_db.commit()
        await fresh_db.rollback()

    async def test_global_rows_collide_despite_null_tenant(self, db, fresh_db):
        await add_config(db, "operation", OP, credit_cost=1)

        fresh_db.add(CreditConfig(config_level="operation", code=OP, tenant_id=None, credit_cost=Decimal("2")))
        with pytest.raises(IntegrityError):
            await fresh_db.commit()
        await fresh_db.rollback()

    async def test_inactive_rows_do_not_count(self, db, tenant_id):
        await add_config(db, "operation", OP, tenant_id=tenant_id, credit_cost=1)
        await deactivate_config(db, "operation", OP, tenant_id)
        await db.commit()

        config = await save_config(db, "operation", OP, {"credit_cost": 4}, tenant_id=tenant_id)

        assert config.is_active
        assert len(await list_configs(db, tenant_id, include_inactive=True)) == 2

    async def test_losing_writer_retries_into_an_update(self, db, fresh_db, tenant_id, monkeypatch):
        real_active_rows = config_resolver._active_rows
        reads = []

        async def read_before_other_writer_commits(session, level, code, tid):
            if session is db and not reads:
                reads.append("stale")
                # The other writer commits between this read and our insert
                await set_config(fresh_db, level, code, {"credit_cost": 3}, tenant_id=tid)
                await fresh_db.commit()
                return []
            if session is db:
                reads.append("fresh")
            return await real_active_rows(session, level, code, tid)

        monkeypatch.setattr(config_resolver, "_active_rows", read_before_other_writer_commits)

        config = await save_config(db, "operation", OP, {"credit_cost": 5}, tenant_id=tenant_id)

        assert reads == ["stale", "fresh"]
        assert config.credit_cost == Decimal("5")
        active = await list_configs(fresh_db, tenant_id)
        assert len(active) == 1
        assert active[0].id == config.id


class TestBulkWrites:
    async def test_all_entries_written_together(self, db, tenant_id):
        configs = await set_configs(
            db,
            [
                {"level": "application", "code": "crm", "config": {"credit_cost": 4}},
                {"level": "operation", "code": OP, "config": {"credit_cost": 7}},
            ],
            tenant_id=tenant_id,
        )

        assert [c.code for c in configs] == ["crm", OP]
        assert (await get_operation_config(db, OP, tenant_id)).credit_cost == Decimal("7")
        assert (await get_operation_config(db, "crm.deals.create", tenant_id)).credit_cost == Decimal("4")

    async def test_one_bad_entry_rejects_the_batch(self, db, fresh_db, tenant_id):
        with pytest.raises(InvalidConfiguration) as exc_info:
            await set_configs(
                db,
                [
                    {"level": "operation", "code": OP, "config": {"credit_cost": 7}},
                    {"level": "module", "code": "crm.leads", "config": {"credit_cost": 1, "unit": "parsec"}},
                ],
                tenant_id=tenant_id,
            )

        assert exc_info.value.field == "unit"
        assert "entry 1" in str(exc_info.value)
        assert await list_configs(fresh_db, tenant_id) == []
