"""HTTP tests for the credit and credit-config routers."""

import uuid

from tests.conftest import add_config, caller_headers, fund

OP = "crm.leads.create"


class TestAuthContext:
    async def test_missing_tenant_is_unauthorized(self, client):
        resp = await client.get("/api/v1/credits/balance")
        assert resp.status_code == 401

    async def test_malformed_tenant_is_bad_request(self, client):
        resp = await client.get("/api/v1/credits/balance", headers={"X-Tenant-ID": "not-a-uuid"})
        assert resp.status_code == 400

    async def test_correlation_id_is_echoed(self, client, tenant_id):
        headers = caller_headers(tenant_id) | {"X-Correlation-ID": "trace-123"}
        resp = await client.get("/api/v1/credits/balance", headers=headers)
        assert resp.headers["X-Correlation-ID"] == "trace-123"


class TestBalanceAndConsume:
    async def test_balance_of_unfunded_tenant(self, client, tenant_id):
        resp = await client.get("/api/v1/credits/balance", headers=caller_headers(tenant_id))

        assert resp.status_code == 200
        body = resp.json()
        assert body["available_credits"] == 0
        assert body["alerts"][0]["level"] == "critical"

    async def test_consume_then_balance(self, client, db, tenant_id):
        await fund(db, tenant_id, 100)
        await add_config(db, "operation", OP, credit_cost=30)
        headers = caller_headers(tenant_id)

        resp = await client.post(
            "/api/v1/credits/consume",
            json={"operation_code": OP, "operation_id": "req-1", "credit_cost": 1},
            headers=headers,
        )
        balance = await client.get("/api/v1/credits/balance", headers=headers)

        assert resp.status_code == 200
        assert resp.json()["credits_charged"] == 30
        assert resp.json()["remaining_credits"] == 70
        assert balance.json()["available_credits"] == 70

    async def test_insufficient_credits_is_402_with_shortfall(self, client, db, tenant_id):
        await fund(db, tenant_id, 10)
        await add_config(db, "operation", OP, credit_cost=30)

        resp = await client.post(
            "/api/v1/credits/consume", json={"operation_code": OP}, headers=caller_headers(tenant_id)
        )

        assert resp.status_code == 402
        detail = resp.json()["detail"]
        assert detail["reason"] == "insufficient_credits"
        assert detail["data"]["shortfall"] == 20

    async def test_malformed_operation_code_is_422(self, client, tenant_id):
        resp = await client.post(
            "/api/v1/credits/consume", json={"operation_code": "Bad Code!"}, headers=caller_headers(tenant_id)
        )
        assert resp.status_code == 422

    async def test_refund_requires_admin(self, client, db, tenant_id):
        await fund(db, tenant_id, 100)
        await client.post(
            "/api/v1/credits/consume",
            json={"operation_code": OP, "operation_id": "req-2"},
            headers=caller_headers(tenant_id),
        )

        denied = await client.post(
            "/api/v1/credits/refunds", json={"operation_id": "req-2"}, headers=caller_headers(tenant_id)
        )
        allowed = await client.post(
            "/api/v1/credits/refunds", json={"operation_id": "req-2"}, headers=caller_headers(tenant_id, "admin")
        )

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["new_balance"] == 100


class TestPurchaseFlow:
    async def test_purchase_confirm(self, client, tenant_id):
        created = await client.post(
            "/api/v1/credits/purchase",
            json={"credit_amount": 1000, "payment_method": "card"},
            headers=caller_headers(tenant_id),
        )
        purchase_id = created.json()["purchase_id"]

        confirmed = await client.post(
            f"/api/v1/credits/purchases/{purchase_id}/confirm",
            json={"payment_reference": "ch_1"},
            headers=caller_headers(tenant_id, "admin"),
        )
        balance = await client.get("/api/v1/credits/balance", headers=caller_headers(tenant_id))

        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "completed"
        assert balance.json()["available_credits"] == 1000

    async def test_admin_lists_purchases_by_status(self, client, tenant_id):
        for amount in (100, 200):
            await client.post(
                "/api/v1/credits/purchase",
                json={"credit_amount": amount, "payment_method": "invoice"},
                headers=caller_headers(tenant_id),
            )

        denied = await client.get("/api/v1/credits/purchases", headers=caller_headers(tenant_id))
        listed = await client.get(
            "/api/v1/credits/purchases", params={"status": "pending"}, headers=caller_headers(tenant_id, "admin")
        )

        assert denied.status_code == 403
        assert listed.json()["total"] == 2
        assert {i["credit_amount"] for i in listed.json()["items"]} == {100, 200}

    async def test_confirm_unknown_purchase_is_404(self, client, tenant_id):
        resp = await client.post(
            f"/api/v1/credits/purchases/{uuid.uuid4()}/confirm",
            json={},
            headers=caller_headers(tenant_id, "admin"),
        )
        assert resp.status_code == 404


class TestTransferAndHistory:
    async def test_transfer_and_paginated_history(self, client, db, tenant_id):
        await fund(db, tenant_id, 100)
        headers = caller_headers(tenant_id)

        transfer = await client.post(
            "/api/v1/credits/transfer",
            json={"to_entity_id": str(uuid.uuid4()), "to_entity_type": "location", "credit_amount": 25},
            headers=headers,
        )
        page = await client.get("/api/v1/credits/transactions", params={"page_size": 2}, headers=headers)
        outgoing = await client.get(
            "/api/v1/credits/transactions", params={"transaction_type": "transfer_out"}, headers=headers
        )

        assert transfer.status_code == 200
        assert transfer.json()["from_balance"] == 75
        body = page.json()
        assert body["total"] == 3
        assert body["pages"] == 2
        assert len(body["items"]) == 2
        assert [i["transaction_type"] for i in outgoing.json()["items"]] == ["transfer_out"]

    async def test_page_size_capped(self, client, tenant_id):
        resp = await client.get(
            "/api/v1/credits/transactions", params={"page_size": 500}, headers=caller_headers(tenant_id)
        )
        assert resp.status_code == 422

    async def test_usage_summary(self, client, db, tenant_id):
        await fund(db, tenant_id, 100)

        resp = await client.get("/api/v1/credits/usage-summary", headers=caller_headers(tenant_id))

        assert resp.status_code == 200
        assert resp.json()["credits_in"] == 100
        assert resp.json()["by_type"]["allocation"]["count"] == 1


class TestCreditConfigs:
    async def test_member_cannot_write(self, client, tenant_id):
        resp = await client.put(
            f"/api/v1/credit-configs/operation/{OP}", json={"credit_cost": 5}, headers=caller_headers(tenant_id)
        )
        assert resp.status_code == 403

    async def test_admin_writes_tenant_override(self, client, tenant_id):
        admin = caller_headers(tenant_id, "admin")

        put = await client.put(f"/api/v1/credit-configs/operation/{OP}", json={"credit_cost": 5}, headers=admin)
        effective = await client.get(f"/api/v1/credit-configs/operation/{OP}", headers=caller_headers(tenant_id))

        assert put.status_code == 200
        assert put.json()["scope"] == "organization"
        assert effective.json()["credit_cost"] == 5
        assert effective.json()["source"] == "tenant_operation"

    async def test_global_write_needs_superadmin(self, client, tenant_id):
        body = {"credit_cost": 2, "global_scope": True}

        denied = await client.put(
            f"/api/v1/credit-configs/operation/{OP}", json=body, headers=caller_headers(tenant_id, "admin")
        )
        allowed = await client.put(
            f"/api/v1/credit-configs/operation/{OP}", json=body, headers=caller_headers(tenant_id, "superadmin")
        )

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["tenant_id"] is None

    async def test_contradictory_tiers_rejected(self, client, tenant_id):
        resp = await client.put(
            f"/api/v1/credit-configs/operation/{OP}",
            json={"volume_tiers": [{"up_to": 100, "credit_cost": 1}, {"up_to": 10, "credit_cost": 2}]},
            headers=caller_headers(tenant_id, "admin"),
        )

        assert resp.status_code == 422
        assert resp.json()["detail"]["field"] == "volume_tiers"

    async def test_bulk_write_is_all_or_nothing(self, client, tenant_id):
        admin = caller_headers(tenant_id, "admin")
        good = {"level": "operation", "code": OP, "config": {"credit_cost": 6}}
        tiers = [{"up_to": 5, "credit_cost": 1}, {"up_to": 2, "credit_cost": 1}]
        bad = {"level": "module", "code": "crm.leads", "config": {"volume_tiers": tiers}}

        rejected = await client.put("/api/v1/credit-configs", json={"configs": [good, bad]}, headers=admin)
        after_reject = await client.get(f"/api/v1/credit-configs/operation/{OP}", headers=admin)
        accepted = await client.put("/api/v1/credit-configs", json={"configs": [good]}, headers=admin)
        after_accept = await client.get(f"/api/v1/credit-configs/operation/{OP}", headers=admin)

        assert rejected.status_code == 422
        assert rejected.json()["detail"]["field"] == "volume_tiers"
        assert after_reject.json()["is_fallback"] is True
        assert accepted.status_code == 200
        assert [c["code"] for c in accepted.json()] == [OP]
        assert after_accept.json()["credit_cost"] == 6

    async def test_fallback_when_unconfigured(self, client, tenant_id):
        resp = await client.get("/api/v1/credit-configs/operation/docs.pages.view", headers=caller_headers(tenant_id))

        assert resp.status_code == 200
        assert resp.json()["is_fallback"] is True

    async def test_delete_missing_config_is_404(self, client, tenant_id):
        resp = await client.delete(
            f"/api/v1/credit-configs/operation/{OP}", headers=caller_headers(tenant_id, "admin")
        )
        assert resp.status_code == 404


class TestHealth:
    async def test_health_reports_cache_disabled(self, client):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": "ok", "redis": "disabled"}
