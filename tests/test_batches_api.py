from sqlalchemy import update

from propai.models.usage_token import UsageToken
from worker.tasks import refresh_active_batches_once

from tests.fakes import ok_outcome
from tests.fixtures_seed import make_properties


async def test_submit_poll_apply_flow(client, auth, seed_tenant, session_factory, batch_client):
    ids = await make_properties(session_factory, seed_tenant["tenant_id"], 2)

    r = await client.post("/v1/batches", headers=auth)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["data"]["batch_id"] == "batch_1"
    assert body["data"]["property_count"] == 2

    r = await client.get("/v1/batches/batch_1", headers=auth)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "validating"

    batch_client.complete("batch_1", [ok_outcome(ids[0], "紹介文A"), ok_outcome(ids[1], "紹介文B")])
    r = await client.get("/v1/batches/batch_1", headers=auth)
    data = r.json()["data"]
    assert data["status"] == "completed"
    assert data["output_file_id"] == "batch_1_out"

    r = await client.post("/v1/batches/batch_1/apply", headers=auth)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["data"] == {"success_count": 2, "error_count": 0, "total_results": 2, "already_applied": False}
    assert body["message"] == "Processed: 2 succeeded, 0 failed"

    r = await client.post("/v1/batches/batch_1/apply", headers=auth)
    assert r.json()["data"]["already_applied"] is True

    r = await client.get(f"/v1/properties/{ids[0]}", headers=auth)
    assert r.json()["data"]["ai_description"] == "紹介文A"

    r = await client.get("/v1/batches", headers=auth)
    page = r.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["results_applied_at"] is not None


async def test_submit_with_nothing_pending(client, auth):
    r = await client.post("/v1/batches", headers=auth, json={"property_ids": []})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "No properties need a description"
    assert body["data"] is None


async def test_second_submit_is_a_conflict_envelope(client, auth, seed_tenant, session_factory):
    await make_properties(session_factory, seed_tenant["tenant_id"], 1)
    assert (await client.post("/v1/batches", headers=auth)).status_code == 200
    await make_properties(session_factory, seed_tenant["tenant_id"], 1)

    r = await client.post("/v1/batches", headers=auth)
    assert r.status_code == 409
    body = r.json()
    assert body["success"] is False
    assert body["code"] == "CONFLICT"
    assert body["detail"] == {"active_count": 1}


async def test_quota_refusal_is_402(client, auth, seed_tenant, session_factory):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 2)
    async with session_factory() as db:
        await db.execute(update(UsageToken).where(UsageToken.tenant_id == tenant_id).values(tokens_limit=10))
        await db.commit()

    r = await client.post("/v1/batches", headers=auth)
    assert r.status_code == 402
    assert r.json()["detail"] == {"remaining": 10, "requested": 500}


async def test_foreign_job_is_forbidden(client, auth, seed_tenant, other_tenant, session_factory):
    await make_properties(session_factory, seed_tenant["tenant_id"], 1)
    await client.post("/v1/batches", headers=auth)

    r = await client.get("/v1/batches/batch_1", headers={"X-API-Key": other_tenant["api_key"]})
    assert r.status_code == 403
    r = await client.post("/v1/batches/batch_1/cancel", headers={"X-API-Key": other_tenant["api_key"]})
    assert r.status_code == 403


async def test_cancel_then_cancel_again(client, auth, seed_tenant, session_factory):
    await make_properties(session_factory, seed_tenant["tenant_id"], 1)
    await client.post("/v1/batches", headers=auth)

    r = await client.post("/v1/batches/batch_1/cancel", headers=auth)
    assert r.status_code == 200
    assert r.json()["message"] == "Batch job cancelled"
    assert r.json()["data"]["status"] == "cancelled"

    r = await client.post("/v1/batches/batch_1/cancel", headers=auth)
    assert r.status_code == 200
    assert r.json()["message"] == "Batch job had already finished"
    assert r.json()["data"]["already_finished"] is True


async def test_overview(client, auth, seed_tenant, session_factory):
    await make_properties(session_factory, seed_tenant["tenant_id"], 3)
    r = await client.get("/v1/batches/overview", headers=auth)
    assert r.status_code == 200
    assert r.json()["data"] == {"active_batches": 0, "pending_properties": 3, "active": []}


async def test_upstream_error_is_masked(client, auth, seed_tenant, session_factory, batch_client):
    from propai.core.errors import UpstreamError

    await make_properties(session_factory, seed_tenant["tenant_id"], 1)
    batch_client.submit_error = UpstreamError("secret upstream detail sk-123")

    r = await client.post("/v1/batches", headers=auth)
    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "Internal server error"
    assert "sk-123" not in r.text


async def test_refresher_polls_and_applies(seed_tenant, session_factory, batch_client, client, auth):
    ids = await make_properties(session_factory, seed_tenant["tenant_id"], 2)
    await client.post("/v1/batches", headers=auth)

    stats = await refresh_active_batches_once(session_factory, batch_client)
    assert stats == {"checked": 1, "applied": 0, "failed": 0}

    batch_client.complete("batch_1", [ok_outcome(ids[0], "紹介文A"), ok_outcome(ids[1], "紹介文B")])
    stats = await refresh_active_batches_once(session_factory, batch_client)
    assert stats == {"checked": 1, "applied": 1, "failed": 0}

    r = await client.get("/v1/batches/batch_1", headers=auth)
    assert r.json()["data"]["results_applied_at"] is not None

    # nothing left to refresh
    stats = await refresh_active_batches_once(session_factory, batch_client)
    assert stats["checked"] == 0
