ADMIN = {"X-Internal-Admin-Key": "test-internal"}
SIGNUP = {"auth_user_id": "auth-new", "name": "山田 太郎", "email": "Yamada@Yamada-Fudosan.co.jp", "company_name": "山田不動産"}


async def test_signup_provisions_tenant_key_and_allowance(client):
    r = await client.post("/v1/tenants", headers=ADMIN, json=SIGNUP)
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["tenant"]["email"] == "yamada@yamada-fudosan.co.jp"
    assert data["tokens_limit"] == 700_000
    assert data["api_key"].startswith("pa_")

    key = {"X-API-Key": data["api_key"]}
    r = await client.get("/v1/me", headers=key)
    assert r.json()["data"]["name"] == "山田 太郎"

    r = await client.get("/v1/usage", headers=key)
    usage = r.json()["data"]
    assert (usage["tokens_used"], usage["remaining"]) == (0, 700_000)


async def test_duplicate_email_is_a_conflict(client):
    assert (await client.post("/v1/tenants", headers=ADMIN, json=SIGNUP)).status_code == 200
    r = await client.post("/v1/tenants", headers=ADMIN, json={**SIGNUP, "auth_user_id": "auth-other"})
    assert r.status_code == 409
    assert r.json()["code"] == "CONFLICT"


async def test_signup_requires_internal_key(client):
    r = await client.post("/v1/tenants", json=SIGNUP)
    assert r.status_code == 403
    r = await client.post("/v1/tenants", headers={"X-Internal-Admin-Key": "wrong"}, json=SIGNUP)
    assert r.status_code == 403


async def test_profile_update_keeps_identity(client, auth, seed_tenant):
    r = await client.patch("/v1/me", headers=auth, json={"company_name": "新社名", "email": "x@y.z"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["company_name"] == "新社名"
    assert data["email"] == "owner@example.com"


async def test_plan_change_and_top_up(client, auth, seed_tenant):
    tenant_id = seed_tenant["tenant_id"]

    r = await client.post(f"/v1/internal/usage/{tenant_id}/plan", headers=ADMIN, json={"tokens_limit": 2_000_000})
    assert r.status_code == 200, r.text
    assert r.json()["data"]["tokens_limit"] == 2_000_000

    r = await client.post(f"/v1/internal/usage/{tenant_id}/top-up", headers=ADMIN, json={"tokens": 50_000})
    assert r.json()["data"]["additional_tokens"] == 50_000

    r = await client.get("/v1/usage", headers=auth)
    assert r.json()["data"]["remaining"] == 2_050_000

    r = await client.post(f"/v1/internal/usage/{tenant_id}/top-up", headers=auth, json={"tokens": 1})
    assert r.status_code == 403


async def test_internal_endpoints_unknown_tenant(client):
    r = await client.post("/v1/internal/usage/tnt_missing/plan", headers=ADMIN, json={"tokens_limit": 1})
    assert r.status_code == 404


async def test_tenant_reads_are_memoised_per_request(session_factory, seed_tenant):
    from propai.services.request_cache import RequestCache
    from propai.services.tenants import get_tenant, update_tenant

    cache = RequestCache()
    async with session_factory() as db:
        first = await get_tenant(db, tenant_id=seed_tenant["tenant_id"], cache=cache)
        second = await get_tenant(db, tenant_id=seed_tenant["tenant_id"], cache=cache)
        assert first is second
        assert cache.hits == 1

        await update_tenant(db, tenant_id=seed_tenant["tenant_id"], changes={"name": "新しい名前"}, cache=cache)
        await get_tenant(db, tenant_id=seed_tenant["tenant_id"], cache=cache)
        # update dropped the cached entry
        assert cache.hits == 2
