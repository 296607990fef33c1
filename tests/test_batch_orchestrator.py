import pytest
from sqlalchemy import select, update

from propai.core.config import settings
from propai.core.errors import AuthorizationError, ConflictError, NotFoundError, QuotaExceededError, UpstreamError
from propai.core.ids import correlation_id
from propai.models.batch_generation import BatchGeneration
from propai.models.property import Property
from propai.models.usage_token import UsageToken
from propai.services import batch_generations as store
from propai.services import batch_orchestrator as orchestrator
from propai.services.openai_batch import BatchStatusSnapshot

from tests.fakes import error_outcome, ok_outcome
from tests.fixtures_seed import make_properties


async def _submit(session_factory, client, tenant_id, **kw):
    async with session_factory() as db:
        res = await orchestrator.submit_generation(db, client, tenant_id=tenant_id, **kw)
        await db.commit()
    return res


async def _properties(session_factory, ids):
    async with session_factory() as db:
        rows = (await db.execute(select(Property).where(Property.id.in_(ids)))).scalars().all()
        return {p.id: p for p in rows}


async def _record(session_factory, batch_id) -> BatchGeneration:
    async with session_factory() as db:
        return await store.get_by_batch_id(db, batch_id)


async def _tokens_used(session_factory, tenant_id) -> int:
    async with session_factory() as db:
        stmt = select(UsageToken.tokens_used).where(UsageToken.tenant_id == tenant_id)
        return (await db.execute(stmt)).scalar_one()


async def test_submit_tags_candidates_and_records_job(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 3)
    [described] = await make_properties(session_factory, tenant_id, 1, ai_description="既存の紹介文")

    res = await _submit(session_factory, batch_client, tenant_id)

    assert res.batch_id == "batch_1"
    assert res.property_count == 3
    assert res.estimated_tokens == 3 * (settings.batch_avg_prompt_tokens + settings.batch_avg_completion_tokens)
    assert res.estimated_cost == pytest.approx(3 * (150 * 2.5 + 100 * 10.0) / 1_000_000)

    sent = batch_client.submitted[0]
    assert {r["custom_id"] for r in sent} == {correlation_id(i) for i in ids}
    assert sent[0]["url"] == "/v1/chat/completions"
    assert sent[0]["body"]["messages"][0]["role"] == "system"

    props = await _properties(session_factory, ids + [described])
    assert {props[i].batch_job_id for i in ids} == {"batch_1"}
    assert props[described].batch_job_id is None

    record = await _record(session_factory, "batch_1")
    assert record.status == "validating"
    assert record.total_requests == 3
    assert record.input_file_id == "file_in_1"


async def test_submit_with_nothing_to_do_returns_none(session_factory, seed_tenant, batch_client):
    await make_properties(session_factory, seed_tenant["tenant_id"], 2, ai_description="done")
    assert await _submit(session_factory, batch_client, seed_tenant["tenant_id"]) is None
    assert batch_client.submitted == []


async def test_submit_restricted_to_given_ids(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 3)
    res = await _submit(session_factory, batch_client, tenant_id, property_ids=[ids[1], ids[1], "prp_missing"])
    assert res.property_count == 1
    assert [r["custom_id"] for r in batch_client.submitted[0]] == [correlation_id(ids[1])]


async def test_second_submit_conflicts_while_job_is_open(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 2)
    await _submit(session_factory, batch_client, tenant_id)
    await make_properties(session_factory, tenant_id, 1)

    with pytest.raises(ConflictError) as exc:
        await _submit(session_factory, batch_client, tenant_id)
    assert exc.value.active_count == 1
    assert len(batch_client.submitted) == 1


async def test_submit_refused_when_quota_too_small(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 4)
    async with session_factory() as db:
        await db.execute(update(UsageToken).where(UsageToken.tenant_id == tenant_id).values(tokens_limit=500))
        await db.commit()

    with pytest.raises(QuotaExceededError) as exc:
        await _submit(session_factory, batch_client, tenant_id)
    assert exc.value.remaining == 500
    assert exc.value.requested == 1000
    assert batch_client.submitted == []


async def test_upstream_failure_leaves_no_local_trace(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 2)
    batch_client.submit_error = UpstreamError("timed out", outcome_unknown=True)

    with pytest.raises(UpstreamError):
        await _submit(session_factory, batch_client, tenant_id)

    async with session_factory() as db:
        assert await store.count_non_terminal(db, tenant_id=tenant_id) == 0
    props = await _properties(session_factory, ids)
    assert all(p.batch_job_id is None for p in props.values())


async def test_status_poll_moves_forward_and_ignores_stale_reads(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 2)
    await _submit(session_factory, batch_client, tenant_id)

    batch_client.statuses["batch_1"] = BatchStatusSnapshot(status="in_progress", total=2, completed=1, failed=0)
    async with session_factory() as db:
        record = await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert record.status == "in_progress"
    assert record.completed_requests == 1

    batch_client.statuses["batch_1"] = BatchStatusSnapshot(status="validating")
    async with session_factory() as db:
        record = await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert record.status == "in_progress"


async def test_terminal_job_is_not_polled_again(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.statuses["batch_1"] = BatchStatusSnapshot(status="expired")

    async with session_factory() as db:
        record = await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert record.status == "expired"
    calls = batch_client.status_calls

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
    assert batch_client.status_calls == calls


async def test_status_of_unknown_or_foreign_job(session_factory, seed_tenant, other_tenant, batch_client):
    await make_properties(session_factory, seed_tenant["tenant_id"], 1)
    await _submit(session_factory, batch_client, seed_tenant["tenant_id"])

    async with session_factory() as db:
        with pytest.raises(NotFoundError):
            await orchestrator.get_batch_status(db, batch_client, tenant_id=seed_tenant["tenant_id"], batch_id="nope")
        with pytest.raises(AuthorizationError):
            await orchestrator.get_batch_status(db, batch_client, tenant_id=other_tenant["tenant_id"], batch_id="batch_1")


async def test_apply_writes_descriptions_once(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 3)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.complete(
        "batch_1",
        [ok_outcome(ids[0], "駅近の明るいお部屋です。"), ok_outcome(ids[1], "静かな住宅街の物件です。")],
        errors=[error_outcome(ids[2])],
    )

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        first = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    assert (first.success_count, first.error_count, first.total_results) == (2, 1, 3)
    assert first.already_applied is False

    props = await _properties(session_factory, ids)
    assert props[ids[0]].ai_description == "駅近の明るいお部屋です。"
    assert props[ids[0]].batch_job_id is None
    assert props[ids[2]].ai_description is None
    # failed item keeps its tag (default setting)
    assert props[ids[2]].batch_job_id == "batch_1"
    assert await _tokens_used(session_factory, tenant_id) == 400

    record = await _record(session_factory, "batch_1")
    assert record.status == "completed"
    assert record.results_applied_at is not None
    assert record.actual_cost == pytest.approx((240 * 2.5 + 160 * 10.0) / 1_000_000)

    reads = batch_client.results_calls
    async with session_factory() as db:
        again = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert (again.success_count, again.error_count, again.total_results) == (2, 1, 3)
    assert again.already_applied is True
    assert batch_client.results_calls == reads
    assert await _tokens_used(session_factory, tenant_id) == 400


async def test_apply_does_not_overwrite_existing_description(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    async with session_factory() as db:
        await db.execute(update(Property).where(Property.id == pid).values(ai_description="手書きの紹介文"))
        await db.commit()

    batch_client.complete("batch_1", [ok_outcome(pid, "生成された紹介文")])
    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    props = await _properties(session_factory, [pid])
    assert props[pid].ai_description == "手書きの紹介文"
    assert props[pid].batch_job_id is None


async def test_duplicate_results_count_once(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.complete("batch_1", [ok_outcome(pid, "一回目"), ok_outcome(pid, "二回目")])

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        res = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    assert (res.success_count, res.total_results) == (1, 1)
    assert (await _properties(session_factory, [pid]))[pid].ai_description == "一回目"


async def test_apply_before_results_exist_conflicts(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)

    async with session_factory() as db:
        with pytest.raises(ConflictError):
            await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")


async def test_cancel_clears_tags_and_frees_the_slot(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 2)
    await _submit(session_factory, batch_client, tenant_id)

    async with session_factory() as db:
        res = await orchestrator.cancel_batch(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert res.status == "cancelled"
    assert res.already_finished is False
    assert batch_client.cancelled == ["batch_1"]

    props = await _properties(session_factory, ids)
    assert all(p.batch_job_id is None for p in props.values())

    # the tenant can submit again
    again = await _submit(session_factory, batch_client, tenant_id)
    assert again.batch_id == "batch_2"


async def test_cancel_of_finished_job_is_a_no_op(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.complete("batch_1", [ok_outcome(pid, "紹介文")])
    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    async with session_factory() as db:
        res = await orchestrator.cancel_batch(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert res.already_finished is True
    assert res.status == "completed"
    assert batch_client.cancelled == []


async def test_cancel_racing_with_completion_records_completion(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.complete("batch_1", [ok_outcome(pid, "紹介文")])
    batch_client.cancel_error = UpstreamError("cannot cancel a completed batch")

    async with session_factory() as db:
        res = await orchestrator.cancel_batch(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert res.already_finished is True
    assert res.status == "completed"

    record = await _record(session_factory, "batch_1")
    assert record.output_file_id == "batch_1_out"
    # tag stays until results are applied
    assert (await _properties(session_factory, [pid]))[pid].batch_job_id == "batch_1"


async def test_overview_counts_pending_and_active(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    await make_properties(session_factory, tenant_id, 2)
    await make_properties(session_factory, tenant_id, 1, ai_description="done")

    async with session_factory() as db:
        ov = await orchestrator.generation_overview(db, tenant_id=tenant_id)
    assert (ov.active_batches, ov.pending_properties) == (0, 2)

    await _submit(session_factory, batch_client, tenant_id)
    async with session_factory() as db:
        ov = await orchestrator.generation_overview(db, tenant_id=tenant_id)
    assert ov.active_batches == 1
    assert ov.pending_properties == 0
    assert ov.active[0].batch_id == "batch_1"


async def test_failed_item_tag_cleared_when_configured(session_factory, seed_tenant, batch_client, monkeypatch):
    monkeypatch.setattr(settings, "batch_clear_tag_on_item_error", True)
    tenant_id = seed_tenant["tenant_id"]
    ids = await make_properties(session_factory, tenant_id, 2)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.complete("batch_1", [ok_outcome(ids[0], "日当たり良好です。")], errors=[error_outcome(ids[1])])

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        res = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert (res.success_count, res.error_count) == (1, 1)

    props = await _properties(session_factory, ids)
    assert props[ids[1]].batch_job_id is None
    assert props[ids[1]].ai_description is None

    # the failed item is picked up again by the next run
    again = await _submit(session_factory, batch_client, tenant_id)
    assert again is not None
    assert [r["custom_id"] for r in batch_client.submitted[1]] == [correlation_id(ids[1])]


async def test_apply_does_not_complete_a_cancelling_job(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.statuses["batch_1"] = BatchStatusSnapshot(status="cancelling", output_file_id="batch_1_out")
    batch_client.results["batch_1_out"] = [ok_outcome(pid, "途中まで生成された紹介文")]

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        res = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    assert res.success_count == 1
    record = await _record(session_factory, "batch_1")
    assert record.status == "cancelling"
    assert record.results_applied_at is not None


async def test_completed_job_with_only_error_file_is_refreshed(session_factory, seed_tenant, batch_client):
    tenant_id = seed_tenant["tenant_id"]
    [pid] = await make_properties(session_factory, tenant_id, 1)
    await _submit(session_factory, batch_client, tenant_id)
    batch_client.statuses["batch_1"] = BatchStatusSnapshot(
        status="completed", error_file_id="batch_1_err", total=1, completed=0, failed=1
    )
    batch_client.results["batch_1_err"] = [error_outcome(pid)]

    async with session_factory() as db:
        await orchestrator.get_batch_status(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()

    async with session_factory() as db:
        assert await store.list_needing_refresh(db) == [(tenant_id, "batch_1")]
        res = await orchestrator.apply_batch_results(db, batch_client, tenant_id=tenant_id, batch_id="batch_1")
        await db.commit()
    assert (res.success_count, res.error_count) == (0, 1)

    async with session_factory() as db:
        assert await store.list_needing_refresh(db) == []
