from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.schemas.batch import (
    BatchApplyOut,
    BatchCancelOut,
    BatchGenerationOut,
    BatchOverviewOut,
    BatchPage,
    BatchSubmitIn,
    BatchSubmitOut,
)
from propai.schemas.common import ActionResult, success_result
from propai.services import batch_generations as store
from propai.services import batch_orchestrator as orchestrator
from propai.services.auth import Actor, get_actor
from propai.services.openai_batch import BatchClient, get_batch_client
from propai.services.request_cache import RequestCache, get_request_cache

router = APIRouter()


@router.post("/batches", response_model=ActionResult[BatchSubmitOut])
async def submit_batch(
    payload: BatchSubmitIn | None = Body(default=None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    client: BatchClient = Depends(get_batch_client),
):
    res = await orchestrator.submit_generation(
        db,
        client,
        tenant_id=actor.tenant_id,
        property_ids=payload.property_ids if payload else None,
    )
    if res is None:
        return success_result(None, "No properties need a description")

    await db.commit()
    return success_result(
        BatchSubmitOut(
            batch_id=res.batch_id,
            property_count=res.property_count,
            estimated_cost=res.estimated_cost,
            estimated_tokens=res.estimated_tokens,
        ),
        f"Generation started for {res.property_count} properties",
    )


@router.get("/batches", response_model=ActionResult[BatchPage])
async def list_batches(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await store.list_for_tenant(db, tenant_id=actor.tenant_id, limit=limit, offset=offset)
    return success_result(
        BatchPage(items=[BatchGenerationOut.model_validate(r) for r in rows], total=total, limit=limit, offset=offset)
    )


@router.get("/batches/overview", response_model=ActionResult[BatchOverviewOut])
async def overview(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: RequestCache = Depends(get_request_cache),
):
    ov = await orchestrator.generation_overview(db, tenant_id=actor.tenant_id, cache=cache)
    return success_result(
        BatchOverviewOut(
            active_batches=ov.active_batches,
            pending_properties=ov.pending_properties,
            active=[BatchGenerationOut.model_validate(r) for r in ov.active],
        )
    )


@router.get("/batches/{batch_id}", response_model=ActionResult[BatchGenerationOut])
async def batch_status(
    batch_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    client: BatchClient = Depends(get_batch_client),
):
    record = await orchestrator.get_batch_status(db, client, tenant_id=actor.tenant_id, batch_id=batch_id)
    await db.commit()
    return success_result(BatchGenerationOut.model_validate(record))


@router.post("/batches/{batch_id}/apply", response_model=ActionResult[BatchApplyOut])
async def apply_results(
    batch_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    client: BatchClient = Depends(get_batch_client),
):
    res = await orchestrator.apply_batch_results(db, client, tenant_id=actor.tenant_id, batch_id=batch_id)
    await db.commit()
    return success_result(
        BatchApplyOut(
            success_count=res.success_count,
            error_count=res.error_count,
            total_results=res.total_results,
            already_applied=res.already_applied,
        ),
        f"Processed: {res.success_count} succeeded, {res.error_count} failed",
    )


@router.post("/batches/{batch_id}/cancel", response_model=ActionResult[BatchCancelOut])
async def cancel(
    batch_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    client: BatchClient = Depends(get_batch_client),
):
    res = await orchestrator.cancel_batch(db, client, tenant_id=actor.tenant_id, batch_id=batch_id)
    await db.commit()
    msg = "Batch job had already finished" if res.already_finished else "Batch job cancelled"
    return success_result(
        BatchCancelOut(batch_id=res.batch_id, status=res.status, already_finished=res.already_finished), msg
    )
