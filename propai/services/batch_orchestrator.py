from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, func, not_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.config import settings
from propai.core.errors import ConflictError, NotFoundError, QuotaExceededError, UpstreamError
from propai.core.ids import property_id_from_correlation
from propai.models.base import utcnow
from propai.models.batch_generation import NON_TERMINAL_STATUSES, BatchGeneration
from propai.models.property import Property
from propai.models.tenant import Tenant
from propai.services import batch_generations as store
from propai.services import usage_ledger
from propai.services.openai_batch import (
    BatchClient,
    BatchOutcome,
    actual_cost,
    build_batch_requests,
    estimate_cost,
)
from propai.services.request_cache import RequestCache

log = logging.getLogger(__name__)

ACTOR = "batch"


@dataclass(frozen=True)
class SubmitResult:
    batch_id: str
    property_count: int
    estimated_cost: float
    estimated_tokens: int


@dataclass(frozen=True)
class ApplyResult:
    success_count: int
    error_count: int
    total_results: int
    already_applied: bool = False


@dataclass(frozen=True)
class CancelResult:
    batch_id: str
    status: str
    already_finished: bool


@dataclass(frozen=True)
class Overview:
    active_batches: int
    pending_properties: int
    active: list[BatchGeneration]


def _in_flight_batch_ids(tenant_id: str):
    return select(BatchGeneration.batch_id).where(
        BatchGeneration.tenant_id == tenant_id,
        BatchGeneration.status.in_(NON_TERMINAL_STATUSES),
    )


def _pending_conditions(tenant_id: str):
    # a tag pointing at a finished job does not count as in flight
    return and_(
        Property.tenant_id == tenant_id,
        Property.ai_description.is_(None),
        (Property.batch_job_id.is_(None)) | not_(Property.batch_job_id.in_(_in_flight_batch_ids(tenant_id))),
    )


async def _select_candidates(
    db: AsyncSession,
    *,
    tenant_id: str,
    property_ids: list[str] | None,
) -> list[Property]:
    stmt = select(Property).where(_pending_conditions(tenant_id))
    if property_ids is not None:
        ids = list(dict.fromkeys(property_ids))
        if not ids:
            return []
        stmt = stmt.where(Property.id.in_(ids))
    stmt = stmt.order_by(Property.created_at.asc(), Property.id.asc()).limit(settings.batch_max_candidates)
    return list((await db.execute(stmt)).scalars().all())


async def _lock_tenant(db: AsyncSession, tenant_id: str) -> None:
    # serialises concurrent submissions of one tenant
    stmt = select(Tenant.id).where(Tenant.id == tenant_id).with_for_update()
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        raise NotFoundError("Tenant not found")


async def submit_generation(
    db: AsyncSession,
    client: BatchClient,
    *,
    tenant_id: str,
    property_ids: list[str] | None = None,
) -> SubmitResult | None:
    """
    Start one description-generation batch for the tenant.

    Returns None when no property needs a description. Local preconditions (single open job,
    quota) are checked before anything is sent upstream. The caller commits.
    """
    await _lock_tenant(db, tenant_id)

    open_jobs = await store.count_non_terminal(db, tenant_id=tenant_id)
    if open_jobs:
        raise ConflictError(f"{open_jobs} generation job(s) already running", active_count=open_jobs)

    candidates = await _select_candidates(db, tenant_id=tenant_id, property_ids=property_ids)
    if not candidates:
        return None

    estimate = estimate_cost(len(candidates))
    left = await usage_ledger.remaining(db, tenant_id=tenant_id)
    if left < estimate.estimated_tokens:
        raise QuotaExceededError(
            "Not enough tokens left for this batch", remaining=left, requested=estimate.estimated_tokens
        )

    candidate_ids = [p.id for p in candidates]
    requests = build_batch_requests(candidates)

    try:
        submission = await client.submit(requests)
    except UpstreamError as e:
        if e.outcome_unknown:
            log.error(
                "batch submit outcome unknown tenant=%s candidates=%s err=%s", tenant_id, candidate_ids, e.message
            )
        else:
            log.error("batch submit failed tenant=%s err=%s", tenant_id, e.message)
        raise

    try:
        record = await store.create_record(
            db,
            tenant_id=tenant_id,
            submission=submission,
            total_requests=len(candidates),
            estimate=estimate,
        )
        await db.execute(
            update(Property)
            .where(Property.tenant_id == tenant_id, Property.id.in_(candidate_ids))
            .values(batch_job_id=submission.batch_id, updated_by=ACTOR)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
    except IntegrityError:
        # another submission won the race; do not leave our job running upstream
        await db.rollback()
        log.warning("batch %s lost the single-job race for tenant=%s, cancelling", submission.batch_id, tenant_id)
        try:
            await client.cancel(submission.batch_id)
        except UpstreamError:
            log.exception("could not cancel orphaned batch %s", submission.batch_id)
        raise ConflictError("A generation job is already running", active_count=1)

    log.info(
        "batch submitted tenant=%s batch=%s requests=%s est_tokens=%s est_cost=%.4f",
        tenant_id,
        record.batch_id,
        record.total_requests,
        estimate.estimated_tokens,
        estimate.estimated_cost,
    )
    return SubmitResult(
        batch_id=record.batch_id,
        property_count=len(candidates),
        estimated_cost=estimate.estimated_cost,
        estimated_tokens=estimate.estimated_tokens,
    )


async def get_batch_status(
    db: AsyncSession,
    client: BatchClient,
    *,
    tenant_id: str,
    batch_id: str,
) -> BatchGeneration:
    """Poll the external job and fold any change into the local record (no write when unchanged)."""
    record = await store.get_owned(db, tenant_id=tenant_id, batch_id=batch_id, for_update=True)
    if store.is_terminal(record.status):
        return record

    snap = await client.get_status(batch_id)
    if store.apply_snapshot(record, snap):
        await db.flush()
        log.info("batch %s status=%s completed=%s failed=%s", batch_id, record.status,
                 record.completed_requests, record.failed_requests)
    return record


async def _load_outcomes(client: BatchClient, record: BatchGeneration) -> list[BatchOutcome]:
    outcomes: list[BatchOutcome] = []
    if record.output_file_id:
        outcomes.extend(await client.get_results(record.output_file_id))
    if record.error_file_id:
        outcomes.extend(await client.get_results(record.error_file_id))
    return outcomes


async def apply_batch_results(
    db: AsyncSession,
    client: BatchClient,
    *,
    tenant_id: str,
    batch_id: str,
) -> ApplyResult:
    """
    Write generated descriptions back onto properties, once.

    - Description writes only fill empty ai_description, so a replay writes nothing.
    - The first application stamps results_applied_at and stores the counts; later calls
      return those counts without re-reading the artifacts and without charging again.
    """
    record = await store.get_owned(db, tenant_id=tenant_id, batch_id=batch_id, for_update=True)

    if record.results_applied_at is not None:
        return ApplyResult(
            success_count=record.applied_success_count or 0,
            error_count=record.applied_error_count or 0,
            total_results=record.applied_total_results or 0,
            already_applied=True,
        )

    if not record.output_file_id and not record.error_file_id:
        raise ConflictError("Batch job has no results yet")

    outcomes = await _load_outcomes(client, record)

    seen: set[str] = set()
    unique: list[BatchOutcome] = []
    success = errors = 0

    for outcome in outcomes:
        if outcome.custom_id in seen:
            log.warning("duplicate result for %s in batch %s", outcome.custom_id, batch_id)
            continue
        seen.add(outcome.custom_id)
        unique.append(outcome)

        property_id = property_id_from_correlation(outcome.custom_id)
        if property_id is None:
            log.warning("unrecognised custom_id %r in batch %s", outcome.custom_id, batch_id)
            errors += 1
            continue

        if not outcome.ok:
            errors += 1
            log.info("generation failed property=%s batch=%s err=%s", property_id, batch_id, outcome.error)
            if settings.batch_clear_tag_on_item_error:
                await db.execute(
                    update(Property)
                    .where(
                        Property.id == property_id,
                        Property.tenant_id == tenant_id,
                        Property.batch_job_id == batch_id,
                    )
                    .values(batch_job_id=None, updated_by=ACTOR)
                    .execution_options(synchronize_session=False)
                )
            continue

        res = await db.execute(
            update(Property)
            .where(
                Property.id == property_id,
                Property.tenant_id == tenant_id,
                Property.ai_description.is_(None),
            )
            .values(ai_description=outcome.content, batch_job_id=None, updated_by=ACTOR)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            log.info("property %s already described or gone, skipped", property_id)
        success += 1

    # anything of this job that ended up described is resolved
    await db.execute(
        update(Property)
        .where(
            Property.tenant_id == tenant_id,
            Property.batch_job_id == batch_id,
            Property.ai_description.is_not(None),
        )
        .values(batch_job_id=None)
        .execution_options(synchronize_session=False)
    )

    tokens = sum(o.total_tokens for o in unique)
    if tokens:
        # the work is already done upstream; record it without rejecting
        await usage_ledger.charge(db, tenant_id=tenant_id, amount=tokens)

    now = utcnow()
    record.actual_cost = actual_cost(unique)
    record.results_applied_at = now
    record.applied_success_count = success
    record.applied_error_count = errors
    record.applied_total_results = len(unique)
    if "completed" in store.REACHABLE.get(record.status, frozenset()):
        record.status = "completed"
        if record.completed_at is None:
            record.completed_at = now
    elif record.status != "completed":
        log.info("batch %s left in %s after applying results", batch_id, record.status)
    await db.flush()

    log.info(
        "batch results applied tenant=%s batch=%s success=%s errors=%s tokens=%s",
        tenant_id, batch_id, success, errors, tokens,
    )
    return ApplyResult(success_count=success, error_count=errors, total_results=len(unique))


async def cancel_batch(
    db: AsyncSession,
    client: BatchClient,
    *,
    tenant_id: str,
    batch_id: str,
) -> CancelResult:
    """
    Ask upstream to stop the job and abandon it locally.

    Already-finished jobs are left as they are (no-op success). If upstream finished the job
    on its own in the meantime, that terminal state is recorded instead.
    """
    record = await store.get_owned(db, tenant_id=tenant_id, batch_id=batch_id, for_update=True)
    if store.is_terminal(record.status):
        return CancelResult(batch_id=batch_id, status=record.status, already_finished=True)

    try:
        snap = await client.cancel(batch_id)
    except UpstreamError as e:
        log.warning("batch cancel rejected batch=%s err=%s, re-reading status", batch_id, e.message)
        snap = await client.get_status(batch_id)

    if store.is_terminal(snap.status) and snap.status != "cancelled":
        store.apply_snapshot(record, snap)
        await db.flush()
        return CancelResult(batch_id=batch_id, status=record.status, already_finished=True)

    record.status = "cancelled"
    await db.execute(
        update(Property)
        .where(Property.tenant_id == tenant_id, Property.batch_job_id == batch_id)
        .values(batch_job_id=None, updated_by=ACTOR)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    log.info("batch cancelled tenant=%s batch=%s", tenant_id, batch_id)
    return CancelResult(batch_id=batch_id, status=record.status, already_finished=False)


async def generation_overview(
    db: AsyncSession,
    *,
    tenant_id: str,
    cache: RequestCache | None = None,
) -> Overview:
    active = await store.list_active(db, tenant_id=tenant_id, cache=cache)
    pending = (
        await db.execute(select(func.count()).select_from(Property).where(_pending_conditions(tenant_id)))
    ).scalar_one()
    return Overview(active_batches=len(active), pending_properties=pending, active=active)

