from __future__ import annotations

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.errors import AuthorizationError, NotFoundError
from propai.models.base import utcnow
from propai.models.batch_generation import (
    ACTIVE_STATUSES,
    BATCH_STATUSES,
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    BatchGeneration,
)
from propai.services.openai_batch import BatchStatusSnapshot, BatchSubmission, CostEstimate
from propai.services.request_cache import RequestCache

log = logging.getLogger(__name__)

# direct transitions of the external job
_EDGES: dict[str, tuple[str, ...]] = {
    "validating": ("in_progress", "failed", "expired", "cancelling"),
    "in_progress": ("finalizing", "failed", "expired", "cancelling"),
    "finalizing": ("completed", "cancelling"),
    "cancelling": ("cancelled",),
}


def _reachable(status: str) -> frozenset[str]:
    # polling can skip intermediate states, so any later state is a valid move
    seen: set[str] = set()
    stack = list(_EDGES.get(status, ()))
    while stack:
        s = stack.pop()
        if s not in seen:
            seen.add(s)
            stack.extend(_EDGES.get(s, ()))
    return frozenset(seen)


REACHABLE = {s: _reachable(s) for s in BATCH_STATUSES}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


async def get_by_batch_id(db: AsyncSession, batch_id: str, *, for_update: bool = False) -> BatchGeneration | None:
    stmt = select(BatchGeneration).where(BatchGeneration.batch_id == batch_id)
    if for_update:
        stmt = stmt.with_for_update()
    stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_owned(
    db: AsyncSession,
    *,
    tenant_id: str,
    batch_id: str,
    for_update: bool = False,
) -> BatchGeneration:
    record = await get_by_batch_id(db, batch_id, for_update=for_update)
    if not record:
        raise NotFoundError("Batch job not found")
    if record.tenant_id != tenant_id:
        log.warning("cross-tenant batch access tenant=%s batch=%s", tenant_id, batch_id)
        raise AuthorizationError("Not allowed to access this batch job")
    return record


async def count_non_terminal(db: AsyncSession, *, tenant_id: str) -> int:
    stmt = select(func.count()).select_from(BatchGeneration).where(
        BatchGeneration.tenant_id == tenant_id,
        BatchGeneration.status.in_(NON_TERMINAL_STATUSES),
    )
    return (await db.execute(stmt)).scalar_one()


async def list_active(
    db: AsyncSession,
    *,
    tenant_id: str,
    cache: RequestCache | None = None,
) -> list[BatchGeneration]:
    async def _load() -> list[BatchGeneration]:
        stmt = (
            select(BatchGeneration)
            .where(BatchGeneration.tenant_id == tenant_id, BatchGeneration.status.in_(ACTIVE_STATUSES))
            .order_by(BatchGeneration.created_at.desc())
        )
        return list((await db.execute(stmt)).scalars().all())

    if cache is None:
        return await _load()
    return await cache.get_or_load(("active_batches", tenant_id), _load)


async def list_for_tenant(
    db: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[BatchGeneration], int]:
    total = (
        await db.execute(
            select(func.count()).select_from(BatchGeneration).where(BatchGeneration.tenant_id == tenant_id)
        )
    ).scalar_one()
    stmt = (
        select(BatchGeneration)
        .where(BatchGeneration.tenant_id == tenant_id)
        .order_by(BatchGeneration.created_at.desc(), BatchGeneration.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list((await db.execute(stmt)).scalars().all()), total


async def list_needing_refresh(db: AsyncSession, *, limit: int = 100) -> list[tuple[str, str]]:
    """(tenant_id, batch_id) of jobs still running, or completed with results not yet applied."""
    stmt = (
        select(BatchGeneration.tenant_id, BatchGeneration.batch_id)
        .where(
            or_(
                BatchGeneration.status.in_(NON_TERMINAL_STATUSES),
                (BatchGeneration.status == "completed")
                & BatchGeneration.results_applied_at.is_(None)
                & or_(BatchGeneration.output_file_id.is_not(None), BatchGeneration.error_file_id.is_not(None)),
            )
        )
        .order_by(BatchGeneration.updated_at.asc())
        .limit(limit)
    )
    return [(r.tenant_id, r.batch_id) for r in (await db.execute(stmt)).all()]


async def create_record(
    db: AsyncSession,
    *,
    tenant_id: str,
    submission: BatchSubmission,
    total_requests: int,
    estimate: CostEstimate,
) -> BatchGeneration:
    record = BatchGeneration(
        tenant_id=tenant_id,
        batch_id=submission.batch_id,
        input_file_id=submission.input_file_id,
        # always tracked from validating; the first poll moves it on
        status="validating",
        total_requests=total_requests,
        completed_requests=0,
        failed_requests=0,
        estimated_tokens=estimate.estimated_tokens,
        estimated_cost=estimate.estimated_cost,
    )
    db.add(record)
    await db.flush()
    return record


def apply_snapshot(record: BatchGeneration, snap: BatchStatusSnapshot) -> bool:
    """
    Reconcile the local record with the external job. Returns True if anything changed.

    Terminal records are never touched. A terminal external state always wins; any other
    move must be forward in the state graph, regressions from stale reads are ignored.
    """
    if is_terminal(record.status):
        return False

    changed = False
    new_status = snap.status

    if new_status != record.status:
        if new_status in REACHABLE.get(record.status, frozenset()):
            record.status = new_status
            changed = True
        elif is_terminal(new_status):
            log.warning(
                "batch %s jumped %s -> %s outside the expected transitions", record.batch_id, record.status, new_status
            )
            record.status = new_status
            changed = True
        else:
            log.info("ignoring stale batch status %s -> %s for %s", record.status, new_status, record.batch_id)
            return False

    if snap.output_file_id and snap.output_file_id != record.output_file_id:
        record.output_file_id = snap.output_file_id
        changed = True
    if snap.error_file_id and snap.error_file_id != record.error_file_id:
        record.error_file_id = snap.error_file_id
        changed = True
    if snap.completed is not None and snap.completed != record.completed_requests:
        record.completed_requests = snap.completed
        changed = True
    if snap.failed is not None and snap.failed != record.failed_requests:
        record.failed_requests = snap.failed
        changed = True

    if record.status == "completed" and record.completed_at is None:
        record.completed_at = utcnow()
        changed = True

    return changed
