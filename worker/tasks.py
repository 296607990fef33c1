import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from propai.core.config import settings
from propai.core.errors import AppError
import propai.models  # noqa: F401  # ensures Models are registered
from propai.services import batch_generations as store
from propai.services import batch_orchestrator as orchestrator
from propai.services import usage_ledger
from propai.services.openai_batch import BatchClient, get_batch_client
from worker.celery_app import celery


log = logging.getLogger(__name__)

REFRESH_LIMIT = 100


async def refresh_active_batches_once(Session, client: BatchClient) -> dict[str, int]:
    """
    One pass over running jobs: poll each, apply results of the ones that completed.

    Each job gets its own session and transaction; a failing job is logged and skipped.
    """
    stats = {"checked": 0, "applied": 0, "failed": 0}

    async with Session() as db:
        jobs = await store.list_needing_refresh(db, limit=REFRESH_LIMIT)

    for tenant_id, batch_id in jobs:
        stats["checked"] += 1
        async with Session() as db:
            try:
                record = await orchestrator.get_batch_status(db, client, tenant_id=tenant_id, batch_id=batch_id)
                if record.status == "completed" and record.results_applied_at is None:
                    await orchestrator.apply_batch_results(db, client, tenant_id=tenant_id, batch_id=batch_id)
                    stats["applied"] += 1
                await db.commit()
            except AppError as e:
                await db.rollback()
                stats["failed"] += 1
                log.warning("refresh failed tenant=%s batch=%s code=%s err=%s", tenant_id, batch_id, e.code, e.message)
            except Exception:
                await db.rollback()
                stats["failed"] += 1
                log.exception("refresh crashed tenant=%s batch=%s", tenant_id, batch_id)

    log.info("batch refresh: checked=%s applied=%s failed=%s", stats["checked"], stats["applied"], stats["failed"])
    return stats


async def reset_usage_periods_once(Session) -> int:
    async with Session() as db:
        n = await usage_ledger.reset_expired_periods(db)
        await db.commit()
    log.info("usage reset: %s tenant(s) rolled to a new period", n)
    return n


async def _refresh_active_batches() -> dict[str, int]:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    try:
        return await refresh_active_batches_once(Session, get_batch_client())
    finally:
        await engine.dispose()


async def _reset_usage_periods() -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    try:
        return await reset_usage_periods_once(Session)
    finally:
        await engine.dispose()


@celery.task(name="worker.tasks.refresh_active_batches")
def refresh_active_batches() -> dict[str, int]:
    return asyncio.run(_refresh_active_batches())


@celery.task(name="worker.tasks.reset_usage_periods")
def reset_usage_periods() -> int:
    return asyncio.run(_reset_usage_periods())
