from __future__ import annotations

import calendar
import logging
from datetime import datetime

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.config import settings
from propai.core.errors import NotFoundError, QuotaExceededError
from propai.models.base import utcnow
from propai.models.usage_token import UsageToken
from propai.services.request_cache import RequestCache

log = logging.getLogger(__name__)


def add_month(dt: datetime) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)."""
    year = dt.year + (1 if dt.month == 12 else 0)
    month = 1 if dt.month == 12 else dt.month + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _cap():
    return UsageToken.tokens_limit + UsageToken.additional_tokens


async def create_initial_allowance(
    db: AsyncSession,
    *,
    tenant_id: str,
    tokens_limit: int | None = None,
) -> UsageToken:
    row = UsageToken(
        tenant_id=tenant_id,
        tokens_used=0,
        tokens_limit=settings.trial_tokens_limit if tokens_limit is None else tokens_limit,
        additional_tokens=0,
        reset_date=add_month(utcnow()),
    )
    db.add(row)
    await db.flush()
    return row


async def get_usage(db: AsyncSession, *, tenant_id: str, cache: RequestCache | None = None) -> UsageToken:
    async def _load() -> UsageToken | None:
        stmt = (
            select(UsageToken)
            .where(UsageToken.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    row = await cache.get_or_load(("usage", tenant_id), _load) if cache else await _load()
    if not row:
        raise NotFoundError("Usage record not found")
    return row


async def remaining(db: AsyncSession, *, tenant_id: str) -> int:
    stmt = select(UsageToken.tokens_used, UsageToken.tokens_limit, UsageToken.additional_tokens).where(
        UsageToken.tenant_id == tenant_id
    )
    row = (await db.execute(stmt)).one_or_none()
    if not row:
        raise NotFoundError("Usage record not found")
    return max(0, row.tokens_limit + row.additional_tokens - row.tokens_used)


async def consume(db: AsyncSession, *, tenant_id: str, amount: int) -> int:
    """
    Add `amount` to tokens_used only if the result stays within limit + additional.

    Single conditional UPDATE, so concurrent callers can never overshoot the quota.
    Rejects the whole amount with QuotaExceededError otherwise. Returns the remaining allowance.
    The caller owns the transaction.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")

    stmt = (
        update(UsageToken)
        .where(
            UsageToken.tenant_id == tenant_id,
            UsageToken.tokens_used + amount <= _cap(),
        )
        .values(tokens_used=UsageToken.tokens_used + amount)
        .returning(UsageToken.tokens_used, UsageToken.tokens_limit, UsageToken.additional_tokens)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one_or_none()
    if row is not None:
        return row.tokens_limit + row.additional_tokens - row.tokens_used

    left = await remaining(db, tenant_id=tenant_id)
    log.info("quota exceeded tenant=%s requested=%s remaining=%s", tenant_id, amount, left)
    raise QuotaExceededError("Token quota exceeded", remaining=left, requested=amount)


async def charge(db: AsyncSession, *, tenant_id: str, amount: int) -> int:
    """
    Record usage for work that already happened upstream.

    Never rejects; tokens_used is capped at limit + additional. Returns the new tokens_used.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")

    new_used = case(
        (UsageToken.tokens_used + amount <= _cap(), UsageToken.tokens_used + amount),
        # plan was lowered below current usage; leave the counter alone
        (UsageToken.tokens_used > _cap(), UsageToken.tokens_used),
        else_=_cap(),
    )
    stmt = (
        update(UsageToken)
        .where(UsageToken.tenant_id == tenant_id)
        .values(tokens_used=new_used)
        .returning(UsageToken.tokens_used)
        .execution_options(synchronize_session=False)
    )
    used = (await db.execute(stmt)).scalar_one_or_none()
    if used is None:
        raise NotFoundError("Usage record not found")
    return used


async def release(db: AsyncSession, *, tenant_id: str, amount: int) -> int:
    """Give back part of a reservation made with `consume`. Returns the new tokens_used."""
    if amount < 0:
        raise ValueError("amount must be >= 0")

    new_used = case(
        (UsageToken.tokens_used >= amount, UsageToken.tokens_used - amount),
        else_=0,
    )
    stmt = (
        update(UsageToken)
        .where(UsageToken.tenant_id == tenant_id)
        .values(tokens_used=new_used)
        .returning(UsageToken.tokens_used)
        .execution_options(synchronize_session=False)
    )
    used = (await db.execute(stmt)).scalar_one_or_none()
    if used is None:
        raise NotFoundError("Usage record not found")
    return used


async def settle(db: AsyncSession, *, tenant_id: str, reserved: int, actual: int) -> None:
    """Turn a reservation into the actual usage."""
    if actual < reserved:
        await release(db, tenant_id=tenant_id, amount=reserved - actual)
    elif actual > reserved:
        await charge(db, tenant_id=tenant_id, amount=actual - reserved)


async def set_plan_limit(db: AsyncSession, *, tenant_id: str, tokens_limit: int) -> UsageToken:
    row = await get_usage(db, tenant_id=tenant_id)
    row.tokens_limit = tokens_limit
    await db.flush()
    return row


async def add_additional_tokens(db: AsyncSession, *, tenant_id: str, tokens: int) -> UsageToken:
    stmt = (
        update(UsageToken)
        .where(UsageToken.tenant_id == tenant_id)
        .values(additional_tokens=UsageToken.additional_tokens + tokens)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    if res.rowcount == 0:
        raise NotFoundError("Usage record not found")
    return await get_usage(db, tenant_id=tenant_id)


async def reset_expired_periods(db: AsyncSession, *, now: datetime | None = None) -> int:
    """
    Monthly roll-over: zero tokens_used and move reset_date past `now` for every due row.

    Top-ups are kept. Returns the number of rows reset.
    """
    now = now or utcnow()
    stmt = (
        select(UsageToken)
        .where(UsageToken.reset_date <= now)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    rows = (await db.execute(stmt)).scalars().all()

    # sqlite hands back naive datetimes
    cmp_now = now.replace(tzinfo=None) if rows and rows[0].reset_date.tzinfo is None else now

    for row in rows:
        next_reset = row.reset_date
        while next_reset <= cmp_now:
            next_reset = add_month(next_reset)
        row.tokens_used = 0
        row.reset_date = next_reset

    await db.flush()
    if rows:
        log.info("usage periods reset count=%s", len(rows))
    return len(rows)

