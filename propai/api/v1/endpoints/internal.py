import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.schemas.common import ActionResult, success_result
from propai.schemas.usage import PlanLimitIn, TopUpIn, UsageOut
from propai.services.internal_admin import require_internal_admin
from propai.services.usage_ledger import add_additional_tokens, set_plan_limit

log = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_internal_admin)])


# Billing transitions. The payment provider webhook (signature checked upstream) lands here.

@router.post("/internal/usage/{tenant_id}/plan", response_model=ActionResult[UsageOut])
async def set_plan(tenant_id: str, payload: PlanLimitIn, db: AsyncSession = Depends(get_db)):
    row = await set_plan_limit(db, tenant_id=tenant_id, tokens_limit=payload.tokens_limit)
    await db.commit()
    log.info("plan limit set tenant=%s tokens_limit=%s", tenant_id, payload.tokens_limit)
    return success_result(UsageOut.model_validate(row), "Plan updated")


@router.post("/internal/usage/{tenant_id}/top-up", response_model=ActionResult[UsageOut])
async def top_up(tenant_id: str, payload: TopUpIn, db: AsyncSession = Depends(get_db)):
    row = await add_additional_tokens(db, tenant_id=tenant_id, tokens=payload.tokens)
    await db.commit()
    log.info("top-up tenant=%s tokens=%s", tenant_id, payload.tokens)
    return success_result(UsageOut.model_validate(row), "Tokens added")
