from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.schemas.common import ActionResult, success_result
from propai.schemas.usage import UsageOut
from propai.services.auth import Actor, get_actor
from propai.services.request_cache import RequestCache, get_request_cache
from propai.services.usage_ledger import get_usage

router = APIRouter()


@router.get("/usage", response_model=ActionResult[UsageOut])
async def usage(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: RequestCache = Depends(get_request_cache),
):
    row = await get_usage(db, tenant_id=actor.tenant_id, cache=cache)
    return success_result(UsageOut.model_validate(row))
