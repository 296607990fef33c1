from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.schemas.common import ActionResult, success_result
from propai.schemas.tenant import TenantCreate, TenantOut, TenantProvisionOut, TenantUpdate
from propai.services.auth import Actor, get_actor
from propai.services.internal_admin import require_internal_admin
from propai.services.request_cache import RequestCache, get_request_cache
from propai.services.tenants import get_tenant, provision_tenant, update_tenant

router = APIRouter()


def _tenant_out(t) -> TenantOut:
    return TenantOut(
        id=t.id,
        auth_user_id=t.auth_user_id,
        name=t.name,
        email=t.email,
        company_name=t.company_name,
    )


@router.post(
    "/tenants",
    response_model=ActionResult[TenantProvisionOut],
    dependencies=[Depends(require_internal_admin)],
)
async def create_tenant(payload: TenantCreate, db: AsyncSession = Depends(get_db)):
    """Signup hook: called by the auth provider flow once the user exists there."""
    res = await provision_tenant(
        db,
        auth_user_id=payload.auth_user_id,
        name=payload.name,
        email=str(payload.email),
        company_name=payload.company_name,
    )
    await db.commit()
    return success_result(
        TenantProvisionOut(
            tenant=_tenant_out(res.tenant),
            api_key=res.plain_api_key,
            tokens_limit=res.usage.tokens_limit,
        ),
        "Tenant created",
    )


@router.get("/me", response_model=ActionResult[TenantOut])
async def me(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: RequestCache = Depends(get_request_cache),
):
    tenant = await get_tenant(db, tenant_id=actor.tenant_id, cache=cache)
    return success_result(_tenant_out(tenant))


@router.patch("/me", response_model=ActionResult[TenantOut])
async def update_me(
    payload: TenantUpdate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: RequestCache = Depends(get_request_cache),
):
    tenant = await update_tenant(
        db, tenant_id=actor.tenant_id, changes=payload.model_dump(exclude_unset=True), cache=cache
    )
    await db.commit()
    return success_result(_tenant_out(tenant), "Profile updated")
