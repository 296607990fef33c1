from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.errors import ConflictError, NotFoundError
from propai.core.security import generate_api_key
from propai.models.api_key import ApiKey
from propai.models.tenant import Tenant
from propai.models.usage_token import UsageToken
from propai.services import usage_ledger
from propai.services.request_cache import RequestCache

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedTenant:
    tenant: Tenant
    usage: UsageToken
    plain_api_key: str


async def provision_tenant(
    db: AsyncSession,
    *,
    auth_user_id: str,
    name: str,
    email: str,
    company_name: str | None = None,
) -> ProvisionedTenant:
    """Signup: tenant row, trial allowance and the tenant's first API key. The caller commits."""
    email = email.strip().lower()

    dup = (
        await db.execute(
            select(Tenant.id).where((Tenant.email == email) | (Tenant.auth_user_id == auth_user_id))
        )
    ).first()
    if dup:
        raise ConflictError("A tenant with this email already exists")

    tenant = Tenant(auth_user_id=auth_user_id, name=name, email=email, company_name=company_name)
    key = generate_api_key()
    try:
        db.add(tenant)
        await db.flush()
        usage = await usage_ledger.create_initial_allowance(db, tenant_id=tenant.id)
        db.add(
            ApiKey(
                tenant_id=tenant.id,
                key_prefix=key.prefix,
                key_hash=key.hashed,
                is_active=True,
            )
        )
        await db.flush()
    except IntegrityError:
        # lost a race with a concurrent signup for the same email
        await db.rollback()
        log.exception("tenant provisioning failed: integrity error")
        raise ConflictError("A tenant with this email already exists")

    log.info("tenant provisioned tenant=%s", tenant.id)
    return ProvisionedTenant(tenant=tenant, usage=usage, plain_api_key=key.plain)


async def get_tenant(db: AsyncSession, *, tenant_id: str, cache: RequestCache | None = None) -> Tenant:
    async def _load() -> Tenant | None:
        return (await db.execute(select(Tenant).where(Tenant.id == tenant_id))).scalar_one_or_none()

    tenant = await cache.get_or_load(("tenant", tenant_id), _load) if cache else await _load()
    if not tenant:
        raise NotFoundError("Tenant not found")
    return tenant


async def update_tenant(
    db: AsyncSession,
    *,
    tenant_id: str,
    changes: dict,
    cache: RequestCache | None = None,
) -> Tenant:
    # identity fields (auth_user_id, email) are not editable here
    tenant = await get_tenant(db, tenant_id=tenant_id, cache=cache)
    for k in ("name", "company_name"):
        if k in changes:
            setattr(tenant, k, changes[k])
    await db.flush()
    if cache:
        cache.invalidate(("tenant", tenant_id))
    return tenant
