from dataclasses import dataclass

from fastapi import Depends, Security
from fastapi.security.api_key import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.core.errors import AuthError
from propai.core.security import hash_api_key
from propai.models.api_key import ApiKey

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass(frozen=True)
class Actor:
    api_key_id: str
    tenant_id: str


async def get_actor(
    api_key: str | None = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    if not api_key:
        raise AuthError("Missing X-API-Key")

    hashed = hash_api_key(api_key)
    stmt = select(ApiKey.id, ApiKey.tenant_id).where(ApiKey.key_hash == hashed, ApiKey.is_active.is_(True))
    row = (await db.execute(stmt)).one_or_none()
    if not row:
        raise AuthError("Invalid API key")

    return Actor(api_key_id=row.id, tenant_id=row.tenant_id)
