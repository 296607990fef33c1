import hmac

from fastapi import Header

from propai.core.config import settings
from propai.core.errors import AuthorizationError


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> None:
    if not x_internal_admin_key or not hmac.compare_digest(x_internal_admin_key, settings.internal_admin_key):
        raise AuthorizationError("Internal admin key required")
