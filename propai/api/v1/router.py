from fastapi import APIRouter

from propai.api.v1.endpoints.health import router as health_router
from propai.api.v1.endpoints.tenants import router as tenants_router
from propai.api.v1.endpoints.properties import router as properties_router
from propai.api.v1.endpoints.batches import router as batches_router
from propai.api.v1.endpoints.usage import router as usage_router
from propai.api.v1.endpoints.internal import router as internal_router
from propai.api.v1.endpoints.line import router as line_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(tenants_router, tags=["tenants"])
router.include_router(properties_router, tags=["properties"])
router.include_router(batches_router, tags=["batches"])
router.include_router(usage_router, tags=["usage"])
router.include_router(internal_router, tags=["internal"])
router.include_router(line_router, tags=["line"])
