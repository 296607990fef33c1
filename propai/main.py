import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from propai.api.v1.router import router as v1_router
from propai.core.errors import AppError, UpstreamError
from propai.core.telemetry import setup_telemetry
from propai.schemas.common import error_result, to_error_result

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

app = FastAPI(title="PropAI API", version="0.1.0")

setup_telemetry(app)
app.include_router(v1_router)


def _envelope(result, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json", exclude_none=True))


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, UpstreamError):
        # full detail stays in the log; the caller gets the masked message
        log.error("upstream error path=%s err=%s detail=%s", request.url.path, exc.message, exc.detail)
    return _envelope(to_error_result(exc), exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for e in exc.errors():
        loc = [str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path", "header")]
        errors.append({"field": ".".join(loc) or "request", "message": e.get("msg", "invalid")})
    return _envelope(error_result("Invalid request", errors, code="VALIDATION_ERROR"), 422)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled error path=%s", request.url.path)
    return _envelope(to_error_result(exc), 500)
