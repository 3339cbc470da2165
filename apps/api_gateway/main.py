"""
API Gateway (FastAPI).

Функции:
- /health
- /metrics
- /v1/worker/process: пинок воркеру (drain очереди)
- /v1/jobs/*: постановка в обработку, retry, статус
- /v1/admin/*: очередь, circuit breaker'ы
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.admin import router as admin_router
from apps.api_gateway.routers.artifacts import router as artifacts_router
from apps.api_gateway.routers.jobs import router as jobs_router
from apps.api_gateway.routers.worker import router as worker_router
from smartmeet_pipeline.common.errors import AppError, ErrCode
from smartmeet_pipeline.common.logging import get_project_logger, setup_logging
from smartmeet_pipeline.common.metrics import setup_metrics_endpoint
from smartmeet_pipeline.runtime import get_context, reset_context

log = get_project_logger()

_STATUS_BY_CODE = {
    ErrCode.VALIDATION: 400,
    ErrCode.UNAUTHORIZED: 401,
    ErrCode.NOT_FOUND: 404,
    ErrCode.CONFLICT: 409,
    ErrCode.RATE_LIMITED: 429,
    ErrCode.QUEUE_UNAVAILABLE: 503,
    ErrCode.STORAGE_ERROR: 503,
    ErrCode.DB_ERROR: 503,
    ErrCode.CIRCUIT_OPEN: 503,
    ErrCode.CONCURRENCY_LIMIT: 503,
}


def _status_for(err: AppError) -> int:
    return _STATUS_BY_CODE.get(err.code, 500)


def _create_app() -> FastAPI:
    app = FastAPI(title="SmartMeet AI Pipeline", version="0.1.0")

    setup_metrics_endpoint(app, get_context)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        status_code = _status_for(exc)
        log.info(
            "http_app_error",
            extra={
                "payload": {
                    "path": request.url.path,
                    "status": status_code,
                    "code": exc.code,
                    "error": exc.message[:200],
                }
            },
        )
        return JSONResponse(
            status_code=status_code,
            content={"code": exc.code, "message": exc.message},
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.on_event("shutdown")
    def shutdown() -> None:
        reset_context()

    app.include_router(worker_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(artifacts_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")

    return app


setup_logging()

app = _create_app()
