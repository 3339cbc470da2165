"""
FastAPI Depends.

Сюда выносим:
- контекст пайплайна
- авторизацию сервисных вызовов (Bearer WORKER_SECRET)
- идентификатор владельца (X-Owner-Id; аутентификация пользователей вне этого сервиса)
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from smartmeet_pipeline.common.errors import ErrCode
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.runtime import PipelineContext, get_context

log = get_project_logger()


def ctx_dep() -> PipelineContext:
    return get_context()


def _audit_deny(request: Request, *, reason: str) -> None:
    log.warning(
        "security_audit_deny",
        extra={
            "payload": {
                "endpoint": request.url.path,
                "method": request.method,
                "reason": reason,
                "client_ip": request.client.host if request.client else None,
            }
        },
    )


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": ErrCode.UNAUTHORIZED, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def worker_auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    ctx: PipelineContext = Depends(ctx_dep),
) -> None:
    """
    Проверка Bearer WORKER_SECRET для воркер- и admin-endpoint'ов.
    """
    secret = ctx.settings.worker_secret
    if not secret:
        _audit_deny(request, reason="worker_secret_not_configured")
        raise _unauthorized("Worker secret is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode(), secret.encode()
    ):
        _audit_deny(request, reason="bad_worker_secret")
        raise _unauthorized("Unauthorized")


def owner_dep(
    request: Request,
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
) -> str:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        _audit_deny(request, reason="missing_owner_id")
        raise _unauthorized("Missing X-Owner-Id")
    return owner_id
