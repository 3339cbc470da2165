"""
Service-only admin endpoints.

Назначение:
- состояние очереди и DLQ
- состояние circuit breaker'ов и ручной сброс
- доступ только по Bearer WORKER_SECRET
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from apps.api_gateway.deps import ctx_dep, worker_auth_dep
from smartmeet_pipeline.resilience.circuit_breaker import CircuitBreaker
from smartmeet_pipeline.runtime import PipelineContext

router = APIRouter()


class QueueHealthResponse(BaseModel):
    queue: str
    depth: int
    dlq: str
    dlq_depth: int


class CircuitBreakerResponse(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    opened_at: int | None
    last_error: str | None
    updated_at: int


class BreakerResetRequest(BaseModel):
    reason: str = "manual_reset"


def _as_cb_response(breaker: CircuitBreaker) -> CircuitBreakerResponse:
    snap = breaker.snapshot()
    return CircuitBreakerResponse(
        name=breaker.name,
        state=breaker.get_state().value,
        consecutive_failures=snap.consecutive_failures,
        opened_at=snap.opened_at,
        last_error=snap.last_error,
        updated_at=snap.updated_at,
    )


@router.get(
    "/admin/queues",
    response_model=QueueHealthResponse,
    dependencies=[Depends(worker_auth_dep)],
)
def admin_queues(ctx: PipelineContext = Depends(ctx_dep)) -> QueueHealthResponse:
    queue = ctx.queue
    return QueueHealthResponse(
        queue=queue.name,
        depth=queue.length(),
        dlq=queue.dlq,
        dlq_depth=queue.dead_letter_length(),
    )


@router.get(
    "/admin/breakers/{name}",
    response_model=CircuitBreakerResponse,
    dependencies=[Depends(worker_auth_dep)],
)
def admin_breaker(name: str, ctx: PipelineContext = Depends(ctx_dep)) -> CircuitBreakerResponse:
    return _as_cb_response(ctx.resilience.breaker(name))


@router.post(
    "/admin/breakers/{name}/reset",
    response_model=CircuitBreakerResponse,
    dependencies=[Depends(worker_auth_dep)],
)
def admin_breaker_reset(
    name: str,
    req: BreakerResetRequest | None = None,
    ctx: PipelineContext = Depends(ctx_dep),
) -> CircuitBreakerResponse:
    breaker = ctx.resilience.breaker(name)
    breaker.reset(reason=(req.reason if req else "manual_reset"), source="admin")
    return _as_cb_response(breaker)
