"""
Worker endpoint: один проход по очереди на вызов.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.api_gateway.deps import ctx_dep, worker_auth_dep
from smartmeet_pipeline.runtime import PipelineContext

router = APIRouter()


class WorkerRunResponse(BaseModel):
    processed_count: int
    results: list[dict[str, Any]] = Field(default_factory=list)


@router.api_route(
    "/worker/process",
    methods=["GET", "POST"],
    response_model=WorkerRunResponse,
    dependencies=[Depends(worker_auth_dep)],
)
def worker_process(ctx: PipelineContext = Depends(ctx_dep)) -> WorkerRunResponse:
    report = ctx.worker.run_once()
    return WorkerRunResponse(**report.to_dict())
