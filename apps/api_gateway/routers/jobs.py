"""
Job endpoints: постановка в обработку, retry, статус.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from apps.api_gateway.deps import ctx_dep, owner_dep
from smartmeet_pipeline.common.errors import ErrCode, NotFoundError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.resilience.rate_limit import rate_limit_headers
from smartmeet_pipeline.runtime import PipelineContext

log = get_project_logger()

router = APIRouter()


class JobSubmitResponse(BaseModel):
    job_id: str
    task_id: str
    enqueued: bool
    priority: str
    tags: list[str] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    step: str
    failed_step: str | None = None
    error_message: str | None = None
    priority: str
    tags: list[str] = Field(default_factory=list)
    is_technical: bool = False
    has_summary: bool = False
    stuck: bool = False
    updated_at: str


class ArtifactUrlResponse(BaseModel):
    job_id: str
    url: str


def _enforce_api_rate_limit(ctx: PipelineContext, owner_id: str, response: Response) -> None:
    result = ctx.rate_limiter.check("api", owner_id)
    headers = rate_limit_headers(result)
    if not result.allowed:
        log.info("api_rate_limited", extra={"payload": {"owner_id": owner_id}})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": ErrCode.RATE_LIMITED, "message": "Too many requests"},
            headers=headers,
        )
    response.headers.update(headers)


@router.post("/jobs/{job_id}/process", response_model=JobSubmitResponse, status_code=202)
def job_process(
    job_id: str,
    response: Response,
    owner_id: str = Depends(owner_dep),
    ctx: PipelineContext = Depends(ctx_dep),
) -> JobSubmitResponse:
    _enforce_api_rate_limit(ctx, owner_id, response)
    result = ctx.jobs.submit(job_id, owner_id=owner_id)
    return JobSubmitResponse(**result.to_dict())


@router.post("/jobs/{job_id}/retry", response_model=JobSubmitResponse, status_code=202)
def job_retry(
    job_id: str,
    response: Response,
    owner_id: str = Depends(owner_dep),
    ctx: PipelineContext = Depends(ctx_dep),
) -> JobSubmitResponse:
    _enforce_api_rate_limit(ctx, owner_id, response)
    result = ctx.jobs.retry(job_id, owner_id=owner_id)
    return JobSubmitResponse(**result.to_dict())


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def job_status(
    job_id: str,
    owner_id: str = Depends(owner_dep),
    ctx: PipelineContext = Depends(ctx_dep),
) -> JobStatusResponse:
    return JobStatusResponse(**ctx.jobs.status(job_id, owner_id=owner_id))


@router.get("/jobs/{job_id}/artifact-url", response_model=ArtifactUrlResponse)
def job_artifact_url(
    job_id: str,
    owner_id: str = Depends(owner_dep),
    ctx: PipelineContext = Depends(ctx_dep),
) -> ArtifactUrlResponse:
    job = ctx.store.get_job(job_id)
    if job is None or job.owner_id != owner_id or not job.artifact_key:
        raise NotFoundError("Artifact not found", {"job_id": job_id})
    return ArtifactUrlResponse(job_id=job_id, url=ctx.storage.signed_url(job.artifact_key))
