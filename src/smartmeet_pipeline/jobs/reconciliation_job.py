"""
Reconciliation job.

Назначение:
- поиск зависших job'ов (PROCESSING без обновлений дольше STUCK_THRESHOLD_SEC)
- метрика/лог по найденным
- авто-retry при STUCK_AUTO_RETRY_ENABLED=true
"""

from __future__ import annotations

from dataclasses import dataclass, field

from smartmeet_pipeline.common.errors import AppError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_stuck_jobs
from smartmeet_pipeline.runtime import PipelineContext, get_context

log = get_project_logger()


@dataclass
class ReconcileResult:
    limit: int = 0
    stuck: int = 0
    retried: int = 0
    failed: int = 0
    stuck_job_ids: list[str] = field(default_factory=list)


def _retry_stuck(ctx: PipelineContext, job_id: str) -> bool:
    try:
        ctx.jobs.retry(job_id)
        return True
    except AppError as e:
        log.warning(
            "reconciliation_retry_failed",
            extra={"payload": {"job_id": job_id, "code": e.code, "error": e.message[:200]}},
        )
        return False


def run(*, ctx: PipelineContext | None = None, limit: int | None = None) -> ReconcileResult | None:
    ctx = ctx or get_context()
    settings = ctx.settings
    if not settings.reconciliation_enabled:
        log.info("reconciliation_job_skipped", extra={"payload": {"reason": "disabled"}})
        return None

    scan_limit = max(1, int(limit if limit is not None else settings.reconciliation_limit))
    log.info("reconciliation_job_started", extra={"payload": {"limit": scan_limit}})

    stuck = ctx.store.list_stuck(threshold_sec=settings.stuck_threshold_sec, limit=scan_limit)
    result = ReconcileResult(limit=scan_limit, stuck=len(stuck))
    record_stuck_jobs(len(stuck))

    for job in stuck:
        result.stuck_job_ids.append(job.id)
        log.warning(
            "reconciliation_stuck_job",
            extra={
                "payload": {
                    "job_id": job.id,
                    "owner_id": job.owner_id,
                    "step": job.step.value,
                    "age_sec": job.age_sec,
                }
            },
        )
        if not settings.stuck_auto_retry_enabled:
            continue
        if _retry_stuck(ctx, job.id):
            result.retried += 1
        else:
            result.failed += 1

    log.info(
        "reconciliation_job_finished",
        extra={
            "payload": {
                "stuck": result.stuck,
                "retried": result.retried,
                "failed": result.failed,
                "auto_retry": bool(settings.stuck_auto_retry_enabled),
            }
        },
    )
    return result
