"""
Сервисный слой: постановка job'ов в обработку.

Назначение:
- submit: governance-правила -> очередь -> пинок воркеру
- retry: допуск по FAILED/stuck, сброс в PENDING/IDLE, свежая задача
- status: состояние job'а для API
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from smartmeet_pipeline.common.errors import ConflictError, NotFoundError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import utc_now
from smartmeet_pipeline.domain.enums import JobStatus
from smartmeet_pipeline.domain.state_machine import is_retry_eligible, is_stuck
from smartmeet_pipeline.queue.task_queue import TaskQueue
from smartmeet_pipeline.queue.tasks import process_job_task
from smartmeet_pipeline.rules.engine import RuleEngine
from smartmeet_pipeline.rules.governance import (
    MEETING_GOVERNANCE_RULES,
    GovernanceDecision,
    build_governance_context,
    evaluate_governance,
)
from smartmeet_pipeline.rules.models import Rule
from smartmeet_pipeline.storage.cache import ViewCache, owner_key
from smartmeet_pipeline.storage.job_store import JobRecord, SqlJobStore

from .worker_trigger import WorkerTrigger

log = get_project_logger()

_TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class SubmitResult:
    job_id: str
    task_id: str
    enqueued: bool
    priority: str
    tags: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "task_id": self.task_id,
            "enqueued": self.enqueued,
            "priority": self.priority,
            "tags": list(self.tags),
        }


class JobService:
    def __init__(
        self,
        *,
        store: SqlJobStore,
        queue: TaskQueue,
        trigger: WorkerTrigger,
        cache: ViewCache,
        rule_engine: RuleEngine | None = None,
        rules: Iterable[Rule] = MEETING_GOVERNANCE_RULES,
        stuck_threshold_sec: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.trigger = trigger
        self.cache = cache
        self.rule_engine = rule_engine or RuleEngine()
        self.rules = tuple(rules)
        self.stuck_threshold_sec = stuck_threshold_sec
        self.clock = clock

    def _load(self, job_id: str, owner_id: str | None) -> JobRecord:
        job = self.store.get_job(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise NotFoundError("Job not found", {"job_id": job_id})
        return job

    def _enqueue(self, job: JobRecord, decision: GovernanceDecision, *, reason: str) -> SubmitResult:
        task = process_job_task(job.id, priority=decision.priority)
        enqueued = self.queue.enqueue(task)
        if not enqueued:
            log.warning(
                "job_enqueue_not_guaranteed",
                extra={"payload": {"job_id": job.id, "task_id": task.id}},
            )
        self.trigger.trigger()
        self.cache.invalidate_owner(job.owner_id)
        log.info(
            "job_enqueued",
            extra={
                "payload": {
                    "job_id": job.id,
                    "task_id": task.id,
                    "reason": reason,
                    "priority": decision.priority,
                    "tags": decision.tags,
                }
            },
        )
        return SubmitResult(
            job_id=job.id,
            task_id=task.id,
            enqueued=enqueued,
            priority=decision.priority,
            tags=list(decision.tags),
        )

    def submit(self, job_id: str, *, owner_id: str | None = None) -> SubmitResult:
        job = self._load(job_id, owner_id)
        if job.status == JobStatus.PROCESSING:
            raise ConflictError("Job is already being processed", {"job_id": job_id})
        if job.status == JobStatus.COMPLETED:
            raise ConflictError("Job is already completed", {"job_id": job_id})

        owner = self.store.get_owner(job.owner_id)
        if owner is None:
            raise NotFoundError("Owner not found", {"owner_id": job.owner_id})

        decision = evaluate_governance(
            build_governance_context(
                plan=owner.plan.value, is_large_file=job.is_large_file, title=job.title
            ),
            rules=self.rules,
            engine=self.rule_engine,
        )
        if decision.blocked:
            log.info(
                "job_blocked_by_governance",
                extra={"payload": {"job_id": job_id, "reasons": decision.reasons}},
            )
            raise ConflictError(
                "Processing blocked by governance rules", {"reasons": decision.reasons}
            )

        self.store.apply_governance(job_id, priority=decision.priority, tags=decision.tags)
        if job.status == JobStatus.FAILED:
            self.store.reset_for_retry(job_id)
        return self._enqueue(job, decision, reason="submit")

    def retry(self, job_id: str, *, owner_id: str | None = None) -> SubmitResult:
        """
        Ручной retry: FAILED, либо PROCESSING без обновлений дольше порога.
        """
        job = self._load(job_id, owner_id)
        if not is_retry_eligible(
            status=job.status,
            updated_at=job.updated_at,
            now=self.clock(),
            threshold_sec=self.stuck_threshold_sec,
        ):
            raise ConflictError(
                "Job is not eligible for retry",
                {"job_id": job_id, "status": job.status.value},
            )
        self.store.reset_for_retry(job_id)
        log.info(
            "job_retry_requested",
            extra={"payload": {"job_id": job_id, "previous_status": job.status.value}},
        )
        decision = GovernanceDecision(priority=job.priority, tags=list(job.tags))
        return self._enqueue(job, decision, reason="retry")

    def status(self, job_id: str, *, owner_id: str | None = None) -> dict[str, Any]:
        if owner_id is not None:
            cached = self.cache.get_json(owner_key(owner_id, f"job:{job_id}:status"))
            if cached is not None:
                return cached

        job = self._load(job_id, owner_id)
        view = {
            "job_id": job.id,
            "status": job.status.value,
            "step": job.step.value,
            "failed_step": job.failed_step.value if job.failed_step else None,
            "error_message": job.error_message,
            "priority": job.priority,
            "tags": list(job.tags),
            "is_technical": job.is_technical,
            "has_summary": bool(job.summary),
            "stuck": is_stuck(
                status=job.status,
                updated_at=job.updated_at,
                now=self.clock(),
                threshold_sec=self.stuck_threshold_sec,
            ),
            "updated_at": job.updated_at.isoformat(),
        }
        # Терминальные статусы меняются только вместе с инвалидацией кэша владельца
        if job.status in _TERMINAL_STATUSES:
            self.cache.set_json(owner_key(job.owner_id, f"job:{job_id}:status"), view)
        return view
