"""
Воркер очереди: один проход (drain) за вызов.

Алгоритм:
- LPOP до max_tasks задач
- PROCESS_JOB -> оркестратор
- retryable сбой -> повторная постановка с backoff (по исчерпании в DLQ)
- не-retryable сбой и неизвестные типы задач -> DLQ
- дубль уже обрабатываемого job'а просто подтверждается
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from smartmeet_pipeline.common.errors import ErrCode
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_queue_task
from smartmeet_pipeline.domain.enums import TaskType
from smartmeet_pipeline.queue.retry import requeue_with_backoff
from smartmeet_pipeline.queue.task_queue import TaskQueue
from smartmeet_pipeline.queue.tasks import Task

from .processing import ProcessingOrchestrator

log = get_project_logger()


@dataclass
class DrainReport:
    processed_count: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"processed_count": self.processed_count, "results": self.results}


class QueueWorker:
    def __init__(
        self,
        *,
        queue: TaskQueue,
        orchestrator: ProcessingOrchestrator,
        max_tasks_per_run: int = 5,
        max_attempts: int = 3,
        backoff_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        service: str = "worker-processing",
    ) -> None:
        self.queue = queue
        self.orchestrator = orchestrator
        self.max_tasks_per_run = max(1, int(max_tasks_per_run))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_sec = backoff_sec
        self.sleep = sleep
        self.service = service

    def _record(self, report: DrainReport, task: Task, action: str, **extra: Any) -> None:
        record_queue_task(service=self.service, queue=self.queue.name, result=action)
        report.results.append({"task_id": task.id, "type": task.type, "action": action, **extra})

    def run_once(self) -> DrainReport:
        report = DrainReport()
        seen: set[str] = set()
        for _ in range(self.max_tasks_per_run):
            task = self.queue.dequeue()
            if task is None:
                break
            if task.id in seen:
                # Повторно поставленная в этом же проходе задача ждёт следующего
                self.queue.enqueue(task)
                break
            seen.add(task.id)
            report.processed_count += 1
            self._handle(task, report)

        log.info(
            "worker_drain_finished",
            extra={"payload": {"queue": self.queue.name, "processed": report.processed_count}},
        )
        return report

    def _handle(self, task: Task, report: DrainReport) -> None:
        if task.type != TaskType.PROCESS_JOB.value:
            error = f"Unknown task type: {task.type}"
            log.error("worker_unknown_task_type", extra={"payload": {"task_id": task.id, "type": task.type}})
            self.queue.dead_letter(task, error)
            self._record(report, task, "dlq", error=error)
            return

        job_id = str(task.payload.get("jobId") or "").strip()
        if not job_id:
            error = "Task payload missing jobId"
            self.queue.dead_letter(task, error)
            self._record(report, task, "dlq", error=error)
            return

        result = self.orchestrator.process(job_id)
        outcome = result.to_dict()

        if result.ok:
            self._record(report, task, "ok", result=outcome)
            return

        if result.error_code == ErrCode.CONFLICT:
            # Дубль доставки: job уже обрабатывается другим воркером
            self._record(report, task, "acked", result=outcome)
            return

        error = result.error or "processing failed"
        if result.retryable:
            requeued = requeue_with_backoff(
                queue=self.queue,
                task=task,
                error=error,
                max_attempts=self.max_attempts,
                backoff_sec=self.backoff_sec,
                sleep=self.sleep,
            )
            self._record(report, task, "requeued" if requeued else "dlq", result=outcome)
            return

        self.queue.dead_letter(task, error)
        self._record(report, task, "dlq", result=outcome)
