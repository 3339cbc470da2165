"""
Worker Processing.

Алгоритм:
- периодический drain очереди (до WORKER_MAX_TASKS_PER_RUN задач за проход)
- PROCESS_JOB -> оркестратор (транскрипция -> саммари)
- пустая очередь -> пауза WORKER_POLL_INTERVAL_SEC

Дополняет HTTP-пинок /v1/worker/process: задачи не залёживаются,
даже если пинок потерялся.
"""

from __future__ import annotations

import time

from smartmeet_pipeline.common.logging import get_project_logger, setup_logging
from smartmeet_pipeline.runtime import get_context

log = get_project_logger()


def run_loop() -> None:
    ctx = get_context()
    interval_sec = max(0.1, float(ctx.settings.worker_poll_interval_sec))

    log.info(
        "worker_processing_started",
        extra={
            "payload": {
                "queue": ctx.queue.name,
                "max_tasks_per_run": ctx.worker.max_tasks_per_run,
                "interval_sec": interval_sec,
            }
        },
    )

    while True:
        try:
            report = ctx.worker.run_once()
        except Exception as e:
            log.error("worker_processing_error", extra={"payload": {"err": str(e)[:300]}})
            time.sleep(interval_sec)
            continue
        if report.processed_count == 0:
            time.sleep(interval_sec)


def main() -> None:
    setup_logging("worker-processing")
    run_loop()


if __name__ == "__main__":
    main()
