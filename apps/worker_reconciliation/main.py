"""
Worker Reconciliation.

Назначение:
- периодически запускать reconciliation_job
- находить зависшие job'ы и (опционально) перезапускать их
"""

from __future__ import annotations

import time

from smartmeet_pipeline.common.logging import get_project_logger, setup_logging
from smartmeet_pipeline.jobs.reconciliation_job import run as run_reconciliation
from smartmeet_pipeline.runtime import get_context

log = get_project_logger()


def main() -> None:
    setup_logging("worker-reconciliation")
    ctx = get_context()
    settings = ctx.settings
    interval_sec = max(5, int(settings.reconciliation_interval_sec))

    log.info(
        "worker_reconciliation_started",
        extra={
            "payload": {
                "enabled": bool(settings.reconciliation_enabled),
                "interval_sec": interval_sec,
                "limit": int(settings.reconciliation_limit),
                "auto_retry": bool(settings.stuck_auto_retry_enabled),
            }
        },
    )

    while True:
        try:
            run_reconciliation(ctx=ctx, limit=int(settings.reconciliation_limit))
        except Exception as e:
            log.error(
                "worker_reconciliation_error",
                extra={"payload": {"err": str(e)[:300]}},
            )
        time.sleep(interval_sec)


if __name__ == "__main__":
    main()
