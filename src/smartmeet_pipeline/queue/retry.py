"""
Retry/DLQ утилиты для очереди.

Назначение:
- аккуратно перекидывать задачи обратно в очередь с ограниченным числом попыток
- делать простой backoff (sleep) между повторными постановками
- по исчерпании попыток: DLQ

Важно:
- это синхронная реализация (подходит для наших воркеров)
"""

from __future__ import annotations

import time
from collections.abc import Callable

from smartmeet_pipeline.common.logging import get_project_logger

from .task_queue import TaskQueue
from .tasks import Task

log = get_project_logger()


def requeue_with_backoff(
    *,
    queue: TaskQueue,
    task: Task,
    error: str,
    max_attempts: int = 3,
    backoff_sec: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Повторно поставить задачу в очередь, увеличивая retries.

    Возвращает:
    - True: задача поставлена обратно в очередь
    - False: задача отправлена в DLQ (или очередь недоступна)
    """
    attempts = task.retries + 1

    if attempts >= max_attempts:
        # Исчерпано: в DLQ
        queue.dead_letter(task, error)
        return False

    delay = backoff_sec * attempts
    if delay > 0:
        sleep(delay)

    task.record_failure(error)
    ok = queue.enqueue(task)
    log.warning(
        "task_requeued",
        extra={
            "payload": {
                "queue": queue.name,
                "task_id": task.id,
                "retries": task.retries,
                "max_attempts": max_attempts,
                "backoff_sec": delay,
                "enqueued": ok,
            }
        },
    )
    return ok
