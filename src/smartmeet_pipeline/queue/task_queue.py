"""
Очередь задач поверх Redis list.

Назначение:
- FIFO: RPUSH в хвост, LPOP с головы (атомарно между воркерами)
- отдельный DLQ-список <queue>:dlq для окончательно упавших задач
- at-least-once: подтверждений нет, взятая и потерянная задача
  восстанавливается stuck-детекцией job'а, а не очередью

Политика fail_open:
- True: недоступность Redis -> False/None/0 + лог
- False: недоступность Redis -> QueueUnavailableError
"""

from __future__ import annotations

import json

import redis

from smartmeet_pipeline.common.errors import QueueUnavailableError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import Clock, utc_ms

from .tasks import Task

log = get_project_logger()

DEFAULT_QUEUE_NAME = "smartmeet_ai_queue"


def dlq_name(queue_name: str) -> str:
    return f"{queue_name}:dlq"


class TaskQueue:
    def __init__(
        self,
        client: redis.Redis | None,
        *,
        name: str = DEFAULT_QUEUE_NAME,
        fail_open: bool = True,
        clock: Clock = utc_ms,
    ) -> None:
        self.client = client
        self.name = name
        self.dlq = dlq_name(name)
        self.fail_open = fail_open
        self.clock = clock

    def _unavailable(self, operation: str, error: str) -> None:
        log.warning(
            "task_queue_unavailable",
            extra={"payload": {"queue": self.name, "operation": operation, "error": error[:200]}},
        )
        if not self.fail_open:
            raise QueueUnavailableError(details={"queue": self.name, "operation": operation})

    def enqueue(self, task: Task) -> bool:
        """
        Поставить задачу в хвост очереди.
        False означает "доставка не гарантирована".
        """
        if not task.created_at:
            task.created_at = self.clock()
        if self.client is None:
            self._unavailable("enqueue", "redis_not_configured")
            return False
        try:
            self.client.rpush(self.name, task.to_json())
        except Exception as e:
            self._unavailable("enqueue", str(e))
            return False
        log.info(
            "task_enqueued",
            extra={"payload": {"queue": self.name, "task_id": task.id, "type": task.type}},
        )
        return True

    def dequeue(self) -> Task | None:
        """
        Взять задачу с головы очереди. None: пусто или хранилище недоступно.
        Битые элементы уходят в DLQ как есть.
        """
        if self.client is None:
            self._unavailable("dequeue", "redis_not_configured")
            return None
        while True:
            try:
                raw = self.client.lpop(self.name)
            except Exception as e:
                self._unavailable("dequeue", str(e))
                return None
            if raw is None:
                return None
            try:
                return Task.from_json(raw)
            except (ValueError, KeyError, TypeError) as e:
                log.error(
                    "task_malformed",
                    extra={"payload": {"queue": self.name, "error": str(e)[:200], "raw": raw[:300]}},
                )
                self._push_dlq_raw(raw, str(e))

    def _push_dlq_raw(self, raw: str, error: str) -> None:
        try:
            self.client.rpush(
                self.dlq, json.dumps({"raw": raw, "error": error[:300]}, ensure_ascii=False)
            )
        except Exception as e:
            log.error(
                "task_dlq_push_failed",
                extra={"payload": {"queue": self.dlq, "error": str(e)[:200]}},
            )

    def dead_letter(self, task: Task, error_message: str) -> bool:
        """
        Переложить задачу в DLQ: retries += 1, last_error = error_message.
        Никогда не бросает исключений.
        """
        task.record_failure(error_message)
        if self.client is None:
            log.error(
                "task_dlq_push_failed",
                extra={"payload": {"queue": self.dlq, "task_id": task.id, "error": "redis_not_configured"}},
            )
            return False
        try:
            self.client.rpush(self.dlq, task.to_json())
        except Exception as e:
            log.error(
                "task_dlq_push_failed",
                extra={"payload": {"queue": self.dlq, "task_id": task.id, "error": str(e)[:200]}},
            )
            return False
        log.warning(
            "task_moved_to_dlq",
            extra={
                "payload": {
                    "queue": self.name,
                    "dlq": self.dlq,
                    "task_id": task.id,
                    "retries": task.retries,
                    "error": error_message[:200],
                }
            },
        )
        return True

    def _llen(self, key: str) -> int:
        if self.client is None:
            self._unavailable("llen", "redis_not_configured")
            return 0
        try:
            return int(self.client.llen(key))
        except Exception as e:
            self._unavailable("llen", str(e))
            return 0

    def length(self) -> int:
        return self._llen(self.name)

    def dead_letter_length(self) -> int:
        return self._llen(self.dlq)
