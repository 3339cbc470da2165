"""
Распределённый семафор (ConcurrencyLimiter).

Реализация:
- Redis sorted set concurrency:<resource>:slots
- member = request_id, score = время захвата (ms)
- истёкшие слоты (старше TTL) вычищаются при каждом acquire,
  поэтому упавший держатель не занимает слот навсегда
- при добавлении сверх лимита слот сразу удаляется и acquire отдаёт None

Политика fail_open:
- True: Redis недоступен -> no-op releaser (доступность важнее строгого лимита)
- False: Redis недоступен -> None (как будто лимит исчерпан)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

import redis

from smartmeet_pipeline.common.errors import ConcurrencyLimitExceeded
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_concurrency_rejection
from smartmeet_pipeline.common.time import Clock, utc_ms

log = get_project_logger()

T = TypeVar("T")

Release = Callable[[], None]

DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_TTL_MS = 10 * 60 * 1000


def _noop_release() -> None:
    return None


class ConcurrencyLimiter:
    def __init__(
        self,
        resource: str,
        client: redis.Redis | None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        ttl_ms: int = DEFAULT_TTL_MS,
        fail_open: bool = True,
        clock: Clock = utc_ms,
    ) -> None:
        self.resource = resource
        self.client = client
        self.max_concurrency = max(1, int(max_concurrency))
        self.ttl_ms = max(1, int(ttl_ms))
        self.fail_open = fail_open
        self.clock = clock

    @property
    def key(self) -> str:
        return f"concurrency:{self.resource}:slots"

    def _store_unavailable(self, request_id: str, error: str) -> Release | None:
        log.warning(
            "concurrency_store_unavailable",
            extra={
                "payload": {
                    "resource": self.resource,
                    "request_id": request_id,
                    "fail_open": self.fail_open,
                    "error": error[:200],
                }
            },
        )
        return _noop_release if self.fail_open else None

    def acquire(self, request_id: str) -> Release | None:
        """
        Занять слот. None: лимит исчерпан (не ретраить в тот же момент).
        """
        if self.client is None:
            return self._store_unavailable(request_id, "redis_not_configured")

        now = self.clock()
        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(self.key, "-inf", now - self.ttl_ms)
            pipe.zadd(self.key, {request_id: now})
            pipe.zcard(self.key)
            pipe.pexpire(self.key, self.ttl_ms)
            _, _, held, _ = pipe.execute()
        except Exception as e:
            return self._store_unavailable(request_id, str(e))

        if int(held) > self.max_concurrency:
            try:
                self.client.zrem(self.key, request_id)
            except Exception as e:
                log.warning(
                    "concurrency_slot_rollback_failed",
                    extra={"payload": {"resource": self.resource, "error": str(e)[:200]}},
                )
            record_concurrency_rejection(self.resource)
            log.info(
                "concurrency_limit_reached",
                extra={
                    "payload": {
                        "resource": self.resource,
                        "request_id": request_id,
                        "max": self.max_concurrency,
                    }
                },
            )
            return None

        def release() -> None:
            self._release(request_id)

        return release

    def _release(self, request_id: str) -> None:
        try:
            self.client.zrem(self.key, request_id)
        except Exception as e:
            log.warning(
                "concurrency_release_failed",
                extra={
                    "payload": {
                        "resource": self.resource,
                        "request_id": request_id,
                        "error": str(e)[:200],
                    }
                },
            )

    @contextmanager
    def slot(self, request_id: str) -> Iterator[None]:
        """
        Scoped-захват: слот освобождается на любом выходе, включая исключения.
        """
        release = self.acquire(request_id)
        if release is None:
            raise ConcurrencyLimitExceeded(self.resource)
        try:
            yield
        finally:
            release()

    def run(self, request_id: str, fn: Callable[[], T]) -> T:
        with self.slot(request_id):
            return fn()

    def held(self) -> int:
        """
        Количество живых слотов (для админки/диагностики).
        """
        if self.client is None:
            return 0
        try:
            return int(self.client.zcount(self.key, self.clock() - self.ttl_ms + 1, "+inf"))
        except Exception:
            return 0
