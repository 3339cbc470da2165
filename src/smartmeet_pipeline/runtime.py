"""
Контекст пайплайна (wiring).

Назначение:
- собрать Redis, resilience-примитивы, очередь, хранилища, провайдера и сервисы
- явная инициализация (build_context) и освобождение ресурсов (close)
- ленивый контекст по умолчанию для API и воркеров
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import redis
from sqlalchemy import Engine

from smartmeet_pipeline.common.config import Settings, get_settings
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import Clock, utc_ms, utc_now
from smartmeet_pipeline.providers.base import AIProvider
from smartmeet_pipeline.providers.factory import build_provider
from smartmeet_pipeline.queue.redis import redis_client
from smartmeet_pipeline.queue.task_queue import TaskQueue
from smartmeet_pipeline.resilience.rate_limit import RateLimiter, profiles_from_settings
from smartmeet_pipeline.resilience.registry import ResilienceRegistry
from smartmeet_pipeline.services.job_service import JobService
from smartmeet_pipeline.services.notifications import SqlNotificationSink
from smartmeet_pipeline.services.processing import ProcessingOrchestrator
from smartmeet_pipeline.services.worker import QueueWorker
from smartmeet_pipeline.services.worker_trigger import WorkerTrigger
from smartmeet_pipeline.storage.blob import LocalBlobStorage
from smartmeet_pipeline.storage.cache import ViewCache
from smartmeet_pipeline.storage.db import create_schema, make_engine, make_session_factory
from smartmeet_pipeline.storage.job_store import SqlJobStore

log = get_project_logger()

_UNSET = object()


@dataclass
class PipelineContext:
    settings: Settings
    redis: redis.Redis | None
    engine: Engine
    resilience: ResilienceRegistry
    rate_limiter: RateLimiter
    queue: TaskQueue
    store: SqlJobStore
    storage: LocalBlobStorage
    notifier: SqlNotificationSink
    cache: ViewCache
    provider: AIProvider
    trigger: WorkerTrigger
    orchestrator: ProcessingOrchestrator
    jobs: JobService
    worker: QueueWorker

    def close(self) -> None:
        self.trigger.shutdown(wait=False)
        self.resilience.clear()
        if self.redis is not None:
            try:
                self.redis.close()
            except redis.RedisError as e:
                log.warning("redis_close_failed", extra={"payload": {"error": str(e)[:200]}})
        self.engine.dispose()
        log.info("pipeline_context_closed")


def build_context(
    settings: Settings | None = None,
    *,
    redis_conn: redis.Redis | None | object = _UNSET,
    engine: Engine | None = None,
    provider: AIProvider | None = None,
    trigger: WorkerTrigger | None = None,
    decrypt: Callable[[str], str] | None = None,
    clock_ms: Clock = utc_ms,
    now: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] | None = None,
) -> PipelineContext:
    """
    Собирает контекст из настроек. Любую зависимость можно подменить
    (тесты передают fake redis, in-memory SQLite и fake провайдера).
    """
    s = settings or get_settings()
    client = redis_client() if redis_conn is _UNSET else redis_conn

    db_engine = engine or make_engine(s.database_url)
    if s.db_auto_create:
        create_schema(db_engine)
    session_factory = make_session_factory(db_engine)

    resilience = ResilienceRegistry(
        client,
        failure_threshold=s.cb_failure_threshold,
        reset_timeout_sec=s.cb_reset_timeout_sec,
        max_concurrency=s.max_ai_concurrency,
        slot_ttl_ms=s.ai_task_timeout_ms,
        concurrency_fail_open=s.concurrency_fail_open,
        clock=clock_ms,
    )
    rate_limiter = RateLimiter(
        client,
        profiles=profiles_from_settings(s),
        prefix=s.rate_limit_prefix,
        clock=clock_ms,
    )
    queue = TaskQueue(client, name=s.queue_name, fail_open=s.queue_fail_open, clock=clock_ms)
    store = SqlJobStore(session_factory, clock=now)
    storage = LocalBlobStorage(
        s.artifacts_dir,
        signing_secret=s.signed_url_secret,
        url_ttl_sec=s.signed_url_ttl_sec,
        clock=clock_ms,
    )
    notifier = SqlNotificationSink(session_factory)
    cache = ViewCache(client, ttl_sec=s.cache_ttl_sec)
    ai_provider = provider or build_provider(s)
    worker_trigger = trigger or WorkerTrigger(
        base_url=s.app_base_url,
        secret=s.worker_secret,
        timeout_sec=s.worker_trigger_timeout_sec,
    )

    orchestrator = ProcessingOrchestrator(
        store=store,
        storage=storage,
        provider=ai_provider,
        resilience=resilience,
        rate_limiter=rate_limiter,
        notifier=notifier,
        cache=cache,
        decrypt=decrypt,
        stuck_threshold_sec=s.stuck_threshold_sec,
        clock=now,
    )
    jobs = JobService(
        store=store,
        queue=queue,
        trigger=worker_trigger,
        cache=cache,
        stuck_threshold_sec=s.stuck_threshold_sec,
        clock=now,
    )
    worker_kwargs = {"sleep": sleep} if sleep is not None else {}
    worker = QueueWorker(
        queue=queue,
        orchestrator=orchestrator,
        max_tasks_per_run=s.worker_max_tasks_per_run,
        max_attempts=s.task_max_attempts,
        backoff_sec=s.task_backoff_sec,
        **worker_kwargs,
    )

    log.info(
        "pipeline_context_built",
        extra={
            "payload": {
                "queue": queue.name,
                "ai_backend": s.ai_backend,
                "redis": client is not None,
            }
        },
    )
    return PipelineContext(
        settings=s,
        redis=client,
        engine=db_engine,
        resilience=resilience,
        rate_limiter=rate_limiter,
        queue=queue,
        store=store,
        storage=storage,
        notifier=notifier,
        cache=cache,
        provider=ai_provider,
        trigger=worker_trigger,
        orchestrator=orchestrator,
        jobs=jobs,
        worker=worker,
    )


_context: PipelineContext | None = None
_context_lock = threading.Lock()


def get_context() -> PipelineContext:
    global _context
    with _context_lock:
        if _context is None:
            _context = build_context()
        return _context


def set_context(ctx: PipelineContext | None) -> None:
    global _context
    with _context_lock:
        _context = ctx


def reset_context() -> None:
    global _context
    with _context_lock:
        ctx, _context = _context, None
    if ctx is not None:
        ctx.close()
