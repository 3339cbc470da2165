"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Общие счётчики и гистограммы для всех стадий пайплайна
- Используется API Gateway и воркерами
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "smartmeet_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "smartmeet_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# Задержки по стадиям пайплайна (вызовы провайдеров)
PIPELINE_STAGE_LATENCY_MS = Histogram(
    "smartmeet_pipeline_stage_latency_ms",
    "Задержка выполнения стадий пайплайна (мс)",
    ["service", "stage"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000),
)

QUEUE_TASKS_TOTAL = Counter(
    "smartmeet_queue_tasks_total",
    "Количество обработанных задач очереди",
    ["service", "queue", "result"],  # result=ok|requeued|dlq|acked
)

QUEUE_DEPTH = Gauge(
    "smartmeet_queue_depth",
    "Текущая глубина очереди",
    ["queue"],
)

DLQ_DEPTH = Gauge(
    "smartmeet_dlq_depth",
    "Текущая глубина DLQ",
    ["queue"],
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "smartmeet_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)

CIRCUIT_BREAKER_OPEN = Gauge(
    "smartmeet_circuit_breaker_open",
    "Состояние circuit breaker провайдера (1=open, 0=closed/half_open)",
    ["provider"],
)

CIRCUIT_BREAKER_RESETS_TOTAL = Counter(
    "smartmeet_circuit_breaker_resets_total",
    "Количество reset операций circuit breaker",
    ["provider", "source"],  # source=admin|auto
)

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "smartmeet_rate_limit_decisions_total",
    "Решения rate limiter'а",
    ["limiter", "backend", "result"],  # backend=redis|memory, result=allowed|denied
)

CONCURRENCY_REJECTIONS_TOTAL = Counter(
    "smartmeet_concurrency_rejections_total",
    "Отказы в получении слота конкурентности",
    ["resource"],
)

JOB_OUTCOMES_TOTAL = Counter(
    "smartmeet_job_outcomes_total",
    "Итоги обработки job'ов",
    ["result", "kind"],  # result=completed|failed, kind=error kind|none
)

STUCK_JOBS_LAST = Gauge(
    "smartmeet_stuck_jobs_last",
    "Количество зависших job'ов в последнем reconcile запуске",
)


@contextmanager
def track_stage_latency(service: str, stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        PIPELINE_STAGE_LATENCY_MS.labels(service=service, stage=stage).observe(elapsed_ms)


def record_queue_task(*, service: str, queue: str, result: str) -> None:
    QUEUE_TASKS_TOTAL.labels(service=service, queue=queue, result=result).inc()


def record_rate_limit_decision(*, limiter: str, backend: str, allowed: bool) -> None:
    RATE_LIMIT_DECISIONS_TOTAL.labels(
        limiter=limiter, backend=backend, result="allowed" if allowed else "denied"
    ).inc()


def record_concurrency_rejection(resource: str) -> None:
    CONCURRENCY_REJECTIONS_TOTAL.labels(resource=resource).inc()


def record_circuit_state(*, provider: str, state: str) -> None:
    CIRCUIT_BREAKER_OPEN.labels(provider=provider).set(1 if str(state).upper() == "OPEN" else 0)


def record_circuit_reset(*, provider: str, source: str) -> None:
    CIRCUIT_BREAKER_RESETS_TOTAL.labels(provider=provider, source=source).inc()


def record_job_outcome(*, ok: bool, kind: str | None) -> None:
    JOB_OUTCOMES_TOTAL.labels(result="completed" if ok else "failed", kind=kind or "none").inc()


def record_stuck_jobs(count: int) -> None:
    STUCK_JOBS_LAST.set(max(0, count))


def refresh_queue_metrics(ctx: Any) -> None:
    try:
        queue = ctx.queue
        QUEUE_DEPTH.labels(queue=queue.name).set(queue.length())
        DLQ_DEPTH.labels(queue=queue.name).set(queue.dead_letter_length())
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


def refresh_breaker_metrics(ctx: Any) -> None:
    try:
        for name, breaker in ctx.resilience.breakers().items():
            record_circuit_state(provider=name, state=breaker.get_state().value)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="breaker_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, context_provider: Callable[[], Any]) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service="api-gateway",
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        ctx = context_provider()
        refresh_queue_metrics(ctx)
        refresh_breaker_metrics(ctx)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
