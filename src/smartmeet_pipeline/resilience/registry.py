"""
Реестр resilience-примитивов: один breaker на провайдера,
один limiter на ресурс. Владелец: PipelineContext.
"""

from __future__ import annotations

import threading

import redis

from smartmeet_pipeline.common.time import Clock, utc_ms

from .circuit_breaker import CircuitBreaker
from .concurrency import DEFAULT_MAX_CONCURRENCY, DEFAULT_TTL_MS, ConcurrencyLimiter


class ResilienceRegistry:
    def __init__(
        self,
        client: redis.Redis | None,
        *,
        failure_threshold: int = 5,
        reset_timeout_sec: int = 60,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        slot_ttl_ms: int = DEFAULT_TTL_MS,
        concurrency_fail_open: bool = True,
        clock: Clock = utc_ms,
    ) -> None:
        self.client = client
        self.failure_threshold = failure_threshold
        self.reset_timeout_sec = reset_timeout_sec
        self.max_concurrency = max_concurrency
        self.slot_ttl_ms = slot_ttl_ms
        self.concurrency_fail_open = concurrency_fail_open
        self.clock = clock

        self._breakers: dict[str, CircuitBreaker] = {}
        self._limiters: dict[str, ConcurrencyLimiter] = {}
        self._lock = threading.Lock()

    def breaker(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    self.client,
                    failure_threshold=self.failure_threshold,
                    reset_timeout_sec=self.reset_timeout_sec,
                    clock=self.clock,
                )
                self._breakers[name] = breaker
            return breaker

    def limiter(self, resource: str) -> ConcurrencyLimiter:
        with self._lock:
            limiter = self._limiters.get(resource)
            if limiter is None:
                limiter = ConcurrencyLimiter(
                    resource,
                    self.client,
                    max_concurrency=self.max_concurrency,
                    ttl_ms=self.slot_ttl_ms,
                    fail_open=self.concurrency_fail_open,
                    clock=self.clock,
                )
                self._limiters[resource] = limiter
            return limiter

    def breakers(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()
            self._limiters.clear()
