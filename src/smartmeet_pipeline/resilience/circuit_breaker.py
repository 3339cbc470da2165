"""
Circuit breaker для внешних AI-провайдеров.

Назначение:
- изолировать сбои одного провайдера, чтобы они не каскадировали
- состояние общее для всех воркеров: JSON-документ в Redis (cb:<provider>),
  изменяется только через WATCH/MULTI
- in-memory зеркало на случай недоступности Redis

Переходы:
- CLOSED: вызовы проходят, подряд идущие сбои считаются; порог -> OPEN
- OPEN: вызовы отклоняются без вызова fn до истечения cooldown
- HALF_OPEN: ровно один пробный вызов (SET NX лиз в Redis или локальный lock);
  успех -> CLOSED, сбой -> OPEN с новым opened_at
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from typing import TypeVar
from uuid import uuid4

import redis

from smartmeet_pipeline.common.errors import CircuitOpenError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_circuit_reset, record_circuit_state
from smartmeet_pipeline.common.time import Clock, utc_ms
from smartmeet_pipeline.domain.enums import CircuitState

log = get_project_logger()

T = TypeVar("T")

_KEY_PREFIX = "cb:"


@dataclass
class CircuitBreakerState:
    state: str  # CLOSED|OPEN|HALF_OPEN
    consecutive_failures: int
    opened_at: int | None  # ms epoch
    last_error: str | None
    updated_at: int


Mutation = Callable[[CircuitBreakerState], CircuitBreakerState | None]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        client: redis.Redis | None,
        *,
        failure_threshold: int = 5,
        reset_timeout_sec: int = 60,
        clock: Clock = utc_ms,
    ) -> None:
        self.name = name
        self.client = client
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout_ms = max(1, int(reset_timeout_sec)) * 1000
        self.clock = clock

        self._mirror: CircuitBreakerState | None = None
        self._lock = threading.Lock()
        self._local_trial_until: int | None = None

    # ------------------------------------------------------------------
    # Хранилище состояния
    # ------------------------------------------------------------------
    @property
    def key(self) -> str:
        return f"{_KEY_PREFIX}{self.name}"

    @property
    def trial_key(self) -> str:
        return f"{_KEY_PREFIX}{self.name}:trial"

    def _default_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=CircuitState.CLOSED.value,
            consecutive_failures=0,
            opened_at=None,
            last_error=None,
            updated_at=self.clock(),
        )

    def _parse(self, raw: str | None) -> CircuitBreakerState | None:
        if not raw:
            return None
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        try:
            return CircuitBreakerState(
                state=str(data["state"]),
                consecutive_failures=int(data["consecutive_failures"]),
                opened_at=int(data["opened_at"]) if data.get("opened_at") is not None else None,
                last_error=str(data["last_error"]) if data.get("last_error") else None,
                updated_at=int(data["updated_at"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def _load(self) -> CircuitBreakerState:
        if self.client is not None:
            try:
                state = self._parse(self.client.get(self.key))
                if state:
                    self._mirror = state
                    return state
            except Exception as e:
                log.warning(
                    "cb_redis_read_failed",
                    extra={"payload": {"provider": self.name, "error": str(e)[:200]}},
                )
        if self._mirror:
            return self._mirror
        return self._default_state()

    def _update(self, mutate: Mutation) -> tuple[CircuitBreakerState, bool]:
        """
        Атомарное чтение-изменение-запись состояния.

        В Redis: WATCH cb:<name> / MULTI / SET, при гонке redis-py
        повторяет транзакцию. mutate возвращает None, если менять нечего.
        Возвращает (итоговое состояние, было ли изменение).
        """
        if self.client is not None:
            try:

                def txn(pipe) -> tuple[CircuitBreakerState, bool]:
                    current = self._parse(pipe.get(self.key)) or self._mirror or self._default_state()
                    nxt = mutate(current)
                    pipe.multi()
                    if nxt is None:
                        return current, False
                    pipe.set(self.key, json.dumps(asdict(nxt), ensure_ascii=False))
                    return nxt, True

                state, changed = self.client.transaction(txn, self.key, value_from_callable=True)
                self._mirror = state
                if changed:
                    record_circuit_state(provider=self.name, state=state.state)
                return state, changed
            except Exception as e:
                log.warning(
                    "cb_redis_write_failed",
                    extra={"payload": {"provider": self.name, "error": str(e)[:200]}},
                )

        with self._lock:
            current = self._mirror or self._default_state()
            nxt = mutate(current)
            if nxt is None:
                return current, False
            self._mirror = nxt
        record_circuit_state(provider=self.name, state=nxt.state)
        return nxt, True

    # ------------------------------------------------------------------
    # Пробный вызов в HALF_OPEN
    # ------------------------------------------------------------------
    def _claim_local_trial(self) -> bool:
        now = self.clock()
        with self._lock:
            if self._local_trial_until is not None and self._local_trial_until > now:
                return False
            self._local_trial_until = now + self.reset_timeout_ms
            return True

    def _claim_trial(self, token: str) -> bool:
        if self.client is not None:
            try:
                return bool(
                    self.client.set(
                        self.trial_key, token, nx=True, px=self.reset_timeout_ms
                    )
                )
            except Exception as e:
                log.warning(
                    "cb_trial_lease_failed",
                    extra={"payload": {"provider": self.name, "error": str(e)[:200]}},
                )
        return self._claim_local_trial()

    def _release_trial(self, token: str) -> None:
        with self._lock:
            self._local_trial_until = None
        if self.client is None:
            return
        try:
            if self.client.get(self.trial_key) == token:
                self.client.delete(self.trial_key)
        except Exception as e:
            log.warning(
                "cb_trial_release_failed",
                extra={"payload": {"provider": self.name, "error": str(e)[:200]}},
            )

    # ------------------------------------------------------------------
    # Публичный API
    # ------------------------------------------------------------------
    def _retry_after_sec(self, state: CircuitBreakerState, now: int) -> int:
        opened_at = state.opened_at if state.opened_at is not None else now
        remaining_ms = max(0, self.reset_timeout_ms - (now - opened_at))
        return max(1, -(-remaining_ms // 1000))

    def get_state(self) -> CircuitState:
        """
        Текущее состояние. OPEN с истёкшим cooldown отдаётся как HALF_OPEN.
        """
        state = self._load()
        if state.state == CircuitState.OPEN.value:
            opened_at = state.opened_at if state.opened_at is not None else 0
            if self.clock() - opened_at >= self.reset_timeout_ms:
                return CircuitState.HALF_OPEN
        return CircuitState(state.state)

    def snapshot(self) -> CircuitBreakerState:
        return self._load()

    def is_open(self) -> bool:
        return self.get_state() == CircuitState.OPEN

    def _before_call(self) -> str | None:
        """
        Решение о пропуске вызова. Возвращает токен пробного вызова (HALF_OPEN)
        или None для обычного вызова в CLOSED.
        """
        state = self._load()
        if state.state == CircuitState.CLOSED.value:
            return None

        now = self.clock()
        if state.state == CircuitState.OPEN.value:
            opened_at = state.opened_at if state.opened_at is not None else now
            if now - opened_at < self.reset_timeout_ms:
                raise CircuitOpenError(self.name, self._retry_after_sec(state, now))

        token = uuid4().hex
        if not self._claim_trial(token):
            raise CircuitOpenError(self.name, self._retry_after_sec(state, now))

        def to_half_open(current: CircuitBreakerState) -> CircuitBreakerState | None:
            if current.state != CircuitState.OPEN.value:
                return None
            return replace(current, state=CircuitState.HALF_OPEN.value, updated_at=now)

        _, changed = self._update(to_half_open)
        if changed:
            log.info("cb_half_open", extra={"payload": {"provider": self.name}})
        return token

    def _on_success(self, started_at: int) -> None:
        def close(current: CircuitBreakerState) -> CircuitBreakerState | None:
            if current.state == CircuitState.CLOSED.value and current.consecutive_failures == 0:
                return None
            # OPEN, выставленный чужим сбоем после начала нашего вызова, не затираем
            if (
                current.state == CircuitState.OPEN.value
                and current.opened_at is not None
                and current.opened_at >= started_at
            ):
                return None
            return self._default_state()

        _, changed = self._update(close)
        if changed:
            log.info("cb_closed", extra={"payload": {"provider": self.name, "reason": "success"}})

    def _on_failure(self, error: str | None) -> None:
        now = self.clock()

        def count_failure(current: CircuitBreakerState) -> CircuitBreakerState:
            failures = max(1, current.consecutive_failures + 1)
            should_open = (
                failures >= self.failure_threshold
                or current.state == CircuitState.HALF_OPEN.value
            )
            return CircuitBreakerState(
                state=CircuitState.OPEN.value if should_open else CircuitState.CLOSED.value,
                consecutive_failures=failures,
                opened_at=now if should_open else None,
                last_error=(error or "")[:300] or None,
                updated_at=now,
            )

        next_state, _ = self._update(count_failure)
        log.warning(
            "cb_failure",
            extra={
                "payload": {
                    "provider": self.name,
                    "failures": next_state.consecutive_failures,
                    "threshold": self.failure_threshold,
                    "state": next_state.state,
                }
            },
        )

    def execute(self, fn: Callable[[], T]) -> T:
        """
        Выполнить fn под защитой breaker'а.
        В OPEN бросает CircuitOpenError, не вызывая fn.
        Лиз пробного вызова освобождается только после записи нового состояния.
        """
        trial_token = self._before_call()
        started_at = self.clock()
        try:
            try:
                result = fn()
            except Exception as e:
                self._on_failure(str(e))
                raise
            self._on_success(started_at)
            return result
        finally:
            if trial_token is not None:
                self._release_trial(trial_token)

    def reset(self, *, reason: str = "manual_reset", source: str = "admin") -> CircuitBreakerState:
        saved, _ = self._update(lambda _current: self._default_state())
        self._release_trial_force()
        record_circuit_reset(provider=self.name, source=source)
        log.info(
            "cb_reset",
            extra={"payload": {"provider": self.name, "reason": reason, "state": saved.state}},
        )
        return saved

    def _release_trial_force(self) -> None:
        with self._lock:
            self._local_trial_until = None
        if self.client is None:
            return
        try:
            self.client.delete(self.trial_key)
        except Exception as e:
            log.warning(
                "cb_trial_release_failed",
                extra={"payload": {"provider": self.name, "error": str(e)[:200]}},
            )
