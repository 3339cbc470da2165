"""
Rate limiting по именованным профилям.

Профили (points / окно):
- api: 50 / 60s
- login: 5 / 15min
- general: 100 / 1h

Стратегии:
- основная: скользящее окно в Redis (sorted set <prefix>:<type>:<key>)
- запасная: локальный fixed-window счётчик с теми же (points, window)
- выбор делается на каждом вызове: кратковременная недоступность Redis
  деградирует до локального счётчика, а не валит запросы
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from uuid import uuid4

import redis

from smartmeet_pipeline.common.config import Settings
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_rate_limit_decision
from smartmeet_pipeline.common.time import Clock, utc_ms

log = get_project_logger()


@dataclass(frozen=True)
class RateLimitProfile:
    points: int
    window_sec: int

    @property
    def window_ms(self) -> int:
        return self.window_sec * 1000


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_ms: int  # мс до сброса окна
    retry_after_sec: int


DEFAULT_PROFILES: dict[str, RateLimitProfile] = {
    "api": RateLimitProfile(points=50, window_sec=60),
    "login": RateLimitProfile(points=5, window_sec=15 * 60),
    "general": RateLimitProfile(points=100, window_sec=60 * 60),
}


def profiles_from_settings(s: Settings) -> dict[str, RateLimitProfile]:
    return {
        "api": RateLimitProfile(s.rate_limit_api_points, s.rate_limit_api_window_sec),
        "login": RateLimitProfile(s.rate_limit_login_points, s.rate_limit_login_window_sec),
        "general": RateLimitProfile(
            s.rate_limit_general_points, s.rate_limit_general_window_sec
        ),
    }


def _ceil_sec(ms: int) -> int:
    return max(0, -(-int(ms) // 1000))


class RateLimiter:
    def __init__(
        self,
        client: redis.Redis | None,
        *,
        profiles: dict[str, RateLimitProfile] | None = None,
        prefix: str = "ratelimit",
        clock: Clock = utc_ms,
    ) -> None:
        self.client = client
        self.profiles = dict(profiles or DEFAULT_PROFILES)
        self.prefix = prefix
        self.clock = clock

        # key -> (window_started_ms, consumed)
        self._local: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def _profile(self, limiter_type: str) -> RateLimitProfile:
        profile = self.profiles.get(limiter_type)
        if profile is None:
            raise ValueError(f"unknown rate limiter type: {limiter_type}")
        return profile

    def _key(self, limiter_type: str, key: str) -> str:
        return f"{self.prefix}:{limiter_type}:{key}"

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------
    def _check_redis(self, store_key: str, profile: RateLimitProfile) -> RateLimitResult:
        now = self.clock()
        member = f"{now}:{uuid4().hex}"
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(store_key, "-inf", now - profile.window_ms)
        pipe.zadd(store_key, {member: now})
        pipe.zcard(store_key)
        pipe.pexpire(store_key, profile.window_ms)
        _, _, count, _ = pipe.execute()
        count = int(count)

        if count <= profile.points:
            oldest = self.client.zrange(store_key, 0, 0, withscores=True)
            oldest_ms = int(oldest[0][1]) if oldest else now
            return RateLimitResult(
                allowed=True,
                limit=profile.points,
                remaining=max(0, profile.points - count),
                reset_ms=max(0, oldest_ms + profile.window_ms - now),
                retry_after_sec=0,
            )

        self.client.zrem(store_key, member)
        oldest = self.client.zrange(store_key, 0, 0, withscores=True)
        oldest_ms = int(oldest[0][1]) if oldest else now
        reset_ms = max(1, oldest_ms + profile.window_ms - now)
        return RateLimitResult(
            allowed=False,
            limit=profile.points,
            remaining=0,
            reset_ms=reset_ms,
            retry_after_sec=max(1, _ceil_sec(reset_ms)),
        )

    def _check_local(self, store_key: str, profile: RateLimitProfile) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            started, consumed = self._local.get(store_key, (now, 0))
            if now - started >= profile.window_ms:
                started, consumed = now, 0
            reset_ms = max(0, started + profile.window_ms - now)

            if consumed >= profile.points:
                self._local[store_key] = (started, consumed)
                return RateLimitResult(
                    allowed=False,
                    limit=profile.points,
                    remaining=0,
                    reset_ms=max(1, reset_ms),
                    retry_after_sec=max(1, _ceil_sec(reset_ms)),
                )

            consumed += 1
            self._local[store_key] = (started, consumed)
            return RateLimitResult(
                allowed=True,
                limit=profile.points,
                remaining=max(0, profile.points - consumed),
                reset_ms=reset_ms,
                retry_after_sec=0,
            )

    # ------------------------------------------------------------------
    # Публичный API
    # ------------------------------------------------------------------
    def check(self, limiter_type: str, key: str) -> RateLimitResult:
        """
        Списать одну точку для key в профиле limiter_type.
        """
        profile = self._profile(limiter_type)
        store_key = self._key(limiter_type, key)

        backend = "redis"
        result: RateLimitResult | None = None
        if self.client is not None:
            try:
                result = self._check_redis(store_key, profile)
            except Exception as e:
                log.warning(
                    "rate_limit_redis_failed",
                    extra={
                        "payload": {"limiter": limiter_type, "error": str(e)[:200]}
                    },
                )
        if result is None:
            backend = "memory"
            result = self._check_local(store_key, profile)

        record_rate_limit_decision(limiter=limiter_type, backend=backend, allowed=result.allowed)
        if not result.allowed:
            log.info(
                "rate_limit_denied",
                extra={
                    "payload": {
                        "limiter": limiter_type,
                        "backend": backend,
                        "retry_after_sec": result.retry_after_sec,
                    }
                },
            )
        return result

    def reset(self, key: str, limiter_type: str) -> None:
        """
        Административный сброс счётчика (например, после успешного логина).
        """
        self._profile(limiter_type)
        store_key = self._key(limiter_type, key)
        with self._lock:
            self._local.pop(store_key, None)
        if self.client is None:
            return
        try:
            self.client.delete(store_key)
        except Exception as e:
            log.warning(
                "rate_limit_reset_failed",
                extra={"payload": {"limiter": limiter_type, "error": str(e)[:200]}},
            )

    def check_login(self, identity: str, ip: str) -> RateLimitResult:
        """
        Составная проверка логина: окно по identity и окно по IP.
        Отказ, если исчерпано любое; remaining берётся более строгий.
        """
        by_identity = self.check("login", f"identity:{identity}")
        by_ip = self.check("login", f"ip:{ip}")
        allowed = by_identity.allowed and by_ip.allowed
        return RateLimitResult(
            allowed=allowed,
            limit=min(by_identity.limit, by_ip.limit),
            remaining=min(by_identity.remaining, by_ip.remaining),
            reset_ms=max(by_identity.reset_ms, by_ip.reset_ms),
            retry_after_sec=0
            if allowed
            else max(by_identity.retry_after_sec, by_ip.retry_after_sec),
        )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
        "X-RateLimit-Reset": str(_ceil_sec(result.reset_ms)),
    }
    if not result.allowed:
        headers["Retry-After"] = str(max(1, result.retry_after_sec))
    return headers
