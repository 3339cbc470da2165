from __future__ import annotations

import pytest

from smartmeet_pipeline.resilience.rate_limit import (
    RateLimiter,
    RateLimitProfile,
    rate_limit_headers,
)


def _limiter(fake_redis, clock) -> RateLimiter:
    return RateLimiter(
        fake_redis,
        profiles={
            "api": RateLimitProfile(points=3, window_sec=60),
            "login": RateLimitProfile(points=2, window_sec=900),
        },
        clock=clock,
    )


def test_api_profile_exhausts_and_recovers(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)

    results = [limiter.check("api", "owner_1") for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    denied = limiter.check("api", "owner_1")
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after_sec == 60

    # Другой ключ не затронут
    assert limiter.check("api", "owner_2").allowed is True

    clock.advance(sec=60, ms=1)
    assert limiter.check("api", "owner_1").allowed is True


def test_sliding_window_counts_only_recent_hits(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    limiter.check("api", "k")
    clock.advance(sec=30)
    limiter.check("api", "k")
    limiter.check("api", "k")
    assert limiter.check("api", "k").allowed is False

    clock.advance(sec=31)
    again = limiter.check("api", "k")
    assert again.allowed is True
    assert again.remaining == 0


def test_denied_hits_do_not_consume_points(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    for _ in range(3):
        limiter.check("api", "k")
    for _ in range(5):
        assert limiter.check("api", "k").allowed is False
    assert fake_redis.zcard("ratelimit:api:k") == 3


def test_reset_clears_counter(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    for _ in range(4):
        limiter.check("api", "k")
    limiter.reset("k", "api")
    assert limiter.check("api", "k").remaining == 2


def test_falls_back_to_memory_when_redis_down(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    fake_redis.down = True

    assert [limiter.check("api", "k").allowed for _ in range(4)] == [True, True, True, False]

    fake_redis.down = False
    assert limiter.check("api", "k").allowed is True


def test_memory_backend_window_resets(clock) -> None:
    limiter = RateLimiter(None, profiles={"api": RateLimitProfile(1, 10)}, clock=clock)
    assert limiter.check("api", "k").allowed is True
    denied = limiter.check("api", "k")
    assert denied.allowed is False
    assert denied.retry_after_sec == 10

    clock.advance(sec=10)
    assert limiter.check("api", "k").allowed is True


def test_login_composite_denies_when_ip_exhausted(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    assert limiter.check_login("alice@example.com", "10.0.0.1").allowed is True
    assert limiter.check_login("bob@example.com", "10.0.0.1").allowed is True

    result = limiter.check_login("carol@example.com", "10.0.0.1")
    assert result.allowed is False
    assert result.remaining == 0
    assert result.retry_after_sec > 0


def test_unknown_limiter_type_raises(fake_redis, clock) -> None:
    with pytest.raises(ValueError):
        _limiter(fake_redis, clock).check("nope", "k")


def test_headers_include_retry_after_only_when_denied(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    ok = limiter.check("api", "k")
    headers = rate_limit_headers(ok)
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "2"
    assert headers["X-RateLimit-Reset"] == "60"
    assert "Retry-After" not in headers

    for _ in range(3):
        denied = limiter.check("api", "k")
    assert rate_limit_headers(denied)["Retry-After"] == "60"
