from __future__ import annotations

import pytest

from smartmeet_pipeline.common.errors import ConcurrencyLimitExceeded
from smartmeet_pipeline.resilience.concurrency import ConcurrencyLimiter


def _limiter(fake_redis, clock, **kwargs) -> ConcurrencyLimiter:
    kwargs.setdefault("max_concurrency", 2)
    kwargs.setdefault("ttl_ms", 10_000)
    return ConcurrencyLimiter("ai_processing", fake_redis, clock=clock, **kwargs)


def test_acquire_up_to_max_then_rejects(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)

    r1 = limiter.acquire("req_1")
    r2 = limiter.acquire("req_2")
    r3 = limiter.acquire("req_3")

    assert r1 is not None
    assert r2 is not None
    assert r3 is None
    assert limiter.held() == 2

    r1()
    assert limiter.held() == 1
    assert limiter.acquire("req_4") is not None


def test_expired_slots_are_purged_on_acquire(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock)
    assert limiter.acquire("crashed_1") is not None
    assert limiter.acquire("crashed_2") is not None
    assert limiter.acquire("req_3") is None

    clock.advance(ms=10_001)
    assert limiter.acquire("req_4") is not None
    assert limiter.held() == 1


def test_slot_releases_on_exception(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock, max_concurrency=1)

    with pytest.raises(RuntimeError):
        with limiter.slot("req_1"):
            raise RuntimeError("provider blew up")

    assert limiter.held() == 0
    assert limiter.run("req_2", lambda: "ok") == "ok"


def test_run_raises_when_limit_reached(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock, max_concurrency=1)
    release = limiter.acquire("req_1")
    assert release is not None

    calls: list[str] = []
    with pytest.raises(ConcurrencyLimitExceeded):
        limiter.run("req_2", lambda: calls.append("x"))
    assert calls == []


def test_store_down_fail_open_allows(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock, fail_open=True)
    fake_redis.down = True

    release = limiter.acquire("req_1")
    assert release is not None
    release()


def test_store_down_fail_closed_rejects(fake_redis, clock) -> None:
    limiter = _limiter(fake_redis, clock, fail_open=False)
    fake_redis.down = True

    assert limiter.acquire("req_1") is None
    with pytest.raises(ConcurrencyLimitExceeded):
        limiter.run("req_2", lambda: None)
