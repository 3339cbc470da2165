from __future__ import annotations

import fnmatch
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import pytest
import redis
from sqlalchemy.pool import StaticPool

from smartmeet_pipeline.common.config import get_settings
from smartmeet_pipeline.common.errors import ErrCode
from smartmeet_pipeline.providers.base import (
    AIProvider,
    Artifact,
    ProviderResult,
    SummaryOptions,
    SummaryResult,
    TranscriptionResult,
)
from smartmeet_pipeline.runtime import PipelineContext, build_context
from smartmeet_pipeline.storage.db import create_schema, make_engine, make_session_factory
from smartmeet_pipeline.storage.job_store import SqlJobStore

START_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z


class SimClock:
    """Симулированные часы: ms epoch для Redis/resilience и datetime для БД."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.ms / 1000, UTC)

    def advance(self, *, sec: float = 0, ms: int = 0) -> None:
        self.ms += int(sec * 1000) + ms


def _score_bound(value: Any) -> float:
    if value in ("-inf", b"-inf"):
        return float("-inf")
    if value in ("+inf", "inf", b"+inf"):
        return float("inf")
    return float(value)


class FakeRedis:
    """
    In-memory Redis с TTL по симулированным часам.
    down=True -> любая команда бросает redis.ConnectionError.
    """

    def __init__(self, clock: SimClock | None = None) -> None:
        self.clock = clock or SimClock()
        self.down = False
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiry: dict[str, int] = {}
        self.versions: dict[str, int] = {}
        self.watch_conflicts = 0

    # -- служебное ---------------------------------------------------------
    def _check(self) -> None:
        if self.down:
            raise redis.ConnectionError("fake redis is down")

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def _drop(self, key: str) -> bool:
        existed = key in self.strings or key in self.lists or key in self.zsets
        if existed:
            self._touch(key)
        self.strings.pop(key, None)
        self.lists.pop(key, None)
        self.zsets.pop(key, None)
        self.expiry.pop(key, None)
        return existed

    def _purge(self, key: str) -> None:
        exp = self.expiry.get(key)
        if exp is not None and exp <= self.clock():
            self._drop(key)

    def _keys(self) -> list[str]:
        keys = set(self.strings) | set(self.lists) | set(self.zsets)
        for key in list(keys):
            self._purge(key)
        return sorted(set(self.strings) | set(self.lists) | set(self.zsets))

    # -- strings -----------------------------------------------------------
    def get(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        return self.strings.get(key)

    def set(
        self,
        key: str,
        value: Any,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
    ) -> bool | None:
        self._check()
        self._purge(key)
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        self._touch(key)
        self.expiry.pop(key, None)
        if ex is not None:
            self.expiry[key] = self.clock() + int(ex) * 1000
        if px is not None:
            self.expiry[key] = self.clock() + int(px)
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for k in keys if self._drop(k))

    def pexpire(self, key: str, ms: int) -> bool:
        self._check()
        self._purge(key)
        if key not in self.strings and key not in self.lists and key not in self.zsets:
            return False
        self.expiry[key] = self.clock() + int(ms)
        return True

    def scan_iter(self, match: str | None = None) -> Iterator[str]:
        self._check()
        for key in self._keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    # -- lists -------------------------------------------------------------
    def rpush(self, key: str, *values: str) -> int:
        self._check()
        self._purge(key)
        items = self.lists.setdefault(key, [])
        items.extend(str(v) for v in values)
        return len(items)

    def lpop(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        items = self.lists.get(key)
        if not items:
            return None
        value = items.pop(0)
        if not items:
            self.lists.pop(key, None)
        return value

    def llen(self, key: str) -> int:
        self._check()
        self._purge(key)
        return len(self.lists.get(key, []))

    # -- sorted sets -------------------------------------------------------
    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        self._purge(key)
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update({str(m): float(s) for m, s in mapping.items()})
        return added

    def zrem(self, key: str, *members: str) -> int:
        self._check()
        self._purge(key)
        zset = self.zsets.get(key, {})
        removed = sum(1 for m in members if zset.pop(m, None) is not None)
        if key in self.zsets and not zset:
            self.zsets.pop(key, None)
        return removed

    def zcard(self, key: str) -> int:
        self._check()
        self._purge(key)
        return len(self.zsets.get(key, {}))

    def zcount(self, key: str, min: Any, max: Any) -> int:
        self._check()
        self._purge(key)
        lo, hi = _score_bound(min), _score_bound(max)
        return sum(1 for s in self.zsets.get(key, {}).values() if lo <= s <= hi)

    def zremrangebyscore(self, key: str, min: Any, max: Any) -> int:
        self._check()
        self._purge(key)
        lo, hi = _score_bound(min), _score_bound(max)
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if lo <= s <= hi]
        for m in doomed:
            zset.pop(m)
        if key in self.zsets and not zset:
            self.zsets.pop(key, None)
        return len(doomed)

    def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        self._check()
        self._purge(key)
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))
        stop = len(ordered) if end == -1 else end + 1
        picked = ordered[start:stop]
        if withscores:
            return [(m, s) for m, s in picked]
        return [m for m, _ in picked]

    # -- прочее ------------------------------------------------------------
    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    def transaction(self, func, *watches: str, value_from_callable: bool = False, **kwargs: Any):
        """WATCH/MULTI/EXEC: изменение watched-ключа во время func -> повтор."""
        while True:
            self._check()
            seen = {k: self.versions.get(k, 0) for k in watches}
            pipe = _FakePipeline(self, watching=True)
            value = func(pipe)
            if any(self.versions.get(k, 0) != v for k, v in seen.items()):
                self.watch_conflicts += 1
                continue
            result = pipe.execute()
            return value if value_from_callable else result

    def close(self) -> None:
        return None


class _FakePipeline:
    def __init__(self, client: FakeRedis, *, watching: bool = False) -> None:
        self.client = client
        self.calls: list[tuple[str, tuple, dict]] = []
        self.watching = watching

    def multi(self) -> None:
        self.watching = False

    def __getattr__(self, name: str):
        if self.watching:
            return getattr(self.client, name)

        def queue(*args: Any, **kwargs: Any) -> _FakePipeline:
            self.calls.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> list[Any]:
        self.client._check()
        calls, self.calls = self.calls, []
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in calls]


class FakeProvider(AIProvider):
    """
    Управляемый AI-провайдер: фиксированный транскрипт/саммари
    или конверт с ошибкой.
    """

    name = "fake"

    def __init__(
        self,
        *,
        transcript: str = "Alice: Let's ship v2.",
        summary: str = "Team agreed to ship v2.",
        transcribe_error: str | None = None,
        transcribe_code: str = ErrCode.TRANSCRIPTION_PROVIDER_ERROR,
        summarize_error: str | None = None,
        summarize_code: str = ErrCode.SUMMARIZATION_PROVIDER_ERROR,
    ) -> None:
        self.transcript = transcript
        self.summary = summary
        self.transcribe_error = transcribe_error
        self.transcribe_code = transcribe_code
        self.summarize_error = summarize_error
        self.summarize_code = summarize_code
        self.calls: list[str] = []
        self.summarized: list[str] = []

    def transcribe(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        self.calls.append("transcribe")
        if self.transcribe_error:
            return ProviderResult.fail(self.transcribe_error, code=self.transcribe_code)
        return ProviderResult.ok(TranscriptionResult(text=self.transcript, confidence=0.9))

    def transcribe_document(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        self.calls.append("transcribe_document")
        if self.transcribe_error:
            return ProviderResult.fail(self.transcribe_error, code=self.transcribe_code)
        return ProviderResult.ok(TranscriptionResult(text=self.transcript, confidence=0.8))

    def summarize(
        self, text: str, *, api_key: str, options: SummaryOptions
    ) -> ProviderResult[SummaryResult]:
        self.calls.append("summarize")
        self.summarized.append(text)
        if self.summarize_error:
            return ProviderResult.fail(self.summarize_error, code=self.summarize_code)
        return ProviderResult.ok(SummaryResult(summary=self.summary, project_doc="# Doc"))


class FakeTrigger:
    def __init__(self) -> None:
        self.calls = 0

    def trigger(self) -> None:
        self.calls += 1

    def shutdown(self, *, wait: bool = False) -> None:
        return None


@pytest.fixture()
def clock() -> SimClock:
    return SimClock()


@pytest.fixture()
def fake_redis(clock: SimClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture()
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def store(session_factory, clock: SimClock) -> SqlJobStore:
    return SqlJobStore(session_factory, clock=clock.now)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def settings(tmp_path):
    return get_settings().model_copy(
        update={
            "artifacts_dir": str(tmp_path / "artifacts"),
            "worker_secret": "test-worker-secret",
            "cb_failure_threshold": 2,
            "cb_reset_timeout_sec": 60,
            "task_max_attempts": 3,
            "task_backoff_sec": 0.0,
            "stuck_threshold_sec": 120,
            "stuck_auto_retry_enabled": False,
            "reconciliation_enabled": True,
            "queue_fail_open": True,
            "db_auto_create": False,
        }
    )


@pytest.fixture()
def ctx(settings, fake_redis, engine, provider, clock) -> Iterator[PipelineContext]:
    context = build_context(
        settings,
        redis_conn=fake_redis,
        engine=engine,
        provider=provider,
        trigger=FakeTrigger(),
        clock_ms=clock,
        now=clock.now,
        sleep=lambda _: None,
    )
    yield context
    context.resilience.clear()


def seed_job(
    ctx: PipelineContext,
    *,
    job_id: str = "job_1",
    owner_id: str = "owner_1",
    key: str = "owner_1/job_1/meeting.txt",
    content: bytes | None = b"Alice: Let's ship v2.",
    api_key: str | None = "sk-test-key",
    plan=None,
    is_large_file: bool = False,
    create_owner: bool = True,
) -> str:
    from smartmeet_pipeline.domain.enums import OwnerPlan

    if create_owner:
        ctx.store.create_owner(
            owner_id=owner_id,
            email=f"{owner_id}@example.com",
            plan=plan or OwnerPlan.PRO,
            api_key=api_key,
        )
    if content is not None:
        ctx.storage.put(key, content)
    ctx.store.create_job(
        job_id=job_id,
        owner_id=owner_id,
        title="Weekly sync",
        artifact_key=key,
        is_large_file=is_large_file,
    )
    return job_id


@pytest.fixture()
def seed(ctx: PipelineContext):
    def _seed(**kwargs: Any) -> str:
        return seed_job(ctx, **kwargs)

    return _seed
