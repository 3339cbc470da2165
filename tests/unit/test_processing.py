from __future__ import annotations

from smartmeet_pipeline.common.errors import ErrCode, ErrorKind
from smartmeet_pipeline.domain.enums import JobStatus, ProcessingStep
from smartmeet_pipeline.resilience.rate_limit import RateLimitProfile
from smartmeet_pipeline.services.processing import (
    AI_RESOURCE,
    BREAKER_OPEN_MESSAGE,
    BREAKER_OPEN_USER_MESSAGE,
    NO_API_KEY_MESSAGE,
)
from smartmeet_pipeline.storage.job_store import TranscriptLine

AUDIO_KEY = "owner_1/job_1/meeting.mp3"


def _notifications(ctx, owner_id: str = "owner_1") -> list[str]:
    return [n.title for n in ctx.notifier.list_for_owner(owner_id)]


def test_text_artifact_end_to_end(ctx, seed, provider) -> None:
    job_id = seed()

    result = ctx.orchestrator.process(job_id)

    assert result.ok is True
    assert result.status == JobStatus.COMPLETED
    assert provider.calls == ["summarize"]
    assert provider.summarized == ["Alice: Let's ship v2."]

    job = ctx.store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.step == ProcessingStep.COMPLETED
    assert job.summary == "Team agreed to ship v2."
    assert job.project_doc == "# Doc"
    assert job.is_technical is False
    assert [line.text for line in ctx.store.list_transcript(job_id)] == ["Alice: Let's ship v2."]
    assert _notifications(ctx) == ["Processing Complete"]


def test_transcription_failure_records_failed_step(ctx, seed, provider) -> None:
    provider.transcribe_error = "Whisper returned 500"
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")

    result = ctx.orchestrator.process(job_id)

    assert result.ok is False
    assert result.status == JobStatus.FAILED
    assert result.step == ProcessingStep.TRANSCRIPTION
    assert result.error_code == ErrCode.TRANSCRIPTION_PROVIDER_ERROR
    assert result.error_kind == ErrorKind.TRANSIENT_PROVIDER
    assert result.retryable is True

    job = ctx.store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.step == ProcessingStep.FAILED
    assert job.failed_step == ProcessingStep.TRANSCRIPTION
    assert job.error_message == "System Error [transcription_provider_error]: Whisper returned 500"
    assert ctx.store.list_transcript(job_id) == []
    assert _notifications(ctx) == ["Processing Failed"]


def test_resume_skips_transcription_when_transcript_persisted(ctx, seed, provider) -> None:
    provider.summarize_error = "LLM timeout"
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")

    first = ctx.orchestrator.process(job_id)
    assert first.ok is False
    assert first.step == ProcessingStep.SUMMARIZATION
    assert [line.text for line in ctx.store.list_transcript(job_id)] == ["Alice: Let's ship v2."]

    provider.summarize_error = None
    second = ctx.orchestrator.process(job_id)

    assert second.ok is True
    assert provider.calls == ["transcribe", "summarize", "summarize"]
    assert ctx.store.get_job(job_id).status == JobStatus.COMPLETED


def test_document_goes_to_document_transcription(ctx, seed, provider) -> None:
    job_id = seed(key="owner_1/job_1/brief.pdf", content=b"%PDF-1.7")
    assert ctx.orchestrator.process(job_id).ok is True
    assert provider.calls == ["transcribe_document", "summarize"]


def test_breaker_opens_and_failure_message_reflects_it(ctx, seed, provider) -> None:
    provider.transcribe_error = "provider down"
    seed(job_id="job_1", key="owner_1/job_1/a.mp3", content=b"a")
    seed(job_id="job_2", key="owner_1/job_2/a.mp3", content=b"a", create_owner=False)
    seed(job_id="job_3", key="owner_1/job_3/a.mp3", content=b"a", create_owner=False)

    first = ctx.orchestrator.process("job_1")
    assert first.message is None

    second = ctx.orchestrator.process("job_2")
    assert second.message == BREAKER_OPEN_USER_MESSAGE
    assert ctx.store.get_job("job_2").error_message == BREAKER_OPEN_MESSAGE

    calls_before = len(provider.calls)
    third = ctx.orchestrator.process("job_3")
    assert third.error_code == ErrCode.CIRCUIT_OPEN
    assert third.retryable is True
    assert len(provider.calls) == calls_before
    assert ctx.store.get_job("job_3").error_message == BREAKER_OPEN_MESSAGE


def test_missing_api_key_is_configuration_error(ctx, seed, provider) -> None:
    job_id = seed(api_key=None)

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.CONFIG_MISSING
    assert result.error_kind == ErrorKind.CONFIGURATION
    assert result.retryable is False
    assert provider.calls == []
    assert ctx.store.get_job(job_id).error_message == f"System Error [config_missing]: {NO_API_KEY_MESSAGE}"


def test_empty_text_artifact_is_content_error(ctx, seed, provider) -> None:
    job_id = seed(content=b"   \n")

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.EMPTY_TRANSCRIPTION
    assert result.error_kind == ErrorKind.CONTENT
    assert result.retryable is False
    assert result.step == ProcessingStep.TRANSCRIPTION
    assert provider.calls == []


def test_empty_transcription_is_content_error(ctx, seed, provider) -> None:
    provider.transcript = "  "
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.EMPTY_TRANSCRIPTION
    assert ctx.store.get_job(job_id).error_message.endswith("No speech detected in audio")


def test_missing_artifact_is_retryable_storage_error(ctx, seed) -> None:
    job_id = seed(content=None)

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.STORAGE_ERROR
    assert result.retryable is True


def test_rate_limit_denial_is_transient(ctx, seed, provider) -> None:
    ctx.rate_limiter.profiles["api"] = RateLimitProfile(points=1, window_sec=60)
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.RATE_LIMITED
    assert result.retryable is True
    assert result.step == ProcessingStep.SUMMARIZATION
    assert provider.calls == ["transcribe"]


def test_concurrency_limit_is_transient(ctx, seed, provider) -> None:
    limiter = ctx.resilience.limiter(AI_RESOURCE)
    for i in range(limiter.max_concurrency):
        assert limiter.acquire(f"busy_{i}") is not None
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")

    result = ctx.orchestrator.process(job_id)

    assert result.error_code == ErrCode.CONCURRENCY_LIMIT
    assert result.retryable is True
    assert provider.calls == []


def test_completed_job_is_acknowledged_without_reprocessing(ctx, seed, provider) -> None:
    job_id = seed()
    assert ctx.orchestrator.process(job_id).ok is True

    again = ctx.orchestrator.process(job_id)

    assert again.ok is True
    assert again.message == "already_completed"
    assert provider.calls == ["summarize"]


def test_processing_job_is_not_picked_twice_unless_stuck(ctx, seed, clock) -> None:
    job_id = seed()
    ctx.store.mark_processing(job_id, ProcessingStep.TRANSCRIPTION)

    busy = ctx.orchestrator.process(job_id)
    assert busy.ok is False
    assert busy.error_code == ErrCode.CONFLICT

    clock.advance(sec=121)
    assert ctx.orchestrator.process(job_id).ok is True


def test_success_invalidates_owner_cache(ctx, seed, fake_redis) -> None:
    job_id = seed()
    ctx.cache.set_json("user:owner_1:dashboard", {"jobs": 1})

    ctx.orchestrator.process(job_id)

    assert fake_redis.get("user:owner_1:dashboard") is None


def test_unknown_job_returns_not_found(ctx) -> None:
    result = ctx.orchestrator.process("missing")
    assert result.ok is False
    assert result.error_code == ErrCode.NOT_FOUND


def test_process_never_raises(ctx, monkeypatch) -> None:
    def _boom(job_id: str):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(ctx.store, "get_job", _boom)
    result = ctx.orchestrator.process("job_1")
    assert result.ok is False
    assert result.error_code == ErrCode.UNKNOWN
    assert result.retryable is False


def test_bom_only_text_artifact_is_content_error(ctx, seed, provider) -> None:
    job_id = seed(content=b"\xef\xbb\xbf   \n")

    result = ctx.orchestrator.process(job_id)

    assert result.ok is False
    assert result.error_code == ErrCode.EMPTY_TRANSCRIPTION
    assert provider.calls == []
    assert ctx.store.list_transcript(job_id) == []


def test_stuck_summarization_resumes_after_retry_without_transcribing(
    ctx, seed, provider, clock
) -> None:
    job_id = seed(key=AUDIO_KEY, content=b"\x00audio")
    # воркер упал после сохранения транскрипта, не дойдя до саммари
    ctx.store.mark_processing(job_id, ProcessingStep.TRANSCRIPTION)
    ctx.store.replace_transcript(
        job_id, [TranscriptLine(text="Alice: Let's ship v2.", confidence=0.9)]
    )
    ctx.store.update_step(job_id, ProcessingStep.SUMMARIZATION)

    clock.advance(sec=121)
    ctx.jobs.retry(job_id)
    report = ctx.worker.run_once()

    assert report.processed_count == 1
    assert "transcribe" not in provider.calls
    assert provider.calls == ["summarize"]
    assert provider.summarized == ["Alice: Let's ship v2."]
    assert ctx.store.get_job(job_id).status == JobStatus.COMPLETED


def test_trial_held_by_other_worker_records_breaker_message(
    ctx, seed, provider, clock, fake_redis
) -> None:
    provider.transcribe_error = "provider down"
    seed(job_id="job_1", key="owner_1/job_1/a.mp3", content=b"a")
    seed(job_id="job_2", key="owner_1/job_2/a.mp3", content=b"a", create_owner=False)
    seed(job_id="job_3", key="owner_1/job_3/a.mp3", content=b"a", create_owner=False)
    ctx.orchestrator.process("job_1")
    ctx.orchestrator.process("job_2")

    clock.advance(sec=61)
    (breaker,) = ctx.resilience.breakers().values()
    fake_redis.set(breaker.trial_key, "other-worker", px=60_000)
    calls_before = len(provider.calls)

    result = ctx.orchestrator.process("job_3")

    assert result.error_code == ErrCode.CIRCUIT_OPEN
    assert result.message == BREAKER_OPEN_USER_MESSAGE
    assert len(provider.calls) == calls_before
    assert ctx.store.get_job("job_3").error_message == BREAKER_OPEN_MESSAGE


def test_run_start_drops_cached_failed_status(ctx, seed, provider, monkeypatch) -> None:
    provider.summarize_error = "LLM timeout"
    job_id = seed()
    ctx.orchestrator.process(job_id)
    assert ctx.jobs.status(job_id, owner_id="owner_1")["status"] == "FAILED"

    provider.summarize_error = None
    summarize = provider.summarize
    seen: list[str] = []

    def observe_status(text: str, **kwargs):
        seen.append(ctx.jobs.status(job_id, owner_id="owner_1")["status"])
        return summarize(text, **kwargs)

    monkeypatch.setattr(provider, "summarize", observe_status)
    assert ctx.orchestrator.process(job_id).ok is True

    assert seen == ["PROCESSING"]
    assert ctx.jobs.status(job_id, owner_id="owner_1")["status"] == "COMPLETED"
