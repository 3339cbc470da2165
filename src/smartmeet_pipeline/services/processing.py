"""
Оркестратор обработки job'а (машина состояний конвейера).

Шаги:
1) загрузка job'а и конфигурации владельца (ключ, провайдер, предпочтения)
2) PROCESSING / TRANSCRIPTION с немедленной записью
3) скачивание артефакта
4) текст декодируется напрямую; медиа/документы уходят в провайдера
   (rate limit владельца -> слот конкурентности -> circuit breaker)
5) транскрипт сохраняется сразу (delete-then-create), до суммаризации
6) SUMMARIZATION + вызов провайдера
7) COMPLETED одним коммитом + уведомление + инвалидация кэша
8) при сбое: шаг читается из БД, FAILED + диагностика + уведомление
9) верхний guard: наружу исключения не выходят

Повторный запуск:
- если транскрипт уже сохранён, транскрибация пропускается
- COMPLETED job подтверждается без повторной обработки
"""

from __future__ import annotations

import time
from collections.abc import Callable
from functools import partial
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, TypeVar

from smartmeet_pipeline.common.errors import (
    AppError,
    ConfigurationError,
    ConflictError,
    ContentError,
    ErrCode,
    ErrorKind,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    StorageError,
)
from smartmeet_pipeline.common.ids import new_request_id
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.metrics import record_job_outcome, track_stage_latency
from smartmeet_pipeline.common.time import utc_now
from smartmeet_pipeline.domain.enums import (
    ArtifactKind,
    JobStatus,
    NotificationKind,
    ProcessingStep,
)
from smartmeet_pipeline.domain.state_machine import is_stuck, transition
from smartmeet_pipeline.providers.base import AIProvider, ProviderResult, SummaryOptions
from smartmeet_pipeline.providers.keys import AIConfiguration, resolve_ai_configuration
from smartmeet_pipeline.resilience.rate_limit import RateLimiter
from smartmeet_pipeline.resilience.registry import ResilienceRegistry
from smartmeet_pipeline.storage.blob import LocalBlobStorage
from smartmeet_pipeline.storage.cache import ViewCache
from smartmeet_pipeline.storage.job_store import JobRecord, OwnerProfile, SqlJobStore, TranscriptLine

from .artifacts import build_artifact, decode_text, is_technical
from .notifications import NotificationMessage, SqlNotificationSink, job_link

log = get_project_logger()

T = TypeVar("T")

AI_RESOURCE = "ai_processing"

BREAKER_OPEN_MESSAGE = (
    "Service temporarily unavailable due to multiple previous failures. "
    "Please try again in a minute."
)
BREAKER_OPEN_USER_MESSAGE = "AI service is temporarily unavailable. Please try again shortly."
NO_API_KEY_MESSAGE = "No API key configured. Please add your API key in Settings."


@dataclass
class ProcessingResult:
    ok: bool
    job_id: str
    status: JobStatus | None = None
    step: ProcessingStep | None = None
    error: str | None = None
    error_code: str | None = None
    error_kind: str | None = None
    retryable: bool = False
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        data["step"] = self.step.value if self.step else None
        return data


class ProcessingOrchestrator:
    def __init__(
        self,
        *,
        store: SqlJobStore,
        storage: LocalBlobStorage,
        provider: AIProvider,
        resilience: ResilienceRegistry,
        rate_limiter: RateLimiter,
        notifier: SqlNotificationSink,
        cache: ViewCache,
        decrypt: Callable[[str], str] | None = None,
        stuck_threshold_sec: int = 120,
        clock: Callable[[], datetime] = utc_now,
        service: str = "worker-processing",
    ) -> None:
        self.store = store
        self.storage = storage
        self.provider = provider
        self.resilience = resilience
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.cache = cache
        self.decrypt = decrypt
        self.stuck_threshold_sec = stuck_threshold_sec
        self.clock = clock
        self.service = service

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def process(self, job_id: str) -> ProcessingResult:
        """
        Обработать job целиком. Никогда не бросает исключений.
        """
        try:
            return self._process(job_id)
        except Exception as e:
            log.error(
                "processing_fatal_error",
                extra={"payload": {"job_id": job_id, "error": str(e)[:200]}},
                exc_info=True,
            )
            return ProcessingResult(
                ok=False,
                job_id=job_id,
                error=str(e)[:300] or e.__class__.__name__,
                error_code=getattr(e, "code", ErrCode.UNKNOWN),
                error_kind=getattr(e, "kind", ErrorKind.INTERNAL),
                retryable=bool(getattr(e, "retryable", False)),
            )

    def _process(self, job_id: str) -> ProcessingResult:
        job = self.store.get_job(job_id)
        if job is None:
            err = NotFoundError("Job not found", {"job_id": job_id})
            log.warning("processing_job_not_found", extra={"payload": {"job_id": job_id}})
            return ProcessingResult(
                ok=False, job_id=job_id, error=err.message, error_code=err.code,
                error_kind=err.kind,
            )

        if job.status == JobStatus.COMPLETED:
            log.info("processing_already_completed", extra={"payload": {"job_id": job_id}})
            return ProcessingResult(
                ok=True,
                job_id=job_id,
                status=JobStatus.COMPLETED,
                step=ProcessingStep.COMPLETED,
                message="already_completed",
            )

        if job.status == JobStatus.PROCESSING and not is_stuck(
            status=job.status,
            updated_at=job.updated_at,
            now=self.clock(),
            threshold_sec=self.stuck_threshold_sec,
        ):
            err = ConflictError("Job is already being processed", {"job_id": job_id})
            log.info("processing_already_running", extra={"payload": {"job_id": job_id}})
            return ProcessingResult(
                ok=False, job_id=job_id, status=job.status, step=job.step,
                error=err.message, error_code=err.code, error_kind=err.kind,
            )

        run = _Run(job=job)
        try:
            run.owner = self.store.get_owner(job.owner_id)
            if run.owner is None:
                raise ConfigurationError("Owner not found", {"owner_id": job.owner_id})
            run.config = self._resolve_configuration(run.owner)
            return self._run_pipeline(run)
        except Exception as e:
            return self._handle_failure(run, e)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _resolve_configuration(self, owner: OwnerProfile) -> AIConfiguration:
        kwargs: dict[str, Any] = {}
        if self.decrypt is not None:
            kwargs["decrypt"] = self.decrypt
        config = resolve_ai_configuration(
            stored_key=owner.api_key,
            preferred_provider=owner.preferred_provider,
            preferred_model=owner.preferred_model,
            owner_id=owner.id,
            **kwargs,
        )
        if not config.api_key:
            raise ConfigurationError(NO_API_KEY_MESSAGE, {"owner_id": owner.id})
        return config

    def _advance(self, run: _Run, target: ProcessingStep) -> None:
        tr = transition(run.step, target)
        if not tr.ok:
            raise RuntimeError(f"invalid step transition {run.step.value} -> {target.value}")
        run.step = tr.step

    def _start_run(self, run: _Run, step: ProcessingStep) -> None:
        self._advance(run, step)
        self.store.mark_processing(run.job.id, step)
        # закэшированный FAILED-вид не должен пережить старт нового прогона
        self.cache.invalidate_owner(run.job.owner_id)

    def _run_pipeline(self, run: _Run) -> ProcessingResult:
        job = run.job
        owner = run.owner
        config = run.config

        persisted = self.store.list_transcript(job.id)
        resumed = any(line.text.strip() for line in persisted)

        if resumed:
            self._start_run(run, ProcessingStep.SUMMARIZATION)
            lines = persisted
            transcript = "\n".join(line.text for line in persisted)
            log.info(
                "processing_resumed_from_transcript",
                extra={"payload": {"job_id": job.id, "entries": len(persisted)}},
            )
        else:
            self._start_run(run, ProcessingStep.TRANSCRIPTION)
            lines = self._transcribe(run)
            transcript = "\n".join(line.text for line in lines)
            # Частичный прогресс переживает последующий сбой
            self.store.replace_transcript(job.id, lines)

            self._advance(run, ProcessingStep.SUMMARIZATION)
            self.store.update_step(job.id, ProcessingStep.SUMMARIZATION)

        options = SummaryOptions(
            provider=config.provider,
            model=config.model,
            length=owner.summary_length,
            persona=owner.summary_persona,
            language=owner.default_language,
        )
        summary = self._call_provider(
            run,
            stage="summarization",
            code=ErrCode.SUMMARIZATION_PROVIDER_ERROR,
            fn=lambda: self.provider.summarize(transcript, api_key=config.api_key, options=options),
        )
        if not summary.summary.strip():
            raise ProviderError(
                ErrCode.SUMMARIZATION_PROVIDER_ERROR, "Summarization returned an empty summary"
            )

        self._advance(run, ProcessingStep.COMPLETED)
        self.store.complete(
            job.id,
            lines=lines,
            summary=summary.summary,
            project_doc=summary.project_doc,
            is_technical=is_technical(transcript),
        )
        log.info(
            "processing_completed",
            extra={"payload": {"job_id": job.id, "owner_id": owner.id, "resumed": resumed}},
        )
        record_job_outcome(ok=True, kind=None)

        self._notify(
            owner.id,
            NotificationMessage(
                title="Processing Complete",
                message=f'Your meeting "{job.title}" has been successfully processed.',
                kind=NotificationKind.SUCCESS,
                link=job_link(job.id),
            ),
        )
        self.cache.invalidate_owner(owner.id)
        return ProcessingResult(
            ok=True, job_id=job.id, status=JobStatus.COMPLETED, step=ProcessingStep.COMPLETED
        )

    def _transcribe(self, run: _Run) -> list[TranscriptLine]:
        job = run.job
        if not job.artifact_key:
            raise StorageError("Artifact path missing", {"job_id": job.id})

        content = self.storage.download(job.artifact_key)
        artifact = build_artifact(job.artifact_key, content)

        if artifact.kind == ArtifactKind.TEXT:
            text = decode_text(content)
            if not text.strip():
                raise ContentError("No content detected in text artifact", {"job_id": job.id})
            return [TranscriptLine(text=text, confidence=1.0)]

        language = run.owner.default_language
        api_key = run.config.api_key
        transcribe = (
            self.provider.transcribe_document
            if artifact.kind == ArtifactKind.DOCUMENT
            else self.provider.transcribe
        )
        call = partial(transcribe, artifact, api_key=api_key, language=language)

        result = self._call_provider(
            run, stage="transcription", code=ErrCode.TRANSCRIPTION_PROVIDER_ERROR, fn=call
        )
        if not result.text.strip():
            raise ContentError("No speech detected in audio", {"job_id": job.id})
        return [TranscriptLine(text=result.text, confidence=result.confidence)]

    def _call_provider(
        self,
        run: _Run,
        *,
        stage: str,
        code: str,
        fn: Callable[[], ProviderResult[T]],
    ) -> T:
        """
        Вызов провайдера: rate limit владельца -> слот конкурентности -> breaker.
        Конверт с ошибкой превращается в исключение; ошибки конфигурации
        не считаются сбоем провайдера для breaker'а.
        """
        owner_id = run.owner.id
        rl = self.rate_limiter.check("api", owner_id)
        if not rl.allowed:
            raise RateLimitedError(
                f"Rate limit exceeded. Please try again in {rl.retry_after_sec} seconds.",
                rl.retry_after_sec,
            )

        breaker = self.resilience.breaker(run.config.provider)
        limiter = self.resilience.limiter(AI_RESOURCE)

        def guarded() -> ProviderResult[T]:
            res = fn()
            if not res.success and res.code != ErrCode.CONFIG_MISSING:
                raise ProviderError(
                    res.code or code,
                    res.error or f"{stage.capitalize()} failed",
                    res.details,
                )
            return res

        started = time.perf_counter()
        outcome = "failed"
        try:
            with track_stage_latency(self.service, stage):
                res = limiter.run(new_request_id(stage[:5]), lambda: breaker.execute(guarded))
            if not res.success:
                raise ConfigurationError(res.error or "Provider configuration error", res.details)
            if res.data is None:
                raise ProviderError(code, f"{stage.capitalize()} failed")
            outcome = "ok"
            return res.data
        finally:
            log.info(
                "provider_call_finished",
                extra={
                    "payload": {
                        "job_id": run.job.id,
                        "stage": stage,
                        "provider": run.config.provider,
                        "backend": self.provider.name,
                        "result": outcome,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    }
                },
            )

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------
    def _handle_failure(self, run: _Run, error: Exception) -> ProcessingResult:
        job = run.job
        if isinstance(error, AppError):
            detail = error.message or "AI Pipeline failed"
            code = error.code
            kind = error.kind
            retryable = error.retryable
        else:
            detail = str(error) or "AI Pipeline failed"
            code = ErrCode.UNKNOWN
            kind = ErrorKind.INTERNAL
            retryable = False

        log.error(
            "processing_failed",
            extra={
                "payload": {
                    "job_id": job.id,
                    "owner_id": job.owner_id,
                    "code": code,
                    "kind": kind,
                    "error": detail[:200],
                }
            },
            exc_info=kind == ErrorKind.INTERNAL,
        )

        failed_step = run.step
        try:
            recorded = self.store.read_step(job.id)
            if recorded is not None and recorded != ProcessingStep.FAILED:
                failed_step = recorded
        except Exception as e:
            log.warning(
                "processing_step_read_failed",
                extra={"payload": {"job_id": job.id, "error": str(e)[:200]}},
            )

        breaker_open = code == ErrCode.CIRCUIT_OPEN
        if not breaker_open and run.config is not None:
            try:
                breaker_open = self.resilience.breaker(run.config.provider).is_open()
            except Exception as e:
                log.warning(
                    "processing_breaker_check_failed",
                    extra={"payload": {"job_id": job.id, "error": str(e)[:200]}},
                )

        message = BREAKER_OPEN_MESSAGE if breaker_open else f"System Error [{code}]: {detail}"
        try:
            self.store.fail(job.id, message=message, failed_step=failed_step)
        except Exception as e:
            log.error(
                "processing_failure_record_failed",
                extra={"payload": {"job_id": job.id, "error": str(e)[:200]}},
            )
            return ProcessingResult(
                ok=False,
                job_id=job.id,
                step=failed_step,
                error=detail,
                error_code=code,
                error_kind=kind,
                retryable=retryable,
            )

        record_job_outcome(ok=False, kind=kind)
        self.cache.invalidate_owner(job.owner_id)
        self._notify(
            job.owner_id,
            NotificationMessage(
                title="Processing Failed",
                message=f'Failed to process meeting "{job.title}": {detail}',
                kind=NotificationKind.ERROR,
                link=job_link(job.id),
            ),
        )
        return ProcessingResult(
            ok=False,
            job_id=job.id,
            status=JobStatus.FAILED,
            step=failed_step,
            error=detail,
            error_code=code,
            error_kind=kind,
            retryable=retryable,
            message=BREAKER_OPEN_USER_MESSAGE if breaker_open else None,
        )

    def _notify(self, owner_id: str, msg: NotificationMessage) -> None:
        try:
            self.notifier.notify(owner_id, msg)
        except Exception as e:
            log.warning(
                "notification_failed",
                extra={"payload": {"owner_id": owner_id, "title": msg.title, "error": str(e)[:200]}},
            )


@dataclass
class _Run:
    """
    Состояние одного запуска: шаг в памяти и загруженная конфигурация.
    """

    job: JobRecord
    owner: OwnerProfile | None = None
    config: AIConfiguration | None = None
    step: ProcessingStep = ProcessingStep.IDLE
