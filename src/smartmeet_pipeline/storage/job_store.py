"""
Адаптер датастора для пайплайна (SQLAlchemy).

Назначение:
- чтение job'а и профиля владельца
- запись статуса/шага обработки (единственный писатель: оркестратор)
- транскрипт как append-only replace (delete-then-create)
- выборка зависших job'ов для reconcile

Любая ошибка SQLAlchemy нормализуется в StorageError.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from smartmeet_pipeline.common.errors import NotFoundError, StorageError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import ensure_aware, utc_now
from smartmeet_pipeline.domain.enums import JobStatus, OwnerPlan, ProcessingStep

from .db import db_session
from .models import Job, Owner, Summary, TranscriptEntry

log = get_project_logger()


@dataclass
class OwnerProfile:
    id: str
    email: str
    plan: OwnerPlan
    api_key: str | None = None
    preferred_provider: str | None = None
    preferred_model: str | None = None
    default_language: str | None = None
    summary_length: str | None = None
    summary_persona: str | None = None


@dataclass
class JobRecord:
    id: str
    owner_id: str
    title: str
    artifact_key: str | None
    is_large_file: bool
    status: JobStatus
    step: ProcessingStep
    error_message: str | None
    failed_step: ProcessingStep | None
    priority: str
    tags: list[str]
    is_technical: bool
    project_doc: str | None
    created_at: datetime
    updated_at: datetime
    summary: str | None = None


@dataclass
class TranscriptLine:
    text: str
    speaker: str = "AI Assistant"
    time: str = "0:00"
    confidence: float | None = None


@dataclass
class StuckJob:
    id: str
    owner_id: str
    step: ProcessingStep
    updated_at: datetime
    age_sec: int = 0


def _owner_profile(o: Owner) -> OwnerProfile:
    return OwnerProfile(
        id=o.id,
        email=o.email,
        plan=o.plan,
        api_key=o.api_key,
        preferred_provider=o.preferred_provider,
        preferred_model=o.preferred_model,
        default_language=o.default_language,
        summary_length=o.summary_length,
        summary_persona=o.summary_persona,
    )


def _job_record(j: Job) -> JobRecord:
    return JobRecord(
        id=j.id,
        owner_id=j.owner_id,
        title=j.title,
        artifact_key=j.artifact_key,
        is_large_file=bool(j.is_large_file),
        status=j.status,
        step=j.processing_step,
        error_message=j.error_message,
        failed_step=j.failed_step,
        priority=j.priority,
        tags=list(j.tags or []),
        is_technical=bool(j.is_technical),
        project_doc=j.project_doc,
        created_at=ensure_aware(j.created_at),
        updated_at=ensure_aware(j.updated_at),
        summary=j.summary.content if j.summary is not None else None,
    )


class SqlJobStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with db_session(self.session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            log.error(
                "job_store_failed",
                extra={"payload": {"operation": operation, "error": str(e)[:200]}},
            )
            raise StorageError(
                "Datastore operation failed", {"operation": operation, "err": str(e)[:200]}
            ) from e

    @staticmethod
    def _require_job(session: Session, job_id: str) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise NotFoundError("Job not found", {"job_id": job_id})
        return job

    # ------------------------------------------------------------------
    # Сидинг (API/тесты)
    # ------------------------------------------------------------------
    def create_owner(
        self,
        *,
        owner_id: str,
        email: str,
        plan: OwnerPlan = OwnerPlan.FREE,
        api_key: str | None = None,
        preferred_provider: str | None = None,
        preferred_model: str | None = None,
        default_language: str | None = None,
        summary_length: str | None = None,
        summary_persona: str | None = None,
    ) -> OwnerProfile:
        with self._session("create_owner") as session:
            owner = Owner(
                id=owner_id,
                email=email,
                plan=plan,
                api_key=api_key,
                preferred_provider=preferred_provider,
                preferred_model=preferred_model,
                default_language=default_language,
                summary_length=summary_length,
                summary_persona=summary_persona,
            )
            session.add(owner)
            session.flush()
            return _owner_profile(owner)

    def create_job(
        self,
        *,
        job_id: str,
        owner_id: str,
        title: str = "",
        artifact_key: str | None = None,
        is_large_file: bool = False,
    ) -> JobRecord:
        now = self.clock()
        with self._session("create_job") as session:
            job = Job(
                id=job_id,
                owner_id=owner_id,
                title=title,
                artifact_key=artifact_key,
                is_large_file=is_large_file,
                status=JobStatus.PENDING,
                processing_step=ProcessingStep.IDLE,
                tags=[],
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            return _job_record(job)

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> JobRecord | None:
        with self._session("get_job") as session:
            job = session.get(Job, job_id)
            return _job_record(job) if job is not None else None

    def get_owner(self, owner_id: str) -> OwnerProfile | None:
        with self._session("get_owner") as session:
            owner = session.get(Owner, owner_id)
            return _owner_profile(owner) if owner is not None else None

    def read_step(self, job_id: str) -> ProcessingStep | None:
        """
        Последний записанный шаг (для отчёта "где упало").
        """
        with self._session("read_step") as session:
            return session.execute(
                select(Job.processing_step).where(Job.id == job_id)
            ).scalar_one_or_none()

    def list_transcript(self, job_id: str) -> list[TranscriptLine]:
        with self._session("list_transcript") as session:
            rows = session.execute(
                select(TranscriptEntry)
                .where(TranscriptEntry.job_id == job_id)
                .order_by(TranscriptEntry.id.asc())
            ).scalars()
            return [
                TranscriptLine(
                    text=r.text, speaker=r.speaker, time=r.time, confidence=r.confidence
                )
                for r in rows
            ]

    def list_stuck(
        self, *, threshold_sec: int, limit: int = 200, now: datetime | None = None
    ) -> list[StuckJob]:
        now = ensure_aware(now or self.clock())
        cutoff = now - timedelta(seconds=threshold_sec)
        with self._session("list_stuck") as session:
            rows = session.execute(
                select(Job)
                .where(Job.status == JobStatus.PROCESSING)
                .order_by(Job.updated_at.asc())
                .limit(max(1, limit))
            ).scalars()
            out: list[StuckJob] = []
            for j in rows:
                updated = ensure_aware(j.updated_at)
                if updated >= cutoff:
                    continue
                out.append(
                    StuckJob(
                        id=j.id,
                        owner_id=j.owner_id,
                        step=j.processing_step,
                        updated_at=updated,
                        age_sec=int((now - updated).total_seconds()),
                    )
                )
            return out

    # ------------------------------------------------------------------
    # Запись
    # ------------------------------------------------------------------
    def mark_processing(self, job_id: str, step: ProcessingStep) -> None:
        with self._session("mark_processing") as session:
            job = self._require_job(session, job_id)
            job.status = JobStatus.PROCESSING
            job.processing_step = step
            job.error_message = None
            job.failed_step = None
            job.updated_at = self.clock()

    def update_step(self, job_id: str, step: ProcessingStep) -> None:
        with self._session("update_step") as session:
            job = self._require_job(session, job_id)
            job.processing_step = step
            job.updated_at = self.clock()

    def replace_transcript(self, job_id: str, lines: Sequence[TranscriptLine]) -> None:
        with self._session("replace_transcript") as session:
            job = self._require_job(session, job_id)
            self._replace_transcript(session, job_id, lines)
            job.updated_at = self.clock()

    @staticmethod
    def _replace_transcript(session: Session, job_id: str, lines: Sequence[TranscriptLine]) -> None:
        session.execute(delete(TranscriptEntry).where(TranscriptEntry.job_id == job_id))
        for line in lines:
            session.add(
                TranscriptEntry(
                    job_id=job_id,
                    speaker=line.speaker,
                    time=line.time,
                    text=line.text,
                    confidence=line.confidence,
                )
            )

    def complete(
        self,
        job_id: str,
        *,
        lines: Sequence[TranscriptLine],
        summary: str,
        project_doc: str | None,
        is_technical: bool,
    ) -> None:
        """
        Финальная запись одним коммитом: статус, шаг, транскрипт, саммари, документация.
        """
        with self._session("complete") as session:
            job = self._require_job(session, job_id)
            self._replace_transcript(session, job_id, lines)
            existing = session.execute(
                select(Summary).where(Summary.job_id == job_id)
            ).scalar_one_or_none()
            if existing is None:
                session.add(Summary(job_id=job_id, content=summary))
            else:
                existing.content = summary
            job.status = JobStatus.COMPLETED
            job.processing_step = ProcessingStep.COMPLETED
            job.error_message = None
            job.failed_step = None
            job.project_doc = project_doc
            job.is_technical = is_technical
            job.updated_at = self.clock()

    def fail(
        self, job_id: str, *, message: str, failed_step: ProcessingStep | None = None
    ) -> None:
        with self._session("fail") as session:
            job = self._require_job(session, job_id)
            job.status = JobStatus.FAILED
            job.processing_step = ProcessingStep.FAILED
            job.error_message = message
            job.failed_step = failed_step
            job.updated_at = self.clock()

    def reset_for_retry(self, job_id: str) -> None:
        with self._session("reset_for_retry") as session:
            job = self._require_job(session, job_id)
            job.status = JobStatus.PENDING
            job.processing_step = ProcessingStep.IDLE
            job.error_message = None
            job.failed_step = None
            job.updated_at = self.clock()

    def apply_governance(self, job_id: str, *, priority: str, tags: Sequence[str]) -> None:
        with self._session("apply_governance") as session:
            job = self._require_job(session, job_id)
            job.priority = priority
            job.tags = sorted(set(job.tags or []) | set(tags))
            job.updated_at = self.clock()
