"""
ORM-модели базы данных.

Назначение:
- владельцы (план, сохранённые ключи, AI-предпочтения)
- job'ы обработки и их шаг конвейера
- транскрипт, саммари, уведомления
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from smartmeet_pipeline.common.time import utc_now
from smartmeet_pipeline.domain.enums import JobStatus, NotificationKind, OwnerPlan, ProcessingStep


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# OWNER
# =============================================================================
class Owner(Base):
    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    plan: Mapped[OwnerPlan] = mapped_column(Enum(OwnerPlan), default=OwnerPlan.FREE, nullable=False)

    # Зашифрованный ключ (или JSON-словарь ключей) провайдера
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    preferred_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    preferred_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    default_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    summary_length: Mapped[str | None] = mapped_column(String(16), nullable=True)
    summary_persona: Mapped[str | None] = mapped_column(String(64), nullable=True)


# =============================================================================
# JOB
# =============================================================================
class Job(Base):
    """
    Задача обработки одной загруженной записи.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("owners.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    artifact_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_large_file: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True
    )
    processing_step: Mapped[ProcessingStep] = mapped_column(
        Enum(ProcessingStep), default=ProcessingStep.IDLE, nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Шаг, на котором упал последний запуск (processing_step при этом FAILED)
    failed_step: Mapped[ProcessingStep | None] = mapped_column(Enum(ProcessingStep), nullable=True)

    priority: Mapped[str] = mapped_column(String(16), default="NORMAL", nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_technical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    project_doc: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    transcripts: Mapped[list[TranscriptEntry]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="TranscriptEntry.id",
    )
    summary: Mapped[Summary | None] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        uselist=False,
    )


# =============================================================================
# TRANSCRIPT
# =============================================================================
class TranscriptEntry(Base):
    __tablename__ = "transcript_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id"), nullable=False, index=True)

    speaker: Mapped[str] = mapped_column(String(128), default="AI Assistant", nullable=False)
    time: Mapped[str] = mapped_column(String(16), default="0:00", nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    job: Mapped[Job] = relationship(back_populates="transcripts")


# =============================================================================
# SUMMARY
# =============================================================================
class Summary(Base):
    __tablename__ = "summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id"), nullable=False, unique=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    job: Mapped[Job] = relationship(back_populates="summary")


# =============================================================================
# NOTIFICATIONS
# =============================================================================
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("owners.id"), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind), nullable=False)
    link: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
