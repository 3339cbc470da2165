"""
Доменные перечисления (enum).

Используются во всей системе:
- статус и шаг обработки задачи (job)
- типы задач очереди
- виды артефактов и AI-провайдеров
"""

from __future__ import annotations

import enum


class JobStatus(str, enum.Enum):
    """
    Статус задачи обработки (внешняя запись в БД).
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessingStep(str, enum.Enum):
    """
    Шаг конвейера обработки.
    """

    IDLE = "IDLE"
    TRANSCRIPTION = "TRANSCRIPTION"
    SUMMARIZATION = "SUMMARIZATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskType(str, enum.Enum):
    PROCESS_JOB = "PROCESS_JOB"


class ArtifactKind(str, enum.Enum):
    TEXT = "TEXT"
    DOCUMENT = "DOCUMENT"
    MEDIA = "MEDIA"


class ProviderKind(str, enum.Enum):
    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROQ = "groq"
    OPENROUTER = "openrouter"
    CUSTOM = "custom"
    UNKNOWN = "unknown"


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class NotificationKind(str, enum.Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    INFO = "INFO"


class OwnerPlan(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"
