"""
Базовые типы AI-провайдеров.

Контракт:
- transcribe / transcribe_document / summarize
- все методы возвращают конверт ProviderResult (success/data или error)
  и не бросают исключений за границу клиента
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from smartmeet_pipeline.domain.enums import ArtifactKind

T = TypeVar("T")


@dataclass
class Artifact:
    """
    Исходный артефакт job'а, скачанный из объектного хранилища.
    """

    key: str
    content: bytes
    filename: str
    kind: ArtifactKind
    content_type: str | None = None


@dataclass
class TranscriptionResult:
    text: str
    language: str | None = None
    confidence: float | None = None


@dataclass
class SummaryResult:
    summary: str
    project_doc: str | None = None


@dataclass
class SummaryOptions:
    provider: str
    model: str | None = None
    length: str | None = None
    persona: str | None = None
    language: str | None = None


@dataclass
class ProviderResult(Generic[T]):
    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def ok(cls, data: T) -> ProviderResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls, error: str, *, code: str | None = None, details: dict[str, Any] | None = None
    ) -> ProviderResult[T]:
        return cls(success=False, error=error, code=code, details=details)


class AIProvider(ABC):
    """
    Интерфейс AI-бэкенда (транскрибация + суммаризация).
    """

    name: str = "abstract"

    @abstractmethod
    def transcribe(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        """
        Транскрибировать аудио/видео.
        """
        raise NotImplementedError

    @abstractmethod
    def transcribe_document(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        """
        Извлечь текст из документа (pdf/doc/docx).
        """
        raise NotImplementedError

    @abstractmethod
    def summarize(
        self, text: str, *, api_key: str, options: SummaryOptions
    ) -> ProviderResult[SummaryResult]:
        raise NotImplementedError
