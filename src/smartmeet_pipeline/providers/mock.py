from __future__ import annotations

from .base import (
    AIProvider,
    Artifact,
    ProviderResult,
    SummaryOptions,
    SummaryResult,
    TranscriptionResult,
)


class MockAIProvider(AIProvider):
    """Заглушка AI-бэкенда: предсказуемые ответы для проверки пайплайна end-to-end."""

    name = "mock"

    def transcribe(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        return ProviderResult.ok(
            TranscriptionResult(
                text=f"mock_transcript file={artifact.filename} bytes={len(artifact.content)}",
                language=language or "en",
                confidence=1.0,
            )
        )

    def transcribe_document(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        return self.transcribe(artifact, api_key=api_key, language=language)

    def summarize(
        self, text: str, *, api_key: str, options: SummaryOptions
    ) -> ProviderResult[SummaryResult]:
        head = " ".join(text.split())[:200]
        return ProviderResult.ok(
            SummaryResult(summary=f"Summary ({options.provider}): {head}", project_doc=None)
        )
