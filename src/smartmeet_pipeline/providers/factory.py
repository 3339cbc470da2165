from __future__ import annotations

from smartmeet_pipeline.common.config import Settings

from .base import AIProvider
from .http_backend import HttpBackendProvider
from .mock import MockAIProvider
from .openai_compat import OpenAICompatConfig, OpenAICompatProvider


def build_provider(s: Settings) -> AIProvider:
    """
    Выбор AI-бэкенда по AI_BACKEND (http|openai_compat|mock).
    """
    backend = (s.ai_backend or "http").strip().lower()
    if backend == "mock":
        return MockAIProvider()
    if backend == "openai_compat":
        return OpenAICompatProvider(
            OpenAICompatConfig(
                api_base=s.openai_api_base,
                transcription_model=s.openai_transcription_model,
                timeout_s=s.provider_timeout_sec,
            )
        )
    if backend == "http":
        return HttpBackendProvider(
            base_url=s.ai_api_base_url,
            default_api_key=s.ai_default_api_key,
            timeout_sec=s.provider_timeout_sec,
        )
    raise ValueError(f"unknown AI_BACKEND: {s.ai_backend}")
