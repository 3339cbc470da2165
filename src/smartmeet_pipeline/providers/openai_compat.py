from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from smartmeet_pipeline.common.errors import ErrCode
from smartmeet_pipeline.common.logging import get_provider_logger

from .base import (
    AIProvider,
    Artifact,
    ProviderResult,
    SummaryOptions,
    SummaryResult,
    TranscriptionResult,
)

log = get_provider_logger()

_LENGTH_HINTS = {
    "short": "Keep it to 3-5 bullet points.",
    "medium": "Keep it to one or two short paragraphs with key decisions.",
    "long": "Give a detailed summary with decisions, owners and open questions.",
}


@dataclass
class OpenAICompatConfig:
    """Настройки OpenAI-compatible API."""

    api_base: str
    transcription_model: str = "whisper-1"
    chat_model: str = "gpt-4o-mini"
    timeout_s: int = 50


def build_summary_prompt(options: SummaryOptions) -> str:
    parts = ["You summarize meeting transcripts."]
    if options.persona:
        parts.append(f"Write as: {options.persona}.")
    hint = _LENGTH_HINTS.get((options.length or "").lower())
    if hint:
        parts.append(hint)
    if options.language:
        parts.append(f"Answer in language: {options.language}.")
    return " ".join(parts)


class OpenAICompatProvider(AIProvider):
    """Провайдер через OpenAI-compatible endpoint (audio/transcriptions + chat/completions)."""

    name = "openai_compat"

    def __init__(self, cfg: OpenAICompatConfig, *, session: Any = None) -> None:
        self.cfg = cfg
        self._http = session or requests

    def _call(
        self, path: str, *, api_key: str, code: str, **kwargs: Any
    ) -> ProviderResult[dict[str, Any]]:
        url = self.cfg.api_base.rstrip("/") + path
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            resp = self._http.post(url, headers=headers, timeout=self.cfg.timeout_s, **kwargs)
        except requests.RequestException as e:
            log.error(
                "openai_http_error",
                extra={"payload": {"path": path, "err": str(e)[:200]}},
            )
            return ProviderResult.fail("HTTP error calling AI provider", code=code, details={"err": str(e)[:200]})

        if resp.status_code >= 400:
            return ProviderResult.fail(
                "AI provider returned an error",
                code=code,
                details={"status": resp.status_code, "text_head": resp.text[:500]},
            )
        try:
            data = resp.json()
        except ValueError as e:
            return ProviderResult.fail(
                "AI provider returned invalid JSON",
                code=code,
                details={"err": str(e)[:200], "text_head": resp.text[:500]},
            )
        if not isinstance(data, dict):
            return ProviderResult.fail("AI provider returned unexpected payload", code=code)
        return ProviderResult.ok(data)

    def transcribe(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        form: dict[str, Any] = {"model": self.cfg.transcription_model}
        if language:
            form["language"] = language
        res = self._call(
            "/audio/transcriptions",
            api_key=api_key,
            code=ErrCode.TRANSCRIPTION_PROVIDER_ERROR,
            files={
                "file": (
                    artifact.filename,
                    artifact.content,
                    artifact.content_type or "application/octet-stream",
                )
            },
            data=form,
        )
        if not res.success:
            return ProviderResult.fail(res.error or "Transcription failed", code=res.code, details=res.details)
        body = res.data or {}
        return ProviderResult.ok(
            TranscriptionResult(text=str(body.get("text") or ""), language=body.get("language"))
        )

    def transcribe_document(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        return ProviderResult.fail(
            "Document transcription is not supported by the OpenAI-compatible backend",
            code=ErrCode.CONFIG_MISSING,
            details={"filename": artifact.filename},
        )

    def summarize(
        self, text: str, *, api_key: str, options: SummaryOptions
    ) -> ProviderResult[SummaryResult]:
        payload = {
            "model": options.model or self.cfg.chat_model,
            "messages": [
                {"role": "system", "content": build_summary_prompt(options)},
                {"role": "user", "content": text},
            ],
            "temperature": 0.2,
        }
        res = self._call(
            "/chat/completions",
            api_key=api_key,
            code=ErrCode.SUMMARIZATION_PROVIDER_ERROR,
            json=payload,
        )
        if not res.success:
            return ProviderResult.fail(res.error or "Summarization failed", code=res.code, details=res.details)
        try:
            content = res.data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            return ProviderResult.fail(
                "Could not extract text from AI provider response",
                code=ErrCode.SUMMARIZATION_PROVIDER_ERROR,
                details={"err": str(e)[:200], "data_head": str(res.data)[:500]},
            )
        return ProviderResult.ok(SummaryResult(summary=str(content or "")))
