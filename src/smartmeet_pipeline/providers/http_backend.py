"""
HTTP-клиент AI-бэкенда.

Эндпоинты:
- POST /transcribe-upload    (multipart file)
- POST /transcribe-document  (multipart file)
- POST /summarize            (JSON)

Ответ бэкенда:
- transcribe: {"transcription", "language", "language_probability"}
- summarize:  {"summary", "project_doc"}
"""

from __future__ import annotations

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


class HttpBackendProvider(AIProvider):
    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        default_api_key: str | None = None,
        timeout_sec: int = 50,
        session: Any = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_api_key = default_api_key or ""
        self.timeout_sec = timeout_sec
        self._http = session or requests

    def _headers(self, api_key: str | None, *, json_body: bool) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        key = api_key or self.default_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _post(
        self,
        endpoint: str,
        *,
        api_key: str | None,
        code: str,
        json: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> ProviderResult[dict[str, Any]]:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self._http.post(
                url,
                headers=self._headers(api_key, json_body=json is not None),
                json=json,
                files=files,
                data=data,
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            log.error(
                "ai_backend_http_error",
                extra={"payload": {"endpoint": endpoint, "error": str(e)[:200]}},
            )
            return ProviderResult.fail(str(e) or "HTTP request failed", code=code)

        if resp.status_code >= 400:
            try:
                body = resp.json()
                error = body.get("error") if isinstance(body, dict) else None
            except ValueError:
                error = None
            message = str(error or f"HTTP Error {resp.status_code}: {resp.reason}")
            log.warning(
                "ai_backend_bad_status",
                extra={"payload": {"endpoint": endpoint, "status": resp.status_code}},
            )
            return ProviderResult.fail(
                message, code=code, details={"status": resp.status_code}
            )

        try:
            body = resp.json()
        except ValueError as e:
            return ProviderResult.fail(
                "AI backend returned invalid JSON",
                code=code,
                details={"err": str(e)[:200], "text_head": resp.text[:500]},
            )
        if not isinstance(body, dict):
            return ProviderResult.fail("AI backend returned unexpected payload", code=code)
        return ProviderResult.ok(body)

    def _transcribe(
        self, endpoint: str, artifact: Artifact, *, api_key: str, language: str | None
    ) -> ProviderResult[TranscriptionResult]:
        files = {
            "file": (
                artifact.filename,
                artifact.content,
                artifact.content_type or "application/octet-stream",
            )
        }
        data = {"language": language} if language else None
        res = self._post(
            endpoint,
            api_key=api_key,
            code=ErrCode.TRANSCRIPTION_PROVIDER_ERROR,
            files=files,
            data=data,
        )
        if not res.success:
            return ProviderResult.fail(
                res.error or "Transcription failed", code=res.code, details=res.details
            )
        body = res.data or {}
        prob = body.get("language_probability")
        return ProviderResult.ok(
            TranscriptionResult(
                text=str(body.get("transcription") or ""),
                language=body.get("language"),
                confidence=float(prob) if isinstance(prob, (int, float)) else None,
            )
        )

    def transcribe(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        return self._transcribe("/transcribe-upload", artifact, api_key=api_key, language=language)

    def transcribe_document(
        self, artifact: Artifact, *, api_key: str, language: str | None = None
    ) -> ProviderResult[TranscriptionResult]:
        return self._transcribe(
            "/transcribe-document", artifact, api_key=api_key, language=language
        )

    def summarize(
        self, text: str, *, api_key: str, options: SummaryOptions
    ) -> ProviderResult[SummaryResult]:
        payload: dict[str, Any] = {
            "transcript": text,
            "api_key": api_key or self.default_api_key,
            "provider": options.provider.upper(),
        }
        if options.model:
            payload["model"] = options.model
        if options.length:
            payload["summary_length"] = options.length
        if options.persona:
            payload["summary_persona"] = options.persona
        if options.language:
            payload["language"] = options.language

        res = self._post(
            "/summarize",
            api_key=api_key,
            code=ErrCode.SUMMARIZATION_PROVIDER_ERROR,
            json=payload,
        )
        if not res.success:
            return ProviderResult.fail(
                res.error or "Summarization failed", code=res.code, details=res.details
            )
        body = res.data or {}
        doc = body.get("project_doc")
        return ProviderResult.ok(
            SummaryResult(summary=str(body.get("summary") or ""), project_doc=doc or None)
        )
