"""
Разбор исходного артефакта job'а.

- вид артефакта по расширению ключа (текст / документ / медиа)
- декодирование текстовых артефактов с запасным путём
- эвристика "технической" встречи
"""

from __future__ import annotations

import codecs
import mimetypes
import re
from pathlib import PurePosixPath

from smartmeet_pipeline.domain.enums import ArtifactKind
from smartmeet_pipeline.providers.base import Artifact

TEXT_EXTENSIONS = frozenset({".txt", ".md", ".vtt", ".srt"})
DOCUMENT_EXTENSIONS = frozenset({".pdf", ".doc", ".docx"})

_TECHNICAL_RE = re.compile(
    r"api|cache|latency|database|testing|backend|frontend|pipeline|logic|code|deploy",
    re.IGNORECASE,
)


def artifact_kind(key: str) -> ArtifactKind:
    ext = PurePosixPath(key or "").suffix.lower()
    if ext in TEXT_EXTENSIONS:
        return ArtifactKind.TEXT
    if ext in DOCUMENT_EXTENSIONS:
        return ArtifactKind.DOCUMENT
    return ArtifactKind.MEDIA


def build_artifact(key: str, content: bytes) -> Artifact:
    filename = PurePosixPath(key).name or "artifact"
    content_type, _ = mimetypes.guess_type(filename)
    return Artifact(
        key=key,
        content=content,
        filename=filename,
        kind=artifact_kind(key),
        content_type=content_type,
    )


def _looks_malformed(text: str) -> bool:
    if not text.strip():
        return True
    return "\x00" in text


def decode_text(content: bytes) -> str:
    """
    UTF-8 строго; при пустом/битом результате:
    UTF-8 с заменой, затем latin-1.
    BOM срезается до декодирования, на всех путях.
    """
    if content.startswith(codecs.BOM_UTF8):
        content = content[len(codecs.BOM_UTF8) :]

    try:
        text = content.decode("utf-8")
        if not _looks_malformed(text):
            return text
    except UnicodeDecodeError:
        pass

    text = content.decode("utf-8", errors="replace")
    if not _looks_malformed(text) and text.count("\ufffd") <= max(1, len(text) // 20):
        return text
    return content.decode("latin-1").replace("\x00", "")


def is_technical(text: str) -> bool:
    return bool(_TECHNICAL_RE.search(text or ""))
