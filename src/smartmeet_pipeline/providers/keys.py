"""
Ключи и выбор AI-провайдера владельца.

- classify_key: провайдер по префиксу ключа (с явным UNKNOWN)
- resolve_ai_configuration: расшифрованный ключ + провайдер + модель;
  поддерживает JSON-словарь ключей {provider: key} и legacy одиночный ключ
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass

from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.domain.enums import ProviderKind

log = get_project_logger()

# Порядок важен: более длинные префиксы раньше "sk-"
_KEY_PREFIXES: tuple[tuple[str, ProviderKind], ...] = (
    ("sk-ant-", ProviderKind.CLAUDE),
    ("sk-or-", ProviderKind.OPENROUTER),
    ("sk-", ProviderKind.OPENAI),
    ("gsk_", ProviderKind.GROQ),
    ("AIza", ProviderKind.GEMINI),
)

PROVIDER_ALIASES: dict[str, str] = {
    "anthropic": ProviderKind.CLAUDE.value,
    "google": ProviderKind.GEMINI.value,
    "openai": ProviderKind.OPENAI.value,
    "groq": ProviderKind.GROQ.value,
    "openrouter": ProviderKind.OPENROUTER.value,
    "custom": ProviderKind.CUSTOM.value,
}

DEFAULT_PROVIDER = "openai"
DEFAULT_OPENAI_MODEL = "gpt-4o"


def classify_key(key: str) -> ProviderKind:
    value = (key or "").strip()
    for prefix, kind in _KEY_PREFIXES:
        if value.startswith(prefix):
            return kind
    return ProviderKind.UNKNOWN


@dataclass
class AIConfiguration:
    api_key: str | None
    provider: str
    raw_provider: str
    model: str | None


def _identity(value: str) -> str:
    return value


def resolve_ai_configuration(
    *,
    stored_key: str | None,
    preferred_provider: str | None,
    preferred_model: str | None = None,
    decrypt: Callable[[str], str] = _identity,
    owner_id: str | None = None,
) -> AIConfiguration:
    """
    api_key=None означает "ключ не настроен" (ошибка конфигурации у вызывающего).
    """
    raw_provider = (preferred_provider or "").strip().lower() or DEFAULT_PROVIDER
    model = preferred_model or (DEFAULT_OPENAI_MODEL if raw_provider == "openai" else None)

    if not stored_key:
        return AIConfiguration(
            api_key=None, provider=DEFAULT_PROVIDER, raw_provider=DEFAULT_PROVIDER, model=DEFAULT_OPENAI_MODEL
        )

    try:
        decrypted = decrypt(stored_key)
    except Exception as e:
        log.error(
            "api_key_decrypt_failed",
            extra={"payload": {"owner_id": owner_id, "error": str(e)[:200]}},
        )
        return AIConfiguration(
            api_key=None, provider=DEFAULT_PROVIDER, raw_provider=DEFAULT_PROVIDER, model=DEFAULT_OPENAI_MODEL
        )

    api_key: str | None = decrypted
    try:
        keys = json.loads(decrypted)
    except ValueError:
        keys = None  # legacy одиночный ключ
    if isinstance(keys, dict) and keys:
        picked = keys.get(raw_provider) or keys.get("openai") or next(iter(keys.values()))
        api_key = str(picked) if picked else None

    provider = PROVIDER_ALIASES.get(raw_provider, raw_provider)
    return AIConfiguration(
        api_key=api_key or None, provider=provider, raw_provider=raw_provider, model=model
    )
