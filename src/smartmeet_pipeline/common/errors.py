"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очередей/DLQ
- классификация сбоев пайплайна: конфигурация, провайдер, контент, хранилище
- признак retryable решает, отправлять задачу повторно или в DLQ
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Конфигурация владельца
    CONFIG_MISSING = "config_missing"

    # Провайдеры
    TRANSCRIPTION_PROVIDER_ERROR = "transcription_provider_error"
    SUMMARIZATION_PROVIDER_ERROR = "summarization_provider_error"
    CIRCUIT_OPEN = "circuit_open"
    CONCURRENCY_LIMIT = "concurrency_limit"
    RATE_LIMITED = "rate_limited"

    # Контент
    EMPTY_TRANSCRIPTION = "empty_transcription"

    # Инфра/хранилища
    DB_ERROR = "db_error"
    QUEUE_UNAVAILABLE = "queue_unavailable"
    STORAGE_ERROR = "storage_error"


class ErrorKind:
    CONFIGURATION = "configuration"
    TRANSIENT_PROVIDER = "transient_provider"
    CONTENT = "content"
    STORAGE = "storage"
    INTERNAL = "internal"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    kind = ErrorKind.INTERNAL
    retryable = False

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class ConfigurationError(AppError):
    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFIG_MISSING, message, details)


class ProviderError(AppError):
    kind = ErrorKind.TRANSIENT_PROVIDER
    retryable = True

    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str, retry_after_sec: int = 0) -> None:
        super().__init__(
            ErrCode.CIRCUIT_OPEN,
            f"Circuit breaker is OPEN for {provider}",
            {"provider": provider, "retry_after_sec": retry_after_sec},
        )


class ConcurrencyLimitExceeded(ProviderError):
    def __init__(self, resource: str) -> None:
        super().__init__(
            ErrCode.CONCURRENCY_LIMIT,
            f"Concurrency limit exceeded for {resource}",
            {"resource": resource},
        )


class RateLimitedError(ProviderError):
    def __init__(self, message: str, retry_after_sec: int = 0) -> None:
        super().__init__(ErrCode.RATE_LIMITED, message, {"retry_after_sec": retry_after_sec})


class ContentError(AppError):
    kind = ErrorKind.CONTENT

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.EMPTY_TRANSCRIPTION, message, details)


class StorageError(AppError):
    kind = ErrorKind.STORAGE
    retryable = True

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.STORAGE_ERROR, message, details)


class QueueUnavailableError(AppError):
    kind = ErrorKind.STORAGE
    retryable = True

    def __init__(self, message: str = "Очередь недоступна", details: dict | None = None) -> None:
        super().__init__(ErrCode.QUEUE_UNAVAILABLE, message, details)
