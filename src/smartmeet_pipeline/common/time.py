"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC)
- миллисекунды epoch для конвертов очереди и resilience-примитивов
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

# Часы в миллисекундах epoch; в тестах подменяются симулированными
Clock = Callable[[], int]


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def utc_ms() -> int:
    """
    Текущее время в UTC в миллисекундах (int).
    """
    return int(utc_now().timestamp() * 1000)


def ensure_aware(value: datetime) -> datetime:
    """
    SQLite и часть драйверов возвращают naive datetime; считаем их UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
