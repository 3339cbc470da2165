"""
Генерация идентификаторов.

Назначение:
- task_id для конвертов очереди
- request_id для слотов конкурентности
"""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime


def new_uuid() -> str:
    """UUIDv4 строкой."""
    return str(uuid.uuid4())


def new_task_id() -> str:
    """Идентификатор задачи очереди (UUIDv4)."""
    return new_uuid()


def new_request_id(prefix: str = "req") -> str:
    """
    Идентификатор вызова провайдера (ключ слота конкурентности).
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{ts}_{secrets.token_hex(6)}"
