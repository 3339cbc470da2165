"""
Логирование пайплайна.

- один stdout-хэндлер на процесс (api-gateway и воркеры пишут одинаково)
- JSON по умолчанию: ts, level, service, logger, msg, payload
- структурированные поля только через extra={"payload": {...}}
- LOG_FORMAT=text для локальной отладки
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from smartmeet_pipeline.common.config import get_settings

PROJECT_LOGGER = "smartmeet-pipeline"
PROVIDER_LOGGER = f"{PROJECT_LOGGER}.providers"


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            doc["payload"] = payload
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__(
            fmt=f"%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            line += " " + json.dumps(payload, ensure_ascii=False, default=str)
        return line


def setup_logging(service: str | None = None) -> None:
    """
    service переопределяет SERVICE_NAME (воркеры передают своё имя).
    """
    s = get_settings()
    name = service or s.service_name
    level = logging.getLevelName((s.log_level or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_smartmeet", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    fmt = (s.log_format or "json").lower()
    handler.setFormatter(TextFormatter(name) if fmt == "text" else JsonFormatter(name))
    handler._smartmeet = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    for noisy in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(level)


def get_project_logger(name: str = PROJECT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def get_provider_logger() -> logging.Logger:
    return logging.getLogger(PROVIDER_LOGGER)
