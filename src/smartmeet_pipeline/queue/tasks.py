"""
Контракт задачи очереди.

Wire-формат (JSON, один объект на элемент списка):
    {"id": str, "type": str, "data": {...}, "createdAt": int(ms), "retries": int, "error"?: str}

Правила:
- задача неизменна после постановки, кроме retries/last_error
- retries/last_error меняются только при повторной постановке или DLQ
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from smartmeet_pipeline.common.ids import new_task_id
from smartmeet_pipeline.domain.enums import TaskType


@dataclass
class Task:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    retries: int = 0
    last_error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "data": self.payload,
            "createdAt": self.created_at,
            "retries": self.retries,
        }
        if self.last_error is not None:
            data["error"] = self.last_error
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Task:
        if not isinstance(data, dict):
            raise ValueError("task_not_object")
        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            raise ValueError("task_data_not_object")
        error = data.get("error")
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            payload=payload,
            created_at=int(data.get("createdAt") or 0),
            retries=int(data.get("retries") or 0),
            last_error=str(error) if error is not None else None,
        )

    @classmethod
    def from_json(cls, raw: str) -> Task:
        return cls.from_wire(json.loads(raw))

    def record_failure(self, error: str) -> None:
        self.retries += 1
        self.last_error = error


def process_job_task(job_id: str, **extra: Any) -> Task:
    """
    Свежая задача PROCESS_JOB для job_id (createdAt проставит очередь).
    """
    return Task(id=new_task_id(), type=TaskType.PROCESS_JOB.value, payload={"jobId": job_id, **extra})
