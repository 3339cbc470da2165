"""
Модели декларативных правил.

Правило неизменяемо и валидируется pydantic при загрузке:
- metadata: id/версия/статус/приоритет
- conditions: плоский список (неявное ALL) или {all, any}
- action: тип + параметры (движок только сообщает намерение)
- conflict_strategy: STOP прерывает правила с меньшим приоритетом
"""

from __future__ import annotations

import enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RuleStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    ARCHIVED = "ARCHIVED"


class RulePriority(enum.IntEnum):
    LOW = 0
    MEDIUM = 50
    HIGH = 100
    CRITICAL = 200


Operator = Literal[
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "nin",
    "contains",
    "ncontains",
    "exists",
    "nexists",
    "matches",
]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class RuleMetadata(_Frozen):
    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    status: RuleStatus = RuleStatus.ACTIVE
    priority: int = RulePriority.MEDIUM
    author: str = "System"
    tags: tuple[str, ...] = ()


class Condition(_Frozen):
    field: str
    operator: Operator
    value: Any = None


class ConditionGroup(_Frozen):
    all: tuple[Condition, ...] | None = None
    any: tuple[Condition, ...] | None = None


class RuleAction(_Frozen):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class Rule(_Frozen):
    metadata: RuleMetadata
    conditions: tuple[Condition, ...] | ConditionGroup
    action: RuleAction
    conflict_strategy: Literal["STOP", "CONTINUE"] = Field(
        default="CONTINUE", alias="conflictStrategy"
    )
