"""
Движок правил.

Правила:
- учитываются только ACTIVE правила
- сортировка по приоритету (по убыванию, стабильная)
- сработавшее правило со STOP прерывает оставшиеся
- ошибка внутри правила изолирована: triggered=False + error
- результат детерминирован (время выполнения только логируется)
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from smartmeet_pipeline.common.logging import get_project_logger

from .models import Condition, ConditionGroup, Rule, RuleStatus

log = get_project_logger()

_MISSING = object()


@dataclass
class RuleExecutionResult:
    rule_id: str
    rule_version: str
    triggered: bool
    action_executed: str | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class RuleEngineMetadata:
    rules_processed: int
    rules_triggered: int


@dataclass
class RuleEngineResponse:
    success: bool
    results: list[RuleExecutionResult] = field(default_factory=list)
    context: Mapping[str, Any] = field(default_factory=dict)
    metadata: RuleEngineMetadata = field(default_factory=lambda: RuleEngineMetadata(0, 0))

    def triggered(self) -> list[RuleExecutionResult]:
        return [r for r in self.results if r.triggered]


def get_path(context: Any, path: str) -> Any:
    """
    Значение по dot-path ("user.plan"). Отсутствующий путь -> _MISSING.
    """
    current = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _strict_eq(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    actual = get_path(context, condition.field)
    expected = condition.value
    op = condition.operator

    if op == "exists":
        return actual is not _MISSING and actual is not None
    if op == "nexists":
        return actual is _MISSING or actual is None
    if actual is _MISSING:
        actual = None

    if op == "eq":
        return _strict_eq(actual, expected)
    if op == "neq":
        return not _strict_eq(actual, expected)
    if op in ("gt", "gte", "lt", "lte"):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        return actual <= expected
    if op in ("in", "nin"):
        if not isinstance(expected, (list, tuple, set, frozenset)):
            return False
        found = any(_strict_eq(actual, item) for item in expected)
        return found if op == "in" else not found
    if op in ("contains", "ncontains"):
        if not (isinstance(actual, str) and isinstance(expected, str)):
            return False
        return (expected in actual) if op == "contains" else (expected not in actual)
    if op == "matches":
        if not (isinstance(actual, str) and isinstance(expected, str)):
            return False
        return re.search(expected, actual) is not None
    return False


def check_conditions(rule: Rule, context: Mapping[str, Any]) -> bool:
    conditions = rule.conditions
    if isinstance(conditions, ConditionGroup):
        if conditions.all is None and conditions.any is None:
            return False
        if conditions.all is not None and not all(
            evaluate_condition(c, context) for c in conditions.all
        ):
            return False
        if conditions.any is not None and not any(
            evaluate_condition(c, context) for c in conditions.any
        ):
            return False
        return True
    return all(evaluate_condition(c, context) for c in conditions)


class RuleEngine:
    def execute(self, rules: Iterable[Rule], context: Mapping[str, Any]) -> RuleEngineResponse:
        started = time.perf_counter()
        active = [r for r in rules if r.metadata.status == RuleStatus.ACTIVE]
        ordered = sorted(active, key=lambda r: r.metadata.priority, reverse=True)

        results: list[RuleExecutionResult] = []
        for rule in ordered:
            try:
                triggered = check_conditions(rule, context)
            except Exception as e:
                log.error(
                    "rule_execution_failed",
                    extra={"payload": {"rule_id": rule.metadata.id, "error": str(e)[:200]}},
                )
                results.append(
                    RuleExecutionResult(
                        rule_id=rule.metadata.id,
                        rule_version=rule.metadata.version,
                        triggered=False,
                        error=str(e) or e.__class__.__name__,
                    )
                )
                continue

            if not triggered:
                results.append(
                    RuleExecutionResult(
                        rule_id=rule.metadata.id,
                        rule_version=rule.metadata.version,
                        triggered=False,
                    )
                )
                continue

            results.append(
                RuleExecutionResult(
                    rule_id=rule.metadata.id,
                    rule_version=rule.metadata.version,
                    triggered=True,
                    action_executed=rule.action.type,
                    output=dict(rule.action.params),
                )
            )
            if rule.conflict_strategy == "STOP":
                log.info("rule_conflict_stop", extra={"payload": {"rule_id": rule.metadata.id}})
                break

        response = RuleEngineResponse(
            success=True,
            results=results,
            context=context,
            metadata=RuleEngineMetadata(
                rules_processed=len(ordered),
                rules_triggered=sum(1 for r in results if r.triggered),
            ),
        )
        log.debug(
            "rules_executed",
            extra={
                "payload": {
                    "rules_processed": response.metadata.rules_processed,
                    "rules_triggered": response.metadata.rules_triggered,
                    "execution_ms": round((time.perf_counter() - started) * 1000, 3),
                }
            },
        )
        return response
