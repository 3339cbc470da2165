"""
Правила управления обработкой встреч (governance).

Набор правил:
- FREE план -> низкий приоритет
- ENTERPRISE план -> высокий приоритет
- большой файл -> тег LARGE_FILE

Действия сворачиваются в GovernanceDecision; применение решения
(запись приоритета/тегов в job, блокировка) делает вызывающий код.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .engine import RuleEngine
from .models import Rule

ACTION_SET_PRIORITY = "SET_PRIORITY"
ACTION_TAG_MEETING = "TAG_MEETING"
ACTION_BLOCK_PROCESSING = "BLOCK_PROCESSING"

DEFAULT_PRIORITY = "NORMAL"

MEETING_GOVERNANCE_RULES: tuple[Rule, ...] = tuple(
    Rule.model_validate(raw)
    for raw in (
        {
            "metadata": {
                "id": "rule_free_plan_low_priority",
                "name": "Free Plan Low Priority",
                "description": "FREE plan meetings have LOW processing priority",
                "priority": 100,
            },
            "conditions": {"all": [{"field": "user.plan", "operator": "eq", "value": "FREE"}]},
            "action": {"type": ACTION_SET_PRIORITY, "params": {"priority": "LOW"}},
            "conflictStrategy": "CONTINUE",
        },
        {
            "metadata": {
                "id": "rule_enterprise_high_priority",
                "name": "Enterprise Plan High Priority",
                "description": "ENTERPRISE plan meetings have HIGH processing priority",
                "priority": 100,
            },
            "conditions": {
                "all": [{"field": "user.plan", "operator": "eq", "value": "ENTERPRISE"}]
            },
            "action": {"type": ACTION_SET_PRIORITY, "params": {"priority": "HIGH"}},
            "conflictStrategy": "CONTINUE",
        },
        {
            "metadata": {
                "id": "rule_long_meeting_tagging",
                "name": "Long Meeting Tagging",
                "description": "Tag long meetings for administrative review",
                "priority": 50,
            },
            "conditions": {
                "all": [{"field": "meeting.isLargeFile", "operator": "eq", "value": True}]
            },
            "action": {"type": ACTION_TAG_MEETING, "params": {"tag": "LARGE_FILE"}},
            "conflictStrategy": "CONTINUE",
        },
    )
)


@dataclass
class GovernanceDecision:
    priority: str = DEFAULT_PRIORITY
    tags: list[str] = field(default_factory=list)
    blocked: bool = False
    reasons: list[str] = field(default_factory=list)


def build_governance_context(
    *, plan: str, is_large_file: bool, title: str | None = None
) -> dict[str, Any]:
    return {
        "user": {"plan": plan},
        "meeting": {"isLargeFile": bool(is_large_file), "title": title or ""},
    }


def evaluate_governance(
    context: Mapping[str, Any],
    *,
    rules: Iterable[Rule] = MEETING_GOVERNANCE_RULES,
    engine: RuleEngine | None = None,
) -> GovernanceDecision:
    response = (engine or RuleEngine()).execute(rules, context)
    decision = GovernanceDecision()
    priority_set = False

    for result in response.triggered():
        params = result.output or {}
        if result.action_executed == ACTION_SET_PRIORITY:
            # Первое (самое приоритетное) правило выигрывает
            if not priority_set and params.get("priority"):
                decision.priority = str(params["priority"])
                priority_set = True
        elif result.action_executed == ACTION_TAG_MEETING:
            tag = params.get("tag")
            if tag and str(tag) not in decision.tags:
                decision.tags.append(str(tag))
        elif result.action_executed == ACTION_BLOCK_PROCESSING:
            decision.blocked = True
            decision.reasons.append(str(params.get("reason") or result.rule_id))
    return decision
