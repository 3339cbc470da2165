"""
Машина состояний обработки задачи (job).

Назначение:
- единый порядок шагов IDLE -> TRANSCRIPTION -> SUMMARIZATION -> COMPLETED
- FAILED достижим из любого нетерминального шага
- правила stuck-детекции и допуска к ручному retry
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from smartmeet_pipeline.common.time import ensure_aware

from .enums import JobStatus, ProcessingStep

# =============================================================================
# ПОРЯДОК ШАГОВ
# =============================================================================
_STEP_ORDER: list[ProcessingStep] = [
    ProcessingStep.IDLE,
    ProcessingStep.TRANSCRIPTION,
    ProcessingStep.SUMMARIZATION,
    ProcessingStep.COMPLETED,
]

TERMINAL_STEPS = frozenset({ProcessingStep.COMPLETED, ProcessingStep.FAILED})


@dataclass
class TransitionResult:
    ok: bool
    step: ProcessingStep
    reason: str | None = None


def next_step_after(current: ProcessingStep) -> ProcessingStep | None:
    """
    Следующий шаг конвейера (None для терминальных).
    """
    if current not in _STEP_ORDER:
        return None
    idx = _STEP_ORDER.index(current)
    return _STEP_ORDER[idx + 1] if idx + 1 < len(_STEP_ORDER) else None


def transition(current: ProcessingStep, target: ProcessingStep) -> TransitionResult:
    """
    Правила перехода:
    - в FAILED можно из любого нетерминального шага
    - вперёд можно только по порядку (шаги не откатываются назад)
    - IDLE выставляется только сбросом через retry, не здесь
    """
    if current in TERMINAL_STEPS:
        return TransitionResult(ok=False, step=current, reason="terminal_step")

    if target == ProcessingStep.FAILED:
        return TransitionResult(ok=True, step=target)

    if target not in _STEP_ORDER or _STEP_ORDER.index(target) <= _STEP_ORDER.index(current):
        return TransitionResult(ok=False, step=current, reason="non_monotonic")

    return TransitionResult(ok=True, step=target)


# =============================================================================
# STUCK / RETRY
# =============================================================================
def is_stuck(
    *,
    status: JobStatus,
    updated_at: datetime,
    now: datetime,
    threshold_sec: int,
) -> bool:
    """
    Задача "застряла", если она в PROCESSING и не обновлялась дольше порога.
    """
    if status != JobStatus.PROCESSING:
        return False
    age = ensure_aware(now) - ensure_aware(updated_at)
    return age > timedelta(seconds=threshold_sec)


def is_retry_eligible(
    *,
    status: JobStatus,
    updated_at: datetime,
    now: datetime,
    threshold_sec: int,
) -> bool:
    if status == JobStatus.FAILED:
        return True
    return is_stuck(status=status, updated_at=updated_at, now=now, threshold_sec=threshold_sec)
