"""Deployment gate derived from verdicts.

Each verdict type collapses to exactly one simple verdict, and each simple verdict to exactly one
gate action. Only GREEN lets a deployment proceed. The gate only reports; callers decide what to do.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from triage.core.models import Verdict, VerdictType
from triage.pipeline.playbooks import get_playbook


class SimpleVerdict(str, Enum):
    GREEN = "GREEN"
    RED = "RED"
    HOLD = "HOLD"
    RETRY = "RETRY"


class GateAction(str, Enum):
    ADVANCE = "ADVANCE"
    ABORT = "ABORT"
    FREEZE = "FREEZE"
    RETRY_OPERATION = "RETRY_OPERATION"


VERDICT_TYPE_TO_SIMPLE = {
    VerdictType.APPROVED: SimpleVerdict.GREEN,
    VerdictType.WARNING: SimpleVerdict.GREEN,
    VerdictType.REJECTED: SimpleVerdict.RED,
    VerdictType.ESCALATED: SimpleVerdict.HOLD,
    VerdictType.BLOCKED: SimpleVerdict.HOLD,
    VerdictType.DEFERRED: SimpleVerdict.RETRY,
    VerdictType.PENDING: SimpleVerdict.RETRY,
}

SIMPLE_VERDICT_TO_ACTION = {
    SimpleVerdict.GREEN: GateAction.ADVANCE,
    SimpleVerdict.RED: GateAction.ABORT,
    SimpleVerdict.HOLD: GateAction.FREEZE,
    SimpleVerdict.RETRY: GateAction.RETRY_OPERATION,
}


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    verdict: SimpleVerdict
    action: GateAction
    reason: str
    verdict_id: Optional[str] = None


def to_simple_verdict(verdict_type: VerdictType) -> SimpleVerdict:
    return VERDICT_TYPE_TO_SIMPLE[VerdictType(verdict_type)]


def _verdict_type_of(verdict: Verdict) -> VerdictType:
    # Verdicts stored before verdict_type existed fall back to the playbook table.
    if verdict.verdict_type is not None:
        return verdict.verdict_type
    return get_playbook(verdict.error_class).verdict_type


def check_deployment_gate(subject: Union[Verdict, VerdictType, SimpleVerdict]) -> GateResult:
    verdict_id = None
    if isinstance(subject, Verdict):
        verdict_id = subject.id
        simple = to_simple_verdict(_verdict_type_of(subject))
    elif isinstance(subject, SimpleVerdict):
        simple = subject
    else:
        simple = to_simple_verdict(subject)

    action = SIMPLE_VERDICT_TO_ACTION[simple]
    if simple == SimpleVerdict.GREEN:
        reason = f"Deployment allowed: verdict is {simple.value} ({action.value})"
        return GateResult(allowed=True, verdict=simple, action=action, reason=reason, verdict_id=verdict_id)

    if simple == SimpleVerdict.HOLD:
        reason = f"Deployment BLOCKED: verdict is {simple.value}, human review required ({action.value})"
    else:
        reason = f"Deployment BLOCKED: verdict is {simple.value} ({action.value})"
    return GateResult(allowed=False, verdict=simple, action=action, reason=reason, verdict_id=verdict_id)
