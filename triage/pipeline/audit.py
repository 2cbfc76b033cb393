"""Verdict audit against the policy snapshot that produced it.

A verdict is compliant when everything it claims can be re-derived from its snapshot:
the snapshot reference, the confidence and the proposed action (via the snapshot's playbook table).
The expected confidence comes from the snapshot rule that produced the verdict (its rule_id); verdicts
without a rule_id (UNKNOWN, older rows) fall back to the per-class confidence table.
Returns issues; never raises for non-compliance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from triage.core.errors import InvalidConfidence
from triage.core.models import UNKNOWN_ERROR_CLASS, UNKNOWN_RAW_CONFIDENCE, PolicySnapshot, Verdict
from triage.pipeline.confidence import normalize_confidence


@dataclass(frozen=True)
class VerdictAudit:
    verdict_id: str
    compliant: bool
    policy_version: Optional[str]
    issues: List[str] = field(default_factory=list)


def _snapshot_rule(policies: Dict[str, Any], rule_id: str) -> Optional[Dict[str, Any]]:
    for row in policies.get("classification_rules") or []:
        if isinstance(row, dict) and row.get("rule_id") == rule_id:
            return row
    return None


def _expected_raw_confidence(policies: Dict[str, Any], error_class: str) -> Optional[float]:
    table = policies.get("confidence_table")
    if not isinstance(table, dict):
        return None
    if error_class in table:
        return float(table[error_class])
    if error_class == UNKNOWN_ERROR_CLASS:
        return UNKNOWN_RAW_CONFIDENCE
    return None


def _expected_action(policies: Dict[str, Any], error_class: str) -> Optional[str]:
    table = policies.get("playbooks")
    if not isinstance(table, dict):
        return None
    entry = table.get(error_class) or table.get(UNKNOWN_ERROR_CLASS)
    if isinstance(entry, dict):
        return entry.get("proposed_action")
    return None


def audit_verdict(verdict: Verdict, snapshot: PolicySnapshot) -> VerdictAudit:
    issues: List[str] = []

    if verdict.policy_snapshot_id != snapshot.id:
        issues.append("Verdict policy_snapshot_id does not match provided policy")

    if not (0 <= verdict.confidence_score <= 100):
        issues.append(f"Invalid confidence_score: {verdict.confidence_score}. Must be 0-100.")

    if not verdict.raw_signals:
        issues.append("Verdict has no signals")

    policies = snapshot.policies or {}
    raw: Optional[float] = None
    if verdict.rule_id:
        rule = _snapshot_rule(policies, verdict.rule_id)
        if rule is None:
            issues.append(f"rule {verdict.rule_id} is not part of snapshot {snapshot.id}")
        else:
            if rule.get("error_class") != verdict.error_class or rule.get("service") != verdict.service:
                issues.append(
                    f"rule {verdict.rule_id} classifies as {rule.get('error_class')}/{rule.get('service')}, "
                    f"verdict says {verdict.error_class}/{verdict.service}"
                )
            raw = rule.get("raw_confidence")
    else:
        raw = _expected_raw_confidence(policies, verdict.error_class)
    if raw is not None:
        try:
            expected = normalize_confidence(raw)
        except InvalidConfidence:
            issues.append(f"Snapshot confidence for {verdict.error_class} is invalid: {raw!r}")
        else:
            if expected != verdict.confidence_score:
                issues.append(
                    f"confidence_score {verdict.confidence_score} does not match snapshot ({expected}) "
                    f"for {verdict.error_class}"
                )

    action = _expected_action(policies, verdict.error_class)
    if action is not None and action != verdict.proposed_action.value:
        issues.append(
            f"proposed_action {verdict.proposed_action.value} does not match snapshot playbook ({action})"
        )

    return VerdictAudit(
        verdict_id=verdict.id,
        compliant=not issues,
        policy_version=snapshot.version,
        issues=issues,
    )
