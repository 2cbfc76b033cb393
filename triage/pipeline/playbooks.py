"""Action recommender: static playbook table per error class.

Contract:
- every known error class maps to exactly one proposed action plus remediation steps
- UNKNOWN (and any class missing from the table) maps to HUMAN_REQUIRED
- recommendations are suggestions only; nothing here executes them

The table is versioned (PLAYBOOK_VERSION) and copied verbatim into every policy snapshot, so a
historical verdict stays explainable after the table changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from triage.core.models import UNKNOWN_ERROR_CLASS, ProposedAction, VerdictType

PLAYBOOK_VERSION = "v1.0.0"


@dataclass(frozen=True)
class Playbook:
    playbook_id: str
    error_class: str
    proposed_action: ProposedAction
    verdict_type: VerdictType
    steps: Tuple[str, ...]
    guardrails: Tuple[str, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "error_class": self.error_class,
            "proposed_action": self.proposed_action.value,
            "verdict_type": self.verdict_type.value,
            "steps": list(self.steps),
            "guardrails": list(self.guardrails),
        }


@dataclass(frozen=True)
class Recommendation:
    proposed_action: ProposedAction
    recommended_steps: List[str]
    guardrails: List[str]
    playbook_id: str
    verdict_type: VerdictType


# Playbook registry - maps error classes to remediation playbooks
PLAYBOOKS: Dict[str, Playbook] = {}


def register_playbook(playbook: Playbook) -> None:
    """Register a playbook for its error class."""
    PLAYBOOKS[playbook.error_class] = playbook


register_playbook(
    Playbook(
        playbook_id="acm-dns-validation",
        error_class="ACM_DNS_VALIDATION_PENDING",
        proposed_action=ProposedAction.WAIT_AND_RETRY,
        verdict_type=VerdictType.DEFERRED,
        steps=(
            "Verify the ACM CNAME validation records exist in Route53 or the external DNS provider.",
            "Wait for DNS propagation (typically 5-30 minutes).",
            "Confirm the record values match exactly what ACM requires.",
            "Retry the deployment once validation completes.",
        ),
        guardrails=(
            "Do not modify the certificate during validation.",
            "Do not delete validation records.",
            "Wait at least 5 minutes between retries.",
            "Escalate to HUMAN_REQUIRED if validation has not completed after 3 hours.",
        ),
    )
)

register_playbook(
    Playbook(
        playbook_id="route53-delegation",
        error_class="ROUTE53_DELEGATION_PENDING",
        proposed_action=ProposedAction.HUMAN_REQUIRED,
        verdict_type=VerdictType.ESCALATED,
        steps=(
            "Read the NS records of the Route53 hosted zone.",
            "Configure those NS records at the parent domain registrar.",
            "Verify delegation with `dig NS <domain>`.",
            "Wait for delegation to propagate (up to 24-48 hours) before redeploying.",
        ),
        guardrails=(
            "Keep a record of the previous NS records for rollback.",
            "Do not deploy until delegation is verified.",
        ),
    )
)

register_playbook(
    Playbook(
        playbook_id="cfn-rollback",
        error_class="CFN_ROLLBACK_LOCK",
        proposed_action=ProposedAction.OPEN_ISSUE,
        verdict_type=VerdictType.BLOCKED,
        steps=(
            "Read the stack events to find the resource that triggered the rollback.",
            "Fix the underlying failure.",
            "Let the stack reach a stable state (ROLLBACK_COMPLETE / UPDATE_ROLLBACK_COMPLETE).",
            "Redeploy after the fix.",
        ),
        guardrails=(
            "Do not retry without identifying the root cause.",
            "Document the rollback reason in the issue.",
        ),
    )
)

register_playbook(
    Playbook(
        playbook_id="cfn-in-progress",
        error_class="CFN_IN_PROGRESS_LOCK",
        proposed_action=ProposedAction.WAIT_AND_RETRY,
        verdict_type=VerdictType.BLOCKED,
        steps=(
            "Check the current stack operation with `aws cloudformation describe-stacks`.",
            "Wait for the running operation to finish.",
            "Retry once the stack is in a stable *_COMPLETE state.",
        ),
        guardrails=(
            "Do not cancel or modify the in-progress operation.",
            "Open an issue if the stack is still locked after 30 minutes.",
        ),
    )
)

register_playbook(
    Playbook(
        playbook_id="missing-secret",
        error_class="MISSING_SECRET",
        proposed_action=ProposedAction.OPEN_ISSUE,
        verdict_type=VerdictType.REJECTED,
        steps=(
            "Note the secret name/ARN from the failure message.",
            "Check the secret exists in the expected account and region.",
            "Create the secret if missing and verify the deploy role can read it.",
            "Retry the deployment.",
        ),
        guardrails=(
            "Never commit secret values to the repository.",
            "Verify the secret name matches exactly what the application expects.",
        ),
    )
)

register_playbook(
    Playbook(
        playbook_id="missing-env",
        error_class="MISSING_ENV_VAR",
        proposed_action=ProposedAction.OPEN_ISSUE,
        verdict_type=VerdictType.REJECTED,
        steps=(
            "Identify the missing variable from the failure message.",
            "Add it to the stack parameters / CDK context / parameter store.",
            "Redeploy with the corrected configuration.",
        ),
        guardrails=("Use parameter store or Secrets Manager for sensitive values.",),
    )
)

register_playbook(
    Playbook(
        playbook_id="deprecated-cdk",
        error_class="DEPRECATED_CDK_API",
        proposed_action=ProposedAction.OPEN_ISSUE,
        verdict_type=VerdictType.WARNING,
        steps=(
            "Identify the deprecated construct or method.",
            "Replace it with the API recommended in the CDK release notes.",
            "Verify in a non-production environment.",
        ),
        guardrails=("Review breaking changes before bumping the CDK version.",),
    )
)

register_playbook(
    Playbook(
        playbook_id="unit-mismatch",
        error_class="UNIT_MISMATCH",
        proposed_action=ProposedAction.OPEN_ISSUE,
        verdict_type=VerdictType.REJECTED,
        steps=(
            "Identify the property with the wrong unit.",
            "Check the expected unit in the AWS service documentation.",
            "Use CDK helpers (Duration, Size) instead of raw numbers and redeploy.",
        ),
        guardrails=("MiB/GiB are not MB/GB; confirm which one the service expects.",),
    )
)

register_playbook(
    Playbook(
        playbook_id="unknown-error",
        error_class=UNKNOWN_ERROR_CLASS,
        proposed_action=ProposedAction.HUMAN_REQUIRED,
        verdict_type=VerdictType.ESCALATED,
        steps=(
            "Collect the full stack events, CloudWatch logs and synth output.",
            "Check for similar failures by fingerprint.",
            "Escalate to an engineer for manual classification.",
        ),
        guardrails=("Do not retry automatically; the failure mode is not understood.",),
    )
)


def get_playbook(error_class: str) -> Playbook:
    """Playbook for an error class; unlisted classes fall back to UNKNOWN."""
    return PLAYBOOKS.get(error_class) or PLAYBOOKS[UNKNOWN_ERROR_CLASS]


def recommend(error_class: str) -> Recommendation:
    p = get_playbook(error_class)
    return Recommendation(
        proposed_action=p.proposed_action,
        recommended_steps=list(p.steps),
        guardrails=list(p.guardrails),
        playbook_id=p.playbook_id,
        verdict_type=p.verdict_type,
    )


def playbook_table() -> Dict[str, Dict[str, Any]]:
    """Serializable copy of the table, sorted by error class, for policy snapshots."""
    return {k: PLAYBOOKS[k].to_dict() for k in sorted(PLAYBOOKS)}
