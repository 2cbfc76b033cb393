"""Active policy definition (the only mutable "current policy").

A PolicyDefinition is an explicit value passed to whoever needs it; there is no module-level current
policy. Only the snapshot manager serializes it, and only when creating a snapshot. After that the
snapshot is frozen and changes here never reach it.

Optional override file (YAML), selected with TRIAGE_POLICY_FILE:

    version: v1.1.0
    rules:
      - error_class: ACM_DNS_VALIDATION_PENDING
        service: ACM
        patterns: ["DNS validation is pending"]
        raw_confidence: 0.9
        tokens: [ACM, dns]
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from triage.core.fingerprint import FINGERPRINT_ALGORITHM, canonical_json
from triage.core.models import UNKNOWN_ERROR_CLASS, UNKNOWN_RAW_CONFIDENCE
from triage.pipeline.confidence import NORMALIZATION_FORMULA, NORMALIZATION_SCALE
from triage.pipeline.playbooks import PLAYBOOK_VERSION, playbook_table
from triage.rules import RuleSet, default_rule_set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyDefinition:
    version: str
    rule_set: RuleSet
    normalization_formula: str = NORMALIZATION_FORMULA
    playbook_version: str = PLAYBOOK_VERSION
    playbooks: Dict[str, Dict[str, Any]] = field(default_factory=playbook_table)

    def confidence_table(self) -> Dict[str, float]:
        table = self.rule_set.confidence_table()
        table.setdefault(UNKNOWN_ERROR_CLASS, UNKNOWN_RAW_CONFIDENCE)
        return table

    def to_policies(self) -> Dict[str, Any]:
        """Verbatim, JSON-safe payload stored in a policy snapshot."""
        return {
            "classification_rules": self.rule_set.to_list(),
            "rule_set_version": self.rule_set.version,
            "confidence_table": self.confidence_table(),
            "confidence_normalization": {
                "scale": NORMALIZATION_SCALE,
                "formula": self.normalization_formula,
                "deterministic": True,
            },
            "fingerprint_algorithm": FINGERPRINT_ALGORITHM,
            "playbook_version": self.playbook_version,
            "playbooks": self.playbooks,
        }

    def policy_hash(self) -> str:
        return hashlib.sha256(canonical_json(self.to_policies())).hexdigest()


def default_policy_definition() -> PolicyDefinition:
    rs = default_rule_set()
    return PolicyDefinition(version=rs.version, rule_set=rs)


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"policy file {path} must contain a mapping")
    return data


def load_policy_definition(path: Optional[str] = None) -> PolicyDefinition:
    """
    Build the active policy definition.

    Uses the built-in rule library unless a YAML override is given (argument or TRIAGE_POLICY_FILE).
    A malformed override file raises: silently falling back would snapshot the wrong policy.
    """
    raw_path = path if path is not None else (os.getenv("TRIAGE_POLICY_FILE") or "").strip()
    if not raw_path:
        return default_policy_definition()

    p = Path(raw_path)
    data = _load_yaml(p)
    version = str(data.get("version") or "").strip()
    if not version:
        raise ValueError(f"policy file {p} is missing 'version'")
    rows = data.get("rules")
    if not isinstance(rows, list) or not rows:
        raise ValueError(f"policy file {p} must define a non-empty 'rules' list")

    rs = RuleSet.from_list(version, rows)
    logger.info("Loaded policy %s from %s (%d rules)", version, p, len(rs))
    return PolicyDefinition(version=version, rule_set=rs)
