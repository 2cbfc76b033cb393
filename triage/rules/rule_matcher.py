"""Ordered classification rules (deterministic, pattern based).

Rules are evaluated in a fixed loop in table order; the first rule with any matching pattern wins.
That tie-break is the contract: when two rules could match the same signal, the earlier one is the answer.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from triage.core.fingerprint import canonical_json

RULE_ID_DIGEST_CHARS = 12


def default_rule_id(error_class: str, service: str, patterns: Iterable[str]) -> str:
    """
    Identity of a rule: class, service and the set of patterns it matches.

    Pattern order and duplicates do not change the id.
    """
    digest = hashlib.sha256(canonical_json(sorted(set(patterns)))).hexdigest()[:RULE_ID_DIGEST_CHARS]
    return f"{error_class}:{service}:{digest}"


@dataclass(frozen=True)
class ClassificationRule:
    """A known failure mode that can be matched against signal status reasons."""

    error_class: str
    """Stable error class name (e.g., 'ACM_DNS_VALIDATION_PENDING')"""

    service: str
    """Owning service (e.g., 'ACM', 'CloudFormation')"""

    patterns: Tuple[str, ...]
    """Ordered regex patterns, matched case-insensitively with `re.search`"""

    raw_confidence: float
    """Fixed confidence in [0, 1] when this rule matches (not computed)"""

    tokens: Tuple[str, ...] = ()
    """Structural tokens contributing to the fingerprint of matches"""

    rule_id: str = ""
    """Stable identity across rule table versions (defaults to class, service and a pattern-set digest)"""

    _compiled: Tuple[Pattern[str], ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.error_class:
            raise ValueError("error_class is required")
        if not self.patterns:
            raise ValueError(f"rule {self.error_class} has no patterns")
        if not (0.0 <= float(self.raw_confidence) <= 1.0):
            raise ValueError(f"rule {self.error_class}: raw_confidence must be in [0, 1]")
        # Tuples keep the frozen rule hashable even when built from YAML lists.
        object.__setattr__(self, "patterns", tuple(self.patterns))
        object.__setattr__(self, "tokens", tuple(self.tokens))
        if not self.rule_id:
            object.__setattr__(self, "rule_id", default_rule_id(self.error_class, self.service, self.patterns))
        try:
            compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        except re.error as e:
            raise ValueError(f"rule {self.rule_id}: invalid pattern: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    def match(self, text: str) -> Optional[str]:
        """Return the first pattern that matches `text`, else None."""
        if not text:
            return None
        for source, rx in zip(self.patterns, self._compiled):
            if rx.search(text):
                return source
        return None

    def matches(self, text: str) -> bool:
        """Check if any pattern matches the text (case-insensitive)."""
        return self.match(text) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "error_class": self.error_class,
            "service": self.service,
            "patterns": list(self.patterns),
            "raw_confidence": self.raw_confidence,
            "tokens": list(self.tokens),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ClassificationRule":
        return cls(
            error_class=str(d["error_class"]),
            service=str(d.get("service") or ""),
            patterns=tuple(str(p) for p in (d.get("patterns") or [])),
            raw_confidence=float(d["raw_confidence"]),
            tokens=tuple(str(t) for t in (d.get("tokens") or [])),
            rule_id=str(d.get("rule_id") or ""),
        )


@dataclass(frozen=True)
class RuleSet:
    """Versioned, ordered rule table. Order is precedence."""

    version: str
    rules: Tuple[ClassificationRule, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        seen: set[str] = set()
        for r in self.rules:
            if r.rule_id in seen:
                raise ValueError(f"duplicate rule_id in rule set {self.version}: {r.rule_id}")
            seen.add(r.rule_id)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def confidence_table(self) -> Dict[str, float]:
        """error_class -> raw confidence (first rule per class wins, mirroring match precedence)."""
        out: Dict[str, float] = {}
        for r in self.rules:
            out.setdefault(r.error_class, r.raw_confidence)
        return out

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.rules]

    @classmethod
    def from_list(cls, version: str, rows: Sequence[Dict[str, Any]]) -> "RuleSet":
        return cls(version=version, rules=tuple(ClassificationRule.from_dict(r) for r in rows))
