"""Signal classifier (pure, deterministic).

Given the same signals and rule set this always returns the same classification:
no clock reads, no randomness, no I/O. Rule precedence is table order; the first
rule with a matching pattern on any signal wins.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence

from triage.core.fingerprint import canonical_tokens
from triage.core.models import (
    UNKNOWN_ERROR_CLASS,
    UNKNOWN_RAW_CONFIDENCE,
    UNKNOWN_SERVICE,
    Classification,
    FailureSignal,
)
from triage.rules.rule_matcher import ClassificationRule, RuleSet

_STOP_WORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "that",
        "this",
        "from",
        "have",
        "been",
        "will",
        "into",
        "your",
        "when",
        "while",
        "than",
        "then",
        "there",
        "their",
        "which",
        "error",
        "failed",
    }
)

_WORD_RE = re.compile(r"[A-Za-z0-9_]+")


def _unknown() -> Classification:
    return Classification(
        error_class=UNKNOWN_ERROR_CLASS,
        service=UNKNOWN_SERVICE,
        raw_confidence=UNKNOWN_RAW_CONFIDENCE,
    )


def _find_rule(signals: Sequence[FailureSignal], rule_set: Iterable[ClassificationRule]):  # type: ignore[no-untyped-def]
    for rule in rule_set:
        for sig in signals:
            pattern = rule.match(sig.status_reason)
            if pattern is not None:
                return rule, pattern
    return None, None


def classify(signals: Sequence[FailureSignal], rule_set: RuleSet) -> Classification:
    """
    Classify a failure from its signals.

    Returns the reserved UNKNOWN class (raw confidence 0.50) when nothing matches,
    including for an empty signal list.
    """
    rule, pattern = _find_rule(list(signals or []), rule_set)
    if rule is None:
        return _unknown()
    return Classification(
        error_class=rule.error_class,
        service=rule.service,
        raw_confidence=float(rule.raw_confidence),
        rule_id=rule.rule_id,
        matched_pattern=pattern,
    )


def extract_tokens(signals: Sequence[FailureSignal]) -> List[str]:
    """
    Audit tokens for a set of signals.

    Resource types are kept verbatim; status-reason words shorter than 4 chars and stop words are dropped.
    """
    tokens: List[str] = []
    for sig in signals or []:
        if sig.resource_type:
            tokens.append(sig.resource_type.strip())
        for w in _WORD_RE.findall(sig.status_reason or ""):
            lw = w.lower()
            if len(lw) > 3 and lw not in _STOP_WORDS:
                tokens.append(lw)
    return canonical_tokens(tokens)


def fingerprint_tokens(classification: Classification, signals: Sequence[FailureSignal], rule_set: RuleSet) -> List[str]:
    """
    Structural tokens that identify "the same failure" across executions.

    Matched rules contribute their declared tokens plus the signals' resource types. UNKNOWN failures
    have no rule tokens, so their status-reason words stand in (otherwise every unknown would collapse
    into one fingerprint). Logical ids and timestamps never contribute.
    """
    resource_types = [s.resource_type for s in signals or [] if s.resource_type]
    if classification.rule_id is None:
        return canonical_tokens([*resource_types, *extract_tokens(signals)])
    rule_tokens: List[str] = []
    for rule in rule_set:
        if rule.rule_id == classification.rule_id:
            rule_tokens = list(rule.tokens)
            break
    return canonical_tokens([*rule_tokens, *resource_types])


def validate_determinism(
    signals_a: Sequence[FailureSignal], signals_b: Sequence[FailureSignal], rule_set: RuleSet
) -> bool:
    """True iff both signal sets classify to the same (error_class, raw_confidence)."""
    a = classify(signals_a, rule_set)
    b = classify(signals_b, rule_set)
    return (a.error_class, a.raw_confidence) == (b.error_class, b.raw_confidence)
