"""Rule library for known deployment failure modes.

This module aggregates all rule sets into the default, versioned rule table.

Adding new rules:
1. Create a new file (e.g., ecs_rules.py)
2. Define rules using ClassificationRule
3. Export as a list (e.g., ECS_RULES)
4. Import and add to ALL_RULES below, in precedence order
5. Bump DEFAULT_RULE_SET_VERSION (existing snapshots keep the old table)
"""

from triage.rules.aws_rules import AWS_RULES
from triage.rules.rule_matcher import ClassificationRule, RuleSet

DEFAULT_RULE_SET_VERSION = "v1.0.0"

ALL_RULES = [
    *AWS_RULES,
]


def default_rule_set() -> RuleSet:
    return RuleSet(version=DEFAULT_RULE_SET_VERSION, rules=tuple(ALL_RULES))


__all__ = ["ALL_RULES", "ClassificationRule", "DEFAULT_RULE_SET_VERSION", "RuleSet", "default_rule_set"]
