"""Deployment failure rules for AWS / CDK / CloudFormation (part of the rule library).

Order matters. Rollback rules sit above in-progress rules because a status like
`UPDATE_ROLLBACK_IN_PROGRESS` matches both; the rollback is the real failure.
"""

from triage.rules.rule_matcher import ClassificationRule

# ACM certificate waiting on DNS validation records
ACM_DNS_VALIDATION_PENDING = ClassificationRule(
    error_class="ACM_DNS_VALIDATION_PENDING",
    service="ACM",
    patterns=(
        r"DNS validation is pending",
        r"validation is not complete",
        r"Certificate.*pending validation",
        r"PENDING_VALIDATION",
        r"Waiting for CNAME record",
    ),
    raw_confidence=0.90,
    tokens=("ACM", "certificate", "dns", "validation"),
)

# Hosted zone NS delegation missing in the parent domain
ROUTE53_DELEGATION_PENDING = ClassificationRule(
    error_class="ROUTE53_DELEGATION_PENDING",
    service="Route53",
    patterns=(
        r"Delegation is pending",
        r"NS records? (?:are |is )?not configured",
        r"name servers have not been updated",
        r"NS delegation",
    ),
    raw_confidence=0.90,
    tokens=("Route53", "delegation", "nameservers"),
)

# Stack rolling back; needs root cause before retry
CFN_ROLLBACK_LOCK = ClassificationRule(
    error_class="CFN_ROLLBACK_LOCK",
    service="CloudFormation",
    patterns=(
        r"ROLLBACK_IN_PROGRESS",
        r"ROLLBACK_FAILED",
        r"ROLLBACK_COMPLETE state and can not be updated",
        r"is in \w*ROLLBACK\w* state",
    ),
    raw_confidence=0.95,
    tokens=("CloudFormation", "stack", "rollback"),
)

# Another stack operation holds the lock
CFN_IN_PROGRESS_LOCK = ClassificationRule(
    error_class="CFN_IN_PROGRESS_LOCK",
    service="CloudFormation",
    patterns=(
        r"_IN_PROGRESS state",
        r"is in \w+_IN_PROGRESS",
        r"cannot be updated while .* in progress",
    ),
    raw_confidence=0.95,
    tokens=("CloudFormation", "stack", "in_progress"),
)

# Secrets Manager secret missing
MISSING_SECRET = ClassificationRule(
    error_class="MISSING_SECRET",
    service="SecretsManager",
    patterns=(
        r"ResourceNotFoundException.*secret",
        r"Secrets Manager can'?t find",
        r"Secrets Manager cannot find",
        r"secret.*does not exist",
        r"secret.*not found",
    ),
    raw_confidence=0.85,
    tokens=("SecretsManager", "secret", "missing"),
)

# Required configuration / environment variable not set
MISSING_ENV_VAR = ClassificationRule(
    error_class="MISSING_ENV_VAR",
    service="Configuration",
    patterns=(
        r"missing required configuration",
        r"environment variable \S+ is not set",
        r"required environment variable",
        r"env(?:ironment)? var(?:iable)?.*not (?:set|defined)",
    ),
    raw_confidence=0.80,
    tokens=("Configuration", "environment", "variable"),
)

# Deprecated CDK API (low severity)
DEPRECATED_CDK_API = ClassificationRule(
    error_class="DEPRECATED_CDK_API",
    service="CDK",
    patterns=(
        r"\[DEPRECATED\]",
        r"deprecated API",
        r"deprecated method",
        r"is deprecated",
    ),
    raw_confidence=0.75,
    tokens=("CDK", "deprecated", "api"),
)

# Units mixed up (MB vs KB, seconds vs milliseconds)
UNIT_MISMATCH = ClassificationRule(
    error_class="UNIT_MISMATCH",
    service="Configuration",
    patterns=(
        r"expected value in (?:KB|MB|GB|KiB|MiB|GiB)",
        r"expected (?:KB|MB|GB|KiB|MiB|GiB) but got",
        r"expected (?:seconds|milliseconds|minutes) but got",
        r"unit mismatch",
    ),
    raw_confidence=0.80,
    tokens=("Configuration", "units"),
)

AWS_RULES = [
    ACM_DNS_VALIDATION_PENDING,
    ROUTE53_DELEGATION_PENDING,
    CFN_ROLLBACK_LOCK,
    CFN_IN_PROGRESS_LOCK,
    MISSING_SECRET,
    MISSING_ENV_VAR,
    DEPRECATED_CDK_API,
    UNIT_MISMATCH,
]
