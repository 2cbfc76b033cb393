"""Canonical domain models (single source of truth).

This file is the one place where we define models used across:
- classification (signals in, classification out)
- persistence (verdicts, policy snapshots, fingerprint events)
- reporting (summaries, KPIs, consistency)

Design note:
- Verdicts and policy snapshots are frozen: once built they are never mutated. Corrections are new rows.
- All timestamps are timezone-aware UTC; naive values are treated as UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN_ERROR_CLASS = "UNKNOWN"
UNKNOWN_SERVICE = "Unknown"
UNKNOWN_RAW_CONFIDENCE = 0.50

DEFAULT_EVENT_TTL_DAYS = 90


def _as_utc(v: Any) -> Any:
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    if isinstance(v, datetime):
        return v.astimezone(timezone.utc)
    return v


class BaseModelStrict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BaseModelFrozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ProposedAction(str, Enum):
    WAIT_AND_RETRY = "WAIT_AND_RETRY"
    OPEN_ISSUE = "OPEN_ISSUE"
    HUMAN_REQUIRED = "HUMAN_REQUIRED"


class VerdictType(str, Enum):
    APPROVED = "APPROVED"
    WARNING = "WARNING"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    BLOCKED = "BLOCKED"
    DEFERRED = "DEFERRED"
    PENDING = "PENDING"


class VerdictState(str, Enum):
    # Terminal and only state. There are no transitions.
    CREATED = "CREATED"


class FailureSignal(BaseModel):
    """One infrastructure failure signal (input only, never persisted as-is)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    resource_type: str = Field(alias="resourceType")
    logical_id: str = Field(default="", alias="logicalId")
    status_reason: str = Field(default="", alias="statusReason")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resource_status: Optional[str] = Field(default=None, alias="resourceStatus")

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def to_raw(self) -> Dict[str, Any]:
        """Verbatim audit copy in the inbound (camelCase) wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Classification(BaseModelFrozen):
    error_class: str
    service: str
    raw_confidence: float
    rule_id: Optional[str] = None
    matched_pattern: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule_id is not None


class Verdict(BaseModelFrozen):
    id: str
    execution_id: str
    error_class: str
    service: str
    confidence_score: int = Field(ge=0, le=100)
    proposed_action: ProposedAction
    fingerprint_id: str
    policy_snapshot_id: str
    raw_signals: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime

    raw_confidence: Optional[float] = None
    rule_id: Optional[str] = None
    tokens: List[str] = Field(default_factory=list)
    verdict_type: Optional[VerdictType] = None
    playbook_id: Optional[str] = None
    state: VerdictState = VerdictState.CREATED

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("policy_snapshot_id", "execution_id", "id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not (v or "").strip():
            raise ValueError("must be a non-empty string")
        return v


class PolicySnapshot(BaseModelFrozen):
    id: str
    version: str
    policies: Dict[str, Any]
    created_at: datetime
    policy_hash: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)


class FingerprintEventRecord(BaseModelFrozen):
    fingerprint_id: str
    timestamp: datetime
    error_class: str
    service: str
    raw_confidence: float
    context: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @field_validator("timestamp", "expires_at")
    @classmethod
    def _ensure_timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class FingerprintStats(BaseModelStrict):
    fingerprint_id: str
    total_occurrences: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    average_raw_confidence: Optional[float] = None


class ConsistencyReport(BaseModelStrict):
    total_groups: int
    consistent_groups: int
    consistency_score_percent: int
    inconsistent_fingerprints: List[str] = Field(default_factory=list)


class VerdictSummary(BaseModelStrict):
    error_class: str
    service: str
    confidence_score: int
    proposed_action: ProposedAction
    fingerprint_id: str
    policy_version: Optional[str] = None
    created_at: datetime


class ErrorClassKpi(BaseModelStrict):
    error_class: str
    count: int
    avg_confidence: float


class VerdictKpis(BaseModelStrict):
    total_verdicts: int
    avg_confidence: float
    consistency_score_percent: int
    counts_by_action: Dict[str, int] = Field(default_factory=dict)
    top_error_classes: List[ErrorClassKpi] = Field(default_factory=list)


class VerdictWithPolicy(BaseModelStrict):
    verdict: Verdict
    policy_version: str
    policy_definition: Dict[str, Any]


class VerdictStatistics(BaseModelStrict):
    """Per (error_class, service) aggregate over verdicts."""

    error_class: str
    service: str
    total_count: int
    avg_confidence: float
    min_confidence: int
    max_confidence: int
    most_common_action: ProposedAction
    affected_executions: int


class VerdictAuditEntry(BaseModelFrozen):
    """One append-only audit trail row for a verdict (created, reviewed, gate checked, ...)."""

    verdict_id: str
    event_type: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    created_by: str
    created_at: datetime
    id: Optional[int] = None

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)
