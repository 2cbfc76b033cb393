from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from triage.core.models import (
    FingerprintEventRecord,
    FingerprintStats,
    PolicySnapshot,
    ProposedAction,
    Verdict,
    VerdictAuditEntry,
)

MAX_QUERY_LIMIT = 1000
DEFAULT_QUERY_LIMIT = 50

# Tables whose rows are never updated or deleted once written.
IMMUTABLE_TABLES = ("verdicts", "policy_snapshots", "execution_snapshots", "verdict_audit_log")


def clamp_limit(limit: Optional[int], default: int = DEFAULT_QUERY_LIMIT) -> int:
    """None means the default page size; anything else must be a positive integer (capped)."""
    if limit is None:
        return default
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError(f"limit must be an integer, got {limit!r}")
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")
    return min(limit, MAX_QUERY_LIMIT)


@dataclass(frozen=True)
class VerdictQuery:
    execution_id: Optional[str] = None
    error_class: Optional[str] = None
    service: Optional[str] = None
    min_confidence: Optional[int] = None
    max_confidence: Optional[int] = None
    proposed_action: Optional[ProposedAction] = None
    since: Optional[datetime] = None
    limit: Optional[int] = DEFAULT_QUERY_LIMIT
    offset: int = 0


class VerdictStore(Protocol):
    """
    Insert-only storage for verdicts and policy snapshots, plus the fingerprint event side-channel.

    There is deliberately no update or delete for verdicts / policy snapshots. Implementations raise
    StorageUnavailable when the backend cannot be reached.
    """

    # ---- policy snapshots ----

    def get_snapshot_id_for_execution(self, execution_id: str) -> Optional[str]:
        """Snapshot already associated with an execution, if any."""

    def create_snapshot_for_execution(self, execution_id: str, snapshot: PolicySnapshot) -> PolicySnapshot:
        """
        Atomically insert `snapshot` and associate it with `execution_id`.

        Raises SnapshotConflict (and writes nothing) if the execution already has a snapshot.
        """

    def get_policy_snapshot(self, snapshot_id: str) -> Optional[PolicySnapshot]:
        """Snapshot by id."""

    def get_latest_policy_snapshot(self) -> Optional[PolicySnapshot]:
        """Most recently created snapshot (any execution), or None when there are none."""

    # ---- verdicts ----

    def insert_verdict(self, verdict: Verdict) -> Verdict:
        """Insert a new verdict row. Raises DuplicateVerdict if the id exists."""

    def get_verdict(self, verdict_id: str) -> Optional[Verdict]:
        """Verdict by id."""

    def get_verdicts_by_execution(self, execution_id: str) -> List[Verdict]:
        """All verdicts for an execution, newest first."""

    def get_verdicts_by_fingerprint(self, fingerprint_id: str, limit: int) -> List[Verdict]:
        """Latest `limit` verdicts for a fingerprint, newest first."""

    def query_verdicts(self, query: VerdictQuery) -> List[Verdict]:
        """Filtered verdicts, newest first, limit capped at MAX_QUERY_LIMIT."""

    def list_verdicts(self, since: Optional[datetime] = None) -> List[Verdict]:
        """Every verdict created at or after `since` (all when None), oldest first. Uncapped."""

    # ---- verdict audit log (insert-only) ----

    def log_verdict_audit(self, entry: VerdictAuditEntry) -> VerdictAuditEntry:
        """Append an audit entry; returns it with its assigned id."""

    def get_verdict_audit_log(self, verdict_id: str) -> List[VerdictAuditEntry]:
        """Audit entries for a verdict, oldest first."""

    # ---- fingerprint events ----

    def append_event(self, record: FingerprintEventRecord) -> None:
        """Append one event row. Events sharing a timestamp are all kept (no dedup)."""

    def query_events(self, fingerprint_id: str, limit: int, now: datetime) -> List[FingerprintEventRecord]:
        """Unexpired events for a fingerprint, newest first."""

    def event_stats(self, fingerprint_id: str, now: datetime) -> FingerprintStats:
        """Aggregate over unexpired events for a fingerprint."""

    def purge_expired_events(self, now: datetime) -> int:
        """Housekeeping: drop expired event rows. Returns the number removed."""
