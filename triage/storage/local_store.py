"""In-process storage for development and tests (fallback when Postgres is not configured).

Mirrors the Postgres schema contracts: unique snapshot per execution, non-null snapshot reference on
verdicts, insert-only verdicts / snapshots. Every operation is recorded in `audit_log` as
(operation, table) so tests can assert that no UPDATE/DELETE ever touches the immutable tables.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from triage.core.errors import DuplicateVerdict, SnapshotConflict
from triage.core.models import FingerprintEventRecord, FingerprintStats, PolicySnapshot, Verdict, VerdictAuditEntry
from triage.storage.base import VerdictQuery, clamp_limit


def _newest_first(items: List[Verdict]) -> List[Verdict]:
    # id as secondary key keeps ordering total when timestamps collide.
    return sorted(items, key=lambda v: (v.created_at, v.id), reverse=True)


def _unexpired(rec: FingerprintEventRecord, now: datetime) -> bool:
    return rec.expires_at is None or rec.expires_at > now


@dataclass
class MemoryStore:
    """Thread-safe in-memory VerdictStore."""

    audit_log: List[Tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: Dict[str, PolicySnapshot] = {}
        self._execution_snapshots: Dict[str, str] = {}
        self._verdicts: Dict[str, Verdict] = {}
        self._events: List[FingerprintEventRecord] = []
        self._audit_entries: List[VerdictAuditEntry] = []

    def _audit(self, op: str, table: str) -> None:
        self.audit_log.append((op, table))

    # ---- policy snapshots ----

    def get_snapshot_id_for_execution(self, execution_id: str) -> Optional[str]:
        with self._lock:
            self._audit("SELECT", "execution_snapshots")
            return self._execution_snapshots.get(execution_id)

    def create_snapshot_for_execution(self, execution_id: str, snapshot: PolicySnapshot) -> PolicySnapshot:
        # Check-and-insert under one lock: the in-process equivalent of INSERT ... ON CONFLICT DO NOTHING.
        with self._lock:
            if execution_id in self._execution_snapshots:
                raise SnapshotConflict(execution_id)
            if snapshot.id in self._snapshots:
                raise SnapshotConflict(execution_id)
            self._snapshots[snapshot.id] = snapshot
            self._audit("INSERT", "policy_snapshots")
            self._execution_snapshots[execution_id] = snapshot.id
            self._audit("INSERT", "execution_snapshots")
            return snapshot

    def get_policy_snapshot(self, snapshot_id: str) -> Optional[PolicySnapshot]:
        with self._lock:
            self._audit("SELECT", "policy_snapshots")
            return self._snapshots.get(snapshot_id)

    def get_latest_policy_snapshot(self) -> Optional[PolicySnapshot]:
        with self._lock:
            self._audit("SELECT", "policy_snapshots")
            if not self._snapshots:
                return None
            return max(self._snapshots.values(), key=lambda s: (s.created_at, s.id))

    def snapshot_count_for_execution(self, execution_id: str) -> int:
        with self._lock:
            return 1 if execution_id in self._execution_snapshots else 0

    # ---- verdicts ----

    def insert_verdict(self, verdict: Verdict) -> Verdict:
        with self._lock:
            if verdict.id in self._verdicts:
                raise DuplicateVerdict(verdict.id)
            if verdict.policy_snapshot_id not in self._snapshots:
                raise ValueError(f"unknown policy snapshot: {verdict.policy_snapshot_id}")
            self._verdicts[verdict.id] = verdict
            self._audit("INSERT", "verdicts")
            return verdict

    def get_verdict(self, verdict_id: str) -> Optional[Verdict]:
        with self._lock:
            self._audit("SELECT", "verdicts")
            return self._verdicts.get(verdict_id)

    def get_verdicts_by_execution(self, execution_id: str) -> List[Verdict]:
        with self._lock:
            self._audit("SELECT", "verdicts")
            return _newest_first([v for v in self._verdicts.values() if v.execution_id == execution_id])

    def get_verdicts_by_fingerprint(self, fingerprint_id: str, limit: int) -> List[Verdict]:
        n = clamp_limit(limit)
        with self._lock:
            self._audit("SELECT", "verdicts")
            items = _newest_first([v for v in self._verdicts.values() if v.fingerprint_id == fingerprint_id])
        return items[:n]

    def query_verdicts(self, query: VerdictQuery) -> List[Verdict]:
        q = query
        with self._lock:
            self._audit("SELECT", "verdicts")
            items = list(self._verdicts.values())
        out = []
        for v in items:
            if q.execution_id and v.execution_id != q.execution_id:
                continue
            if q.error_class and v.error_class != q.error_class:
                continue
            if q.service and v.service != q.service:
                continue
            if q.min_confidence is not None and v.confidence_score < q.min_confidence:
                continue
            if q.max_confidence is not None and v.confidence_score > q.max_confidence:
                continue
            if q.proposed_action is not None and v.proposed_action != q.proposed_action:
                continue
            if q.since is not None and v.created_at < q.since:
                continue
            out.append(v)
        offset = max(0, int(q.offset or 0))
        return _newest_first(out)[offset : offset + clamp_limit(q.limit)]

    def list_verdicts(self, since: Optional[datetime] = None) -> List[Verdict]:
        with self._lock:
            self._audit("SELECT", "verdicts")
            items = [v for v in self._verdicts.values() if since is None or v.created_at >= since]
        return sorted(items, key=lambda v: (v.created_at, v.id))

    # ---- verdict audit log ----

    def log_verdict_audit(self, entry: VerdictAuditEntry) -> VerdictAuditEntry:
        with self._lock:
            if entry.verdict_id not in self._verdicts:
                raise ValueError(f"unknown verdict: {entry.verdict_id}")
            stored = entry.model_copy(update={"id": len(self._audit_entries) + 1})
            self._audit_entries.append(stored)
            self._audit("INSERT", "verdict_audit_log")
            return stored

    def get_verdict_audit_log(self, verdict_id: str) -> List[VerdictAuditEntry]:
        with self._lock:
            self._audit("SELECT", "verdict_audit_log")
            return [e for e in self._audit_entries if e.verdict_id == verdict_id]

    # ---- fingerprint events ----

    def append_event(self, record: FingerprintEventRecord) -> None:
        with self._lock:
            self._events.append(record)
            self._audit("INSERT", "fingerprint_events")

    def query_events(self, fingerprint_id: str, limit: int, now: datetime) -> List[FingerprintEventRecord]:
        n = clamp_limit(limit)
        with self._lock:
            self._audit("SELECT", "fingerprint_events")
            indexed = [(i, e) for i, e in enumerate(self._events) if e.fingerprint_id == fingerprint_id and _unexpired(e, now)]
        # Newest first; same-timestamp events come back latest-appended first.
        indexed.sort(key=lambda ie: (ie[1].timestamp, ie[0]), reverse=True)
        return [e for _, e in indexed][:n]

    def event_stats(self, fingerprint_id: str, now: datetime) -> FingerprintStats:
        with self._lock:
            self._audit("SELECT", "fingerprint_events")
            items = [e for e in self._events if e.fingerprint_id == fingerprint_id and _unexpired(e, now)]
        if not items:
            return FingerprintStats(fingerprint_id=fingerprint_id)
        ts = [e.timestamp for e in items]
        return FingerprintStats(
            fingerprint_id=fingerprint_id,
            total_occurrences=len(items),
            first_seen=min(ts),
            last_seen=max(ts),
            average_raw_confidence=sum(e.raw_confidence for e in items) / len(items),
        )

    def purge_expired_events(self, now: datetime) -> int:
        with self._lock:
            keep = [e for e in self._events if _unexpired(e, now)]
            removed = len(self._events) - len(keep)
            self._events = keep
            self._audit("DELETE", "fingerprint_events")
            return removed
