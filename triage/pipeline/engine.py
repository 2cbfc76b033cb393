"""Verdict engine: the orchestration seam between classification and storage.

Flow for one classify_and_record call:
1. ensure the execution's policy snapshot (first call freezes the active policy)
2. classify the signals with the rules frozen in that snapshot
3. normalize confidence, fingerprint, look up the playbook from the same snapshot
4. insert the verdict (errors propagate)
5. append the audit log entry and the fingerprint event (best-effort: failures are logged, never raised)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from triage.core.fingerprint import fingerprint
from triage.core.models import (
    DEFAULT_EVENT_TTL_DAYS,
    UNKNOWN_ERROR_CLASS,
    Classification,
    ConsistencyReport,
    FailureSignal,
    FingerprintEventRecord,
    FingerprintStats,
    PolicySnapshot,
    ProposedAction,
    Verdict,
    VerdictAuditEntry,
    VerdictKpis,
    VerdictStatistics,
    VerdictSummary,
    VerdictType,
    VerdictWithPolicy,
)
from triage.pipeline import consistency
from triage.pipeline.classify import classify, fingerprint_tokens
from triage.pipeline.confidence import normalize_confidence
from triage.pipeline.playbooks import recommend
from triage.policy.definition import PolicyDefinition
from triage.policy.snapshots import PolicySnapshotManager, rule_set_from_snapshot
from triage.storage.base import DEFAULT_QUERY_LIMIT, VerdictStore

logger = logging.getLogger(__name__)

SignalInput = Union[FailureSignal, Dict[str, Any]]

AUDIT_EVENT_VERDICT_CREATED = "VERDICT_CREATED"
AUDIT_ACTOR = "verdict-engine"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _since_utc(since: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are UTC, matching how every stored timestamp is normalized.
    if since is not None and since.tzinfo is None:
        return since.replace(tzinfo=timezone.utc)
    return since


def parse_signals(signals: Iterable[SignalInput]) -> List[FailureSignal]:
    """Accept model instances or raw (camelCase or snake_case) dicts."""
    out: List[FailureSignal] = []
    for s in signals or []:
        if isinstance(s, FailureSignal):
            out.append(s)
        else:
            out.append(FailureSignal.model_validate(s))
    return out


def _playbook_entry(snapshot: PolicySnapshot, error_class: str) -> Optional[Dict[str, Any]]:
    table = (snapshot.policies or {}).get("playbooks")
    if not isinstance(table, dict):
        return None
    entry = table.get(error_class) or table.get(UNKNOWN_ERROR_CLASS)
    return entry if isinstance(entry, dict) else None


class VerdictEngine:
    def __init__(
        self,
        store: VerdictStore,
        policy: Optional[PolicyDefinition] = None,
        *,
        event_ttl_days: int = DEFAULT_EVENT_TTL_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.event_ttl_days = event_ttl_days
        self._clock = clock
        self.snapshots = PolicySnapshotManager(store, policy, clock=clock)

    # ---- write path ----

    def _load_snapshot(self, snapshot_id: str) -> PolicySnapshot:
        snapshot = self.store.get_policy_snapshot(snapshot_id)
        if snapshot is None:
            raise RuntimeError(f"Policy snapshot {snapshot_id} is associated but missing")
        return snapshot

    def _build_verdict(
        self,
        execution_id: str,
        signals: Sequence[FailureSignal],
        snapshot: PolicySnapshot,
    ) -> Verdict:
        rule_set = rule_set_from_snapshot(snapshot)
        c: Classification = classify(signals, rule_set)
        score = normalize_confidence(c.raw_confidence)
        tokens = fingerprint_tokens(c, signals, rule_set)

        entry = _playbook_entry(snapshot, c.error_class)
        if entry is not None:
            action = ProposedAction(entry["proposed_action"])
            verdict_type = VerdictType(entry["verdict_type"]) if entry.get("verdict_type") else None
            playbook_id = entry.get("playbook_id")
        else:
            rec = recommend(c.error_class)
            action, verdict_type, playbook_id = rec.proposed_action, rec.verdict_type, rec.playbook_id

        return Verdict(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            error_class=c.error_class,
            service=c.service,
            raw_confidence=c.raw_confidence,
            rule_id=c.rule_id,
            confidence_score=score,
            proposed_action=action,
            verdict_type=verdict_type,
            playbook_id=playbook_id,
            fingerprint_id=fingerprint(c.error_class, c.service, tokens),
            tokens=tokens,
            policy_snapshot_id=snapshot.id,
            raw_signals=[s.to_raw() for s in signals],
            created_at=self._clock(),
        )

    def _record_event(self, verdict: Verdict) -> None:
        record = FingerprintEventRecord(
            fingerprint_id=verdict.fingerprint_id,
            timestamp=verdict.created_at,
            error_class=verdict.error_class,
            service=verdict.service,
            raw_confidence=(verdict.raw_confidence if verdict.raw_confidence is not None else 0.0),
            context={"execution_id": verdict.execution_id, "verdict_id": verdict.id},
            expires_at=verdict.created_at + timedelta(days=self.event_ttl_days),
        )
        try:
            self.store.append_event(record)
        except Exception as e:
            # Event history is advisory; the verdict is already durable.
            logger.warning("Failed to append fingerprint event for %s: %s", verdict.fingerprint_id, e)

    def _record_audit(self, verdict: Verdict) -> None:
        entry = VerdictAuditEntry(
            verdict_id=verdict.id,
            event_type=AUDIT_EVENT_VERDICT_CREATED,
            event_data={
                "execution_id": verdict.execution_id,
                "policy_snapshot_id": verdict.policy_snapshot_id,
                "rule_id": verdict.rule_id,
                "confidence_score": verdict.confidence_score,
                "proposed_action": verdict.proposed_action.value,
            },
            created_by=AUDIT_ACTOR,
            created_at=verdict.created_at,
        )
        try:
            self.store.log_verdict_audit(entry)
        except Exception as e:
            logger.warning("Failed to write audit log entry for verdict %s: %s", verdict.id, e)

    def classify_and_record(self, execution_id: str, signals: Iterable[SignalInput]) -> Verdict:
        if not (execution_id or "").strip():
            raise ValueError("execution_id is required")
        parsed = parse_signals(signals)

        snapshot_id = self.snapshots.ensure_snapshot_for_execution(execution_id)
        snapshot = self._load_snapshot(snapshot_id)

        verdict = self._build_verdict(execution_id, parsed, snapshot)
        self.store.insert_verdict(verdict)
        logger.info(
            "Verdict %s for %s: %s (%d) -> %s",
            verdict.id,
            execution_id,
            verdict.error_class,
            verdict.confidence_score,
            verdict.proposed_action.value,
        )

        self._record_audit(verdict)
        self._record_event(verdict)
        return verdict

    def classify_only(self, signals: Iterable[SignalInput]) -> Dict[str, Any]:
        """Dry run against the active policy: nothing is persisted."""
        parsed = parse_signals(signals)
        policy = self.snapshots.get_active_policy_definition()
        c = classify(parsed, policy.rule_set)
        tokens = fingerprint_tokens(c, parsed, policy.rule_set)
        rec = recommend(c.error_class)
        return {
            "error_class": c.error_class,
            "service": c.service,
            "raw_confidence": c.raw_confidence,
            "confidence_score": normalize_confidence(c.raw_confidence),
            "proposed_action": rec.proposed_action.value,
            "verdict_type": rec.verdict_type.value,
            "playbook_id": rec.playbook_id,
            "recommended_steps": rec.recommended_steps,
            "guardrails": rec.guardrails,
            "rule_id": c.rule_id,
            "fingerprint_id": fingerprint(c.error_class, c.service, tokens),
            "tokens": tokens,
            "policy_version": policy.version,
        }

    # ---- read path ----

    def get_verdicts_for_execution(self, execution_id: str) -> List[Verdict]:
        return self.store.get_verdicts_by_execution(execution_id)

    def get_verdicts_for_fingerprint(self, fingerprint_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> List[Verdict]:
        return self.store.get_verdicts_by_fingerprint(fingerprint_id, limit)

    def get_consistency_report(self, since: Optional[datetime] = None) -> ConsistencyReport:
        return consistency.evaluate(self.store.list_verdicts(_since_utc(since)))

    def get_kpis(self, since: Optional[datetime] = None) -> VerdictKpis:
        return consistency.build_kpis(self.store.list_verdicts(_since_utc(since)))

    def get_verdict_statistics(self, since: Optional[datetime] = None) -> List[VerdictStatistics]:
        return consistency.build_statistics(self.store.list_verdicts(_since_utc(since)))

    def get_fingerprint_stats(self, fingerprint_id: str) -> FingerprintStats:
        return self.store.event_stats(fingerprint_id, self._clock())

    def get_fingerprint_events(self, fingerprint_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> List[FingerprintEventRecord]:
        return self.store.query_events(fingerprint_id, limit, self._clock())

    def get_verdict_with_policy(self, verdict_id: str) -> Optional[VerdictWithPolicy]:
        verdict = self.store.get_verdict(verdict_id)
        if verdict is None:
            return None
        snapshot = self._load_snapshot(verdict.policy_snapshot_id)
        return VerdictWithPolicy(verdict=verdict, policy_version=snapshot.version, policy_definition=snapshot.policies)

    def get_verdict_summary(self, verdict_id: str) -> Optional[VerdictSummary]:
        verdict = self.store.get_verdict(verdict_id)
        if verdict is None:
            return None
        snapshot = self.store.get_policy_snapshot(verdict.policy_snapshot_id)
        return consistency.to_summary(verdict, snapshot.version if snapshot is not None else None)

    def get_verdict_audit_log(self, verdict_id: str) -> List[VerdictAuditEntry]:
        return self.store.get_verdict_audit_log(verdict_id)

    def get_latest_policy_snapshot(self) -> Optional[PolicySnapshot]:
        return self.store.get_latest_policy_snapshot()

    def purge_expired_events(self) -> int:
        return self.store.purge_expired_events(self._clock())
