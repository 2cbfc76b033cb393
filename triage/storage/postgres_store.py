"""Postgres-backed VerdictStore (psycopg 3).

Insert-only for every table except fingerprint_events: this module never issues UPDATE or DELETE
against them, and the schema triggers reject them anyway. Events are kept even when two share a
timestamp, matching MemoryStore. One connection per call keeps the store safe to share across
threads.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence

from triage.core.errors import DuplicateVerdict, SnapshotConflict, StorageUnavailable
from triage.core.models import FingerprintEventRecord, FingerprintStats, PolicySnapshot, Verdict, VerdictAuditEntry
from triage.storage.base import VerdictQuery, clamp_limit

logger = logging.getLogger(__name__)

_VERDICT_COLUMNS = (
    "id, execution_id, error_class, service, raw_confidence, confidence_score, proposed_action, "
    "verdict_type, playbook_id, state, fingerprint_id, tokens, policy_snapshot_id, raw_signals, created_at, rule_id"
)

_EVENT_COLUMNS = "fingerprint_id, ts, error_class, service, raw_confidence, context, expires_at"

_SNAPSHOT_COLUMNS = "id, version, policies, created_at, policy_hash"

_AUDIT_COLUMNS = "id, verdict_id, event_type, event_data, created_by, created_at"


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _loads(value: Any) -> Any:
    # psycopg decodes jsonb already; text columns (or fakes) may hand back strings.
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_verdict(r: Sequence[Any]) -> Verdict:
    return Verdict(
        id=str(r[0]),
        execution_id=str(r[1]),
        error_class=str(r[2]),
        service=str(r[3]),
        raw_confidence=(float(r[4]) if r[4] is not None else None),
        confidence_score=int(r[5]),
        proposed_action=str(r[6]),
        verdict_type=(str(r[7]) if r[7] is not None else None),
        playbook_id=(str(r[8]) if r[8] is not None else None),
        state=str(r[9]),
        fingerprint_id=str(r[10]),
        tokens=list(_loads(r[11]) or []),
        policy_snapshot_id=str(r[12]),
        raw_signals=list(_loads(r[13]) or []),
        created_at=r[14],
        rule_id=(str(r[15]) if r[15] is not None else None),
    )


def _row_to_snapshot(r: Sequence[Any]) -> PolicySnapshot:
    return PolicySnapshot(
        id=str(r[0]),
        version=str(r[1]),
        policies=dict(_loads(r[2]) or {}),
        created_at=r[3],
        policy_hash=(str(r[4]) if r[4] is not None else None),
    )


def _row_to_audit_entry(r: Sequence[Any]) -> VerdictAuditEntry:
    return VerdictAuditEntry(
        id=int(r[0]),
        verdict_id=str(r[1]),
        event_type=str(r[2]),
        event_data=dict(_loads(r[3]) or {}),
        created_by=str(r[4]),
        created_at=r[5],
    )


def _row_to_event(r: Sequence[Any]) -> FingerprintEventRecord:
    return FingerprintEventRecord(
        fingerprint_id=str(r[0]),
        timestamp=r[1],
        error_class=str(r[2]),
        service=str(r[3]),
        raw_confidence=float(r[4]),
        context=dict(_loads(r[5]) or {}),
        expires_at=r[6],
    )


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        if not dsn:
            raise ValueError("PostgresStore requires a DSN")
        self.dsn = dsn

    @contextmanager
    def _session(self) -> Iterator[Any]:
        import psycopg  # type: ignore[import-not-found]

        try:
            with _connect(self.dsn) as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError) as e:
            logger.error("Postgres unavailable: %s", e)
            raise StorageUnavailable(str(e)) from e

    # ---- policy snapshots ----

    def get_snapshot_id_for_execution(self, execution_id: str) -> Optional[str]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT policy_snapshot_id FROM execution_snapshots WHERE execution_id = %s;",
                (execution_id,),
            ).fetchone()
        return str(row[0]) if row and row[0] else None

    def create_snapshot_for_execution(self, execution_id: str, snapshot: PolicySnapshot) -> PolicySnapshot:
        with self._session() as conn:
            # SnapshotConflict raised inside the transaction rolls back the policy_snapshots row too.
            with conn.transaction():
                existing = conn.execute(
                    "SELECT policy_snapshot_id FROM execution_snapshots WHERE execution_id = %s;",
                    (execution_id,),
                ).fetchone()
                if existing and existing[0]:
                    raise SnapshotConflict(execution_id)

                conn.execute(
                    """
                    INSERT INTO policy_snapshots(id, version, policies, policy_hash, created_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s);
                    """,
                    (
                        snapshot.id,
                        snapshot.version,
                        _json(snapshot.policies),
                        snapshot.policy_hash,
                        snapshot.created_at,
                    ),
                )
                row = conn.execute(
                    """
                    INSERT INTO execution_snapshots(execution_id, policy_snapshot_id)
                    VALUES (%s, %s)
                    ON CONFLICT (execution_id) DO NOTHING
                    RETURNING policy_snapshot_id;
                    """,
                    (execution_id, snapshot.id),
                ).fetchone()
                if not row or not row[0]:
                    raise SnapshotConflict(execution_id)
        return snapshot

    def get_policy_snapshot(self, snapshot_id: str) -> Optional[PolicySnapshot]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM policy_snapshots WHERE id = %s;",
                (snapshot_id,),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def get_latest_policy_snapshot(self) -> Optional[PolicySnapshot]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM policy_snapshots ORDER BY created_at DESC, id DESC LIMIT 1;",
                (),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    # ---- verdicts ----

    def insert_verdict(self, verdict: Verdict) -> Verdict:
        import psycopg  # type: ignore[import-not-found]

        v = verdict
        try:
            with self._session() as conn:
                with conn.transaction():
                    conn.execute(
                        f"""
                        INSERT INTO verdicts({_VERDICT_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s, %s);
                        """,
                        (
                            v.id,
                            v.execution_id,
                            v.error_class,
                            v.service,
                            v.raw_confidence,
                            v.confidence_score,
                            v.proposed_action.value,
                            (v.verdict_type.value if v.verdict_type is not None else None),
                            v.playbook_id,
                            v.state.value,
                            v.fingerprint_id,
                            _json(list(v.tokens)),
                            v.policy_snapshot_id,
                            _json(list(v.raw_signals)),
                            v.created_at,
                            v.rule_id,
                        ),
                    )
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateVerdict(v.id) from e
        return v

    def get_verdict(self, verdict_id: str) -> Optional[Verdict]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_VERDICT_COLUMNS} FROM verdicts WHERE id = %s;",
                (verdict_id,),
            ).fetchone()
        return _row_to_verdict(row) if row else None

    def get_verdicts_by_execution(self, execution_id: str) -> List[Verdict]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {_VERDICT_COLUMNS} FROM verdicts WHERE execution_id = %s ORDER BY created_at DESC, id DESC;",
                (execution_id,),
            ).fetchall()
        return [_row_to_verdict(r) for r in rows]

    def get_verdicts_by_fingerprint(self, fingerprint_id: str, limit: int) -> List[Verdict]:
        n = clamp_limit(limit)
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT {_VERDICT_COLUMNS} FROM verdicts
                WHERE fingerprint_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s;
                """,
                (fingerprint_id, n),
            ).fetchall()
        return [_row_to_verdict(r) for r in rows]

    def query_verdicts(self, query: VerdictQuery) -> List[Verdict]:
        q = query
        where: List[str] = []
        params: List[Any] = []
        # Only emit filters that are set (avoid NULL-typed params).
        if q.execution_id:
            where.append("execution_id = %s")
            params.append(q.execution_id)
        if q.error_class:
            where.append("error_class = %s")
            params.append(q.error_class)
        if q.service:
            where.append("service = %s")
            params.append(q.service)
        if q.min_confidence is not None:
            where.append("confidence_score >= %s")
            params.append(int(q.min_confidence))
        if q.max_confidence is not None:
            where.append("confidence_score <= %s")
            params.append(int(q.max_confidence))
        if q.proposed_action is not None:
            where.append("proposed_action = %s")
            params.append(q.proposed_action.value)
        if q.since is not None:
            where.append("created_at >= %s")
            params.append(q.since)

        sql = f"SELECT {_VERDICT_COLUMNS} FROM verdicts"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s;"
        params.extend([clamp_limit(q.limit), max(0, int(q.offset or 0))])

        with self._session() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_verdict(r) for r in rows]

    def list_verdicts(self, since: Optional[datetime] = None) -> List[Verdict]:
        with self._session() as conn:
            if since is None:
                rows = conn.execute(
                    f"SELECT {_VERDICT_COLUMNS} FROM verdicts ORDER BY created_at ASC, id ASC;",
                    (),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_VERDICT_COLUMNS} FROM verdicts WHERE created_at >= %s ORDER BY created_at ASC, id ASC;",
                    (since,),
                ).fetchall()
        return [_row_to_verdict(r) for r in rows]

    # ---- verdict audit log ----

    def log_verdict_audit(self, entry: VerdictAuditEntry) -> VerdictAuditEntry:
        with self._session() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO verdict_audit_log(verdict_id, event_type, event_data, created_by, created_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s)
                    RETURNING {_AUDIT_COLUMNS};
                    """,
                    (
                        entry.verdict_id,
                        entry.event_type,
                        _json(entry.event_data or {}),
                        entry.created_by,
                        entry.created_at,
                    ),
                ).fetchone()
        if not row:
            raise RuntimeError(f"verdict_audit_log insert returned no row for {entry.verdict_id}")
        return _row_to_audit_entry(row)

    def get_verdict_audit_log(self, verdict_id: str) -> List[VerdictAuditEntry]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {_AUDIT_COLUMNS} FROM verdict_audit_log WHERE verdict_id = %s ORDER BY created_at ASC, id ASC;",
                (verdict_id,),
            ).fetchall()
        return [_row_to_audit_entry(r) for r in rows]

    # ---- fingerprint events ----

    def append_event(self, record: FingerprintEventRecord) -> None:
        with self._session() as conn:
            with conn.transaction():
                conn.execute(
                    f"""
                    INSERT INTO fingerprint_events({_EVENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s);
                    """,
                    (
                        record.fingerprint_id,
                        record.timestamp,
                        record.error_class,
                        record.service,
                        record.raw_confidence,
                        _json(record.context or {}),
                        record.expires_at,
                    ),
                )

    def query_events(self, fingerprint_id: str, limit: int, now: datetime) -> List[FingerprintEventRecord]:
        n = clamp_limit(limit)
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM fingerprint_events
                WHERE fingerprint_id = %s AND (expires_at IS NULL OR expires_at > %s)
                ORDER BY ts DESC, id DESC
                LIMIT %s;
                """,
                (fingerprint_id, now, n),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def event_stats(self, fingerprint_id: str, now: datetime) -> FingerprintStats:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT count(*), min(ts), max(ts), avg(raw_confidence)
                FROM fingerprint_events
                WHERE fingerprint_id = %s AND (expires_at IS NULL OR expires_at > %s);
                """,
                (fingerprint_id, now),
            ).fetchone()
        if not row or not row[0]:
            return FingerprintStats(fingerprint_id=fingerprint_id)
        return FingerprintStats(
            fingerprint_id=fingerprint_id,
            total_occurrences=int(row[0]),
            first_seen=row[1],
            last_seen=row[2],
            average_raw_confidence=(float(row[3]) if row[3] is not None else None),
        )

    def purge_expired_events(self, now: datetime) -> int:
        # fingerprint_events is the one table with retention; verdicts are never deleted.
        with self._session() as conn:
            with conn.transaction():
                cur = conn.execute(
                    "DELETE FROM fingerprint_events WHERE expires_at IS NOT NULL AND expires_at <= %s;",
                    (now,),
                )
        removed = int(getattr(cur, "rowcount", 0) or 0)
        if removed:
            logger.info("Purged %d expired fingerprint events", removed)
        return removed
