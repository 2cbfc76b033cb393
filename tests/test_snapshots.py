from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from triage.core.errors import SnapshotConflict
from triage.policy.definition import PolicyDefinition, default_policy_definition
from triage.policy.snapshots import PolicySnapshotManager, rule_set_from_snapshot
from triage.rules import ClassificationRule, RuleSet
from triage.storage.local_store import MemoryStore


def test_ensure_is_idempotent_sequentially(store, clock) -> None:  # type: ignore[no-untyped-def]
    m = PolicySnapshotManager(store, default_policy_definition(), clock=clock)
    ids = {m.ensure_snapshot_for_execution("exec-1") for _ in range(5)}
    assert len(ids) == 1
    assert store.snapshot_count_for_execution("exec-1") == 1


def test_different_executions_get_different_snapshots(store, clock) -> None:  # type: ignore[no-untyped-def]
    m = PolicySnapshotManager(store, default_policy_definition(), clock=clock)
    assert m.ensure_snapshot_for_execution("a") != m.ensure_snapshot_for_execution("b")


def test_ensure_is_idempotent_under_concurrency() -> None:
    store = MemoryStore()
    m = PolicySnapshotManager(store, default_policy_definition())
    barrier = threading.Barrier(16)

    def _go(_i: int) -> str:
        barrier.wait()
        return m.ensure_snapshot_for_execution("exec-race")

    with ThreadPoolExecutor(max_workers=16) as pool:
        ids = set(pool.map(_go, range(16)))

    assert len(ids) == 1
    assert store.snapshot_count_for_execution("exec-race") == 1
    assert store.get_policy_snapshot(ids.pop()) is not None


def test_conflict_resolves_to_winner(store, clock) -> None:  # type: ignore[no-untyped-def]
    winner = PolicySnapshotManager(store, default_policy_definition(), clock=clock)
    winner_id = winner.ensure_snapshot_for_execution("exec-1")

    class _Racy:
        """Reports no snapshot on the first read, as a loser of the race would see it."""

        def __init__(self, inner: MemoryStore) -> None:
            self.inner = inner
            self.reads = 0

        def get_snapshot_id_for_execution(self, execution_id: str):  # type: ignore[no-untyped-def]
            self.reads += 1
            if self.reads == 1:
                return None
            return self.inner.get_snapshot_id_for_execution(execution_id)

        def create_snapshot_for_execution(self, execution_id, snapshot):  # type: ignore[no-untyped-def]
            return self.inner.create_snapshot_for_execution(execution_id, snapshot)

    racy = _Racy(store)
    loser = PolicySnapshotManager(racy, default_policy_definition(), clock=clock)  # type: ignore[arg-type]
    assert loser.ensure_snapshot_for_execution("exec-1") == winner_id
    assert racy.reads == 2


def test_memory_store_conflict_writes_nothing(store, clock) -> None:  # type: ignore[no-untyped-def]
    m = PolicySnapshotManager(store, default_policy_definition(), clock=clock)
    m.ensure_snapshot_for_execution("exec-1")
    before = len(store.audit_log)
    snap = m._build_snapshot()
    try:
        store.create_snapshot_for_execution("exec-1", snap)
    except SnapshotConflict:
        pass
    else:
        raise AssertionError("expected SnapshotConflict")
    assert store.get_policy_snapshot(snap.id) is None
    assert ("INSERT", "policy_snapshots") not in store.audit_log[before:]


def test_policy_change_after_snapshot_does_not_affect_it(store, clock) -> None:  # type: ignore[no-untyped-def]
    m = PolicySnapshotManager(store, default_policy_definition(), clock=clock)
    sid = m.ensure_snapshot_for_execution("exec-1")
    original = store.get_policy_snapshot(sid)

    changed = PolicyDefinition(
        version="v9.9.9",
        rule_set=RuleSet(
            version="v9.9.9",
            rules=(ClassificationRule(error_class="X", service="S", patterns=("x",), raw_confidence=0.1),),
        ),
    )
    m.set_active_policy_definition(changed)

    assert m.ensure_snapshot_for_execution("exec-1") == sid
    assert store.get_policy_snapshot(sid) == original
    assert rule_set_from_snapshot(original).version == "v1.0.0"

    # New executions pick up the new definition.
    new_sid = m.ensure_snapshot_for_execution("exec-2")
    assert store.get_policy_snapshot(new_sid).version == "v9.9.9"


def test_snapshot_records_hash_and_clock(store, clock) -> None:  # type: ignore[no-untyped-def]
    p = default_policy_definition()
    m = PolicySnapshotManager(store, p, clock=clock)
    snap = store.get_policy_snapshot(m.ensure_snapshot_for_execution("exec-1"))
    assert snap.policy_hash == p.policy_hash()
    assert snap.created_at == clock.calls[0]
