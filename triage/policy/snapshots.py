from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from triage.core.errors import SnapshotConflict
from triage.core.models import PolicySnapshot
from triage.policy.definition import PolicyDefinition, load_policy_definition
from triage.rules import RuleSet
from triage.storage.base import VerdictStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rule_set_from_snapshot(snapshot: PolicySnapshot) -> RuleSet:
    """Rebuild the classification rules frozen in a snapshot."""
    policies = snapshot.policies or {}
    rows = policies.get("classification_rules")
    if not isinstance(rows, list):
        raise ValueError(f"policy snapshot {snapshot.id} has no classification_rules")
    version = str(policies.get("rule_set_version") or snapshot.version)
    return RuleSet.from_list(version, rows)


class PolicySnapshotManager:
    """
    Freezes the active policy once per execution.

    The first call for an execution writes a snapshot; every later (or concurrent) call returns that
    same id. Later edits to the active definition never reach an existing snapshot.
    """

    def __init__(
        self,
        store: VerdictStore,
        policy: Optional[PolicyDefinition] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self._policy = policy
        self._clock = clock

    def get_active_policy_definition(self) -> PolicyDefinition:
        if self._policy is None:
            self._policy = load_policy_definition()
        return self._policy

    def set_active_policy_definition(self, policy: PolicyDefinition) -> None:
        # Affects snapshots created from now on only.
        self._policy = policy

    def _build_snapshot(self) -> PolicySnapshot:
        policy = self.get_active_policy_definition()
        return PolicySnapshot(
            id=str(uuid.uuid4()),
            version=policy.version,
            policies=policy.to_policies(),
            created_at=self._clock(),
            policy_hash=policy.policy_hash(),
        )

    def ensure_snapshot_for_execution(self, execution_id: str) -> str:
        if not (execution_id or "").strip():
            raise ValueError("execution_id is required")

        existing = self.store.get_snapshot_id_for_execution(execution_id)
        if existing:
            return existing

        snapshot = self._build_snapshot()
        try:
            self.store.create_snapshot_for_execution(execution_id, snapshot)
        except SnapshotConflict:
            winner = self.store.get_snapshot_id_for_execution(execution_id)
            if not winner:
                raise RuntimeError(f"Snapshot conflict for {execution_id} but no winner found")
            logger.debug("Snapshot race for %s resolved to %s", execution_id, winner)
            return winner

        logger.info("Created policy snapshot %s (%s) for execution %s", snapshot.id, snapshot.version, execution_id)
        return snapshot.id

    def get_snapshot(self, snapshot_id: str) -> Optional[PolicySnapshot]:
        return self.store.get_policy_snapshot(snapshot_id)
