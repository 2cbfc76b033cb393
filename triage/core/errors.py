"""Error taxonomy for the verdict engine.

"No rule matched" is deliberately absent: it resolves to the reserved UNKNOWN
class and is a normal outcome.
"""

from __future__ import annotations


class VerdictEngineError(Exception):
    """Base class for all engine errors."""


class InvalidConfidence(VerdictEngineError, ValueError):
    """Raw confidence outside [0, 1] (or not a number). Never clamped."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid confidence: {value!r} (expected a number in [0, 1])")
        self.value = value


class DuplicateVerdict(VerdictEngineError):
    """A caller tried to persist a verdict with an id that already exists."""

    def __init__(self, verdict_id: str) -> None:
        super().__init__(f"Verdict already exists: {verdict_id}")
        self.verdict_id = verdict_id


class SnapshotConflict(VerdictEngineError):
    """Lost the race to create an execution's policy snapshot.

    Internal only: the snapshot manager resolves it by re-reading the winner.
    """

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Policy snapshot already associated with execution: {execution_id}")
        self.execution_id = execution_id


class StorageUnavailable(VerdictEngineError):
    """Backing store could not be reached or rejected the operation."""
