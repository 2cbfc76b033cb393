"""
Pytest config.

Local imports like `import triage` rely on the repo root being on sys.path. When invoking a global
`pytest` entrypoint that doesn't happen reliably during collection, so pin it here.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unit tests never talk to a real Postgres or read a policy override by accident."""
    for name in (
        "POSTGRES_DSN",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_DB",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "DB_AUTO_MIGRATE",
        "TRIAGE_EVENT_TTL_DAYS",
        "TRIAGE_POLICY_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


class StepClock:
    """Deterministic clock: every call advances by one second."""

    def __init__(self, start: datetime) -> None:
        self.now = start
        self.calls: List[datetime] = []

    def __call__(self) -> datetime:
        cur = self.now
        self.calls.append(cur)
        self.now = cur + timedelta(seconds=1)
        return cur


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return StepClock(datetime(2026, 1, 2, 3, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():  # type: ignore[no-untyped-def]
    from triage.storage.local_store import MemoryStore

    return MemoryStore()


@pytest.fixture
def engine(store, clock):  # type: ignore[no-untyped-def]
    from triage.pipeline.engine import VerdictEngine

    return VerdictEngine(store, clock=clock)
