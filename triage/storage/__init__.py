"""Verdict / snapshot / fingerprint-event persistence.

Postgres when configured (POSTGRES_DSN or POSTGRES_* parts), otherwise an in-process store.
"""

from __future__ import annotations

import logging
from typing import Optional

from triage.storage.base import VerdictQuery, VerdictStore
from triage.storage.config import StorageConfig, build_postgres_dsn, load_storage_config
from triage.storage.local_store import MemoryStore
from triage.storage.postgres_store import PostgresStore

logger = logging.getLogger(__name__)


def build_store_from_env(cfg: Optional[StorageConfig] = None) -> VerdictStore:
    cfg = cfg or load_storage_config()
    dsn = build_postgres_dsn(cfg)
    if dsn:
        return PostgresStore(dsn)
    logger.warning("Postgres not configured; verdicts are kept in memory only")
    return MemoryStore()


__all__ = [
    "MemoryStore",
    "PostgresStore",
    "VerdictQuery",
    "VerdictStore",
    "build_store_from_env",
]
