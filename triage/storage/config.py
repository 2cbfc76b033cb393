from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from triage.core.models import DEFAULT_EVENT_TTL_DAYS


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


@dataclass(frozen=True)
class StorageConfig:
    db_auto_migrate: bool

    # Postgres connection (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]

    # Fingerprint event retention
    event_ttl_days: int = DEFAULT_EVENT_TTL_DAYS


def load_storage_config() -> StorageConfig:
    dsn = (os.getenv("POSTGRES_DSN") or "").strip() or None
    host = (os.getenv("POSTGRES_HOST") or "").strip() or None
    db = (os.getenv("POSTGRES_DB") or "").strip() or None
    user = (os.getenv("POSTGRES_USER") or "").strip() or None
    pw = (os.getenv("POSTGRES_PASSWORD") or "").strip() or None

    ttl = _env_int("TRIAGE_EVENT_TTL_DAYS", DEFAULT_EVENT_TTL_DAYS)
    if ttl <= 0:
        ttl = DEFAULT_EVENT_TTL_DAYS

    return StorageConfig(
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        postgres_dsn=dsn,
        postgres_host=host,
        postgres_port=_env_int("POSTGRES_PORT", 5432),
        postgres_db=db,
        postgres_user=user,
        postgres_password=pw,
        event_ttl_days=ttl,
    )


def build_postgres_dsn(cfg: StorageConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # conninfo builder quotes/escapes special characters in passwords.
    from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )
