from __future__ import annotations

from typing import Any, List, Optional, Tuple

import pytest

from triage.storage import MemoryStore, PostgresStore, build_store_from_env
from triage.storage.base import IMMUTABLE_TABLES
from triage.storage.config import build_postgres_dsn, load_storage_config


def test_defaults_without_env() -> None:
    cfg = load_storage_config()
    assert cfg.postgres_dsn is None
    assert cfg.postgres_port == 5432
    assert cfg.db_auto_migrate is False
    assert cfg.event_ttl_days == 90
    assert build_postgres_dsn(cfg) is None


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db/triage")
    monkeypatch.setenv("DB_AUTO_MIGRATE", "yes")
    monkeypatch.setenv("TRIAGE_EVENT_TTL_DAYS", "7")
    monkeypatch.setenv("POSTGRES_PORT", "not-a-port")
    cfg = load_storage_config()
    assert cfg.db_auto_migrate is True
    assert cfg.event_ttl_days == 7
    assert cfg.postgres_port == 5432
    assert build_postgres_dsn(cfg) == "postgresql://u:p@db/triage"


def test_non_positive_ttl_falls_back_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRIAGE_EVENT_TTL_DAYS", "0")
    assert load_storage_config().event_ttl_days == 90


def test_dsn_from_parts_is_quoted(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTGRES_HOST", "db")
    monkeypatch.setenv("POSTGRES_DB", "triage")
    monkeypatch.setenv("POSTGRES_USER", "svc")
    monkeypatch.setenv("POSTGRES_PASSWORD", "p w'd")
    dsn = build_postgres_dsn(load_storage_config())
    assert dsn is not None
    assert "host=db" in dsn
    assert "dbname=triage" in dsn
    assert "p w'd" not in dsn  # escaped


def test_partial_parts_mean_not_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTGRES_HOST", "db")
    assert build_postgres_dsn(load_storage_config()) is None


def test_store_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(build_store_from_env(), MemoryStore)
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db/triage")
    s = build_store_from_env()
    assert isinstance(s, PostgresStore)
    assert s.dsn == "postgresql://u:p@db/triage"


_ALL_TRIGGERS = [(t, f"{t}_immutable") for t in IMMUTABLE_TABLES]


class _MigConn:
    def __init__(
        self,
        applied: List[Tuple[str, str]],
        triggers: Optional[List[Tuple[str, str]]] = None,
        unique_key: bool = True,
    ) -> None:
        self.applied = applied
        self.triggers = list(_ALL_TRIGGERS) if triggers is None else triggers
        self.unique_key = unique_key
        self.statements: List[Tuple[str, Any]] = []
        self._last = ""

    def execute(self, sql: str, params=None):  # type: ignore[no-untyped-def]
        self.statements.append((sql, params))
        self._last = sql
        return self

    def fetchall(self):  # type: ignore[no-untyped-def]
        if "FROM schema_migrations" in self._last:
            return list(self.applied)
        if "FROM pg_trigger" in self._last:
            return list(self.triggers)
        return []

    def fetchone(self):  # type: ignore[no-untyped-def]
        if "FROM pg_index" in self._last:
            return (1,) if self.unique_key else None
        return None

    def transaction(self):  # type: ignore[no-untyped-def]
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False


def test_migrations_ship_with_package() -> None:
    from triage.storage.migrate import load_migrations

    migs = load_migrations()
    assert [m.version for m in migs][0] == "0001"
    sql = migs[0].sql
    for table in ("policy_snapshots", "execution_snapshots", "verdicts", "fingerprint_events", "verdict_audit_log"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
    for table in IMMUTABLE_TABLES:
        assert f"CREATE TRIGGER {table}_immutable" in sql
        assert f"BEFORE UPDATE OR DELETE ON {table}" in sql
    # Same-timestamp events must not collide.
    assert "PRIMARY KEY (fingerprint_id, ts)" not in sql


def test_load_migrations_rejects_duplicate_versions(tmp_path) -> None:  # type: ignore[no-untyped-def]
    from triage.storage.migrate import MigrationError, load_migrations

    (tmp_path / "0001_a.sql").write_text("SELECT 1;", encoding="utf-8")
    (tmp_path / "0001_b.sql").write_text("SELECT 2;", encoding="utf-8")
    with pytest.raises(MigrationError):
        load_migrations(tmp_path)


def test_apply_migrations_under_advisory_lock_and_verifies(monkeypatch: pytest.MonkeyPatch) -> None:
    import triage.storage.migrate as mig

    conn = _MigConn(applied=[])
    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    report = mig.apply_migrations(dsn="dsn")
    assert report.applied == ("0001",)
    assert report.ok is True
    assert report.describe() == "Applied 1 migration(s): 0001"

    sqls = [s for s, _ in conn.statements]
    assert "pg_advisory_lock" in sqls[0]
    assert "pg_advisory_unlock" in sqls[-1]
    assert any("INSERT INTO schema_migrations" in s for s in sqls)
    # Verification runs inside the lock, after the migration.
    trigger_idx = next(i for i, s in enumerate(sqls) if "FROM pg_trigger" in s)
    insert_idx = next(i for i, s in enumerate(sqls) if "INSERT INTO schema_migrations" in s)
    assert insert_idx < trigger_idx < len(sqls) - 1


def test_apply_migrations_skips_applied_and_rejects_checksum_drift(monkeypatch: pytest.MonkeyPatch) -> None:
    import triage.storage.migrate as mig

    m = mig.load_migrations()[0]
    conn = _MigConn(applied=[(m.version, m.checksum)])
    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    report = mig.apply_migrations(dsn="dsn")
    assert report.applied == ()
    assert report.already_applied == ("0001",)
    assert report.describe() == "No pending migrations"

    conn = _MigConn(applied=[(m.version, "0" * 64)])
    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    with pytest.raises(mig.MigrationError):
        mig.apply_migrations(dsn="dsn")
    # Lock is released even on failure.
    assert "pg_advisory_unlock" in conn.statements[-1][0]


def test_missing_trigger_or_unique_key_fails_verification(monkeypatch: pytest.MonkeyPatch) -> None:
    import triage.storage.migrate as mig

    m = mig.load_migrations()[0]
    triggers = [t for t in _ALL_TRIGGERS if t[0] != "verdicts"]
    conn = _MigConn(applied=[(m.version, m.checksum)], triggers=triggers, unique_key=False)
    assert mig.verify_schema(conn) == [
        "verdicts: immutability trigger missing or disabled",
        "execution_snapshots: no unique key on execution_id",
    ]

    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    with pytest.raises(mig.MigrationError) as ei:
        mig.apply_migrations(dsn="dsn")
    assert "verdicts: immutability trigger missing" in str(ei.value)

    # Nothing to apply and nothing to check: skip verification explicitly.
    assert mig.apply_migrations(dsn="dsn", verify=False).ok is True


def test_migrate_main_verify_only(monkeypatch: pytest.MonkeyPatch, capsys) -> None:  # type: ignore[no-untyped-def]
    import triage.storage.migrate as mig

    assert mig.main([]) == 2

    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db/triage")
    conn = _MigConn(applied=[], unique_key=False)
    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    assert mig.main(["--verify-only"]) == 1
    assert "no unique key on execution_id" in capsys.readouterr().out
    assert not any("INSERT INTO schema_migrations" in s for s, _ in conn.statements)

    conn = _MigConn(applied=[])
    monkeypatch.setattr(mig, "_connect", lambda _dsn: conn)
    assert mig.main(["--verify-only"]) == 0
    assert mig.main([]) == 0


def test_maybe_auto_migrate_is_opt_in(monkeypatch: pytest.MonkeyPatch) -> None:
    from triage.storage.migrate import maybe_auto_migrate

    assert maybe_auto_migrate() == (False, "DB_AUTO_MIGRATE is disabled")
    monkeypatch.setenv("DB_AUTO_MIGRATE", "1")
    assert maybe_auto_migrate() == (False, "Postgres DSN not configured")


def test_maybe_auto_migrate_reports_failure_without_raising(monkeypatch: pytest.MonkeyPatch) -> None:
    import triage.storage.migrate as mig

    monkeypatch.setenv("DB_AUTO_MIGRATE", "1")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db/triage")
    monkeypatch.setattr(mig, "_connect", lambda _dsn: _MigConn(applied=[], triggers=[]))
    did, msg = mig.maybe_auto_migrate()
    assert did is True
    assert msg.startswith("Migration failed:")
