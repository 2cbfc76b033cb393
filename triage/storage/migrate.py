"""Schema migrations for the verdict store.

Migration files live in `migrations/` as `NNNN_name.sql` and are applied in order, once each, under a
Postgres advisory lock. After applying, the schema guarantees the engine relies on are checked against
the catalog: every insert-only table carries its reject-mutation trigger, and execution_snapshots is
unique on execution_id (the key that makes concurrent snapshot creation converge).
"""

from __future__ import annotations

import argparse
import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from triage.storage.base import IMMUTABLE_TABLES
from triage.storage.config import StorageConfig, build_postgres_dsn, load_storage_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_LOCK_KEY = 640118203377


class MigrationError(RuntimeError):
    """Migration history or resulting schema is not what this code expects."""


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str


@dataclass(frozen=True)
class MigrationReport:
    applied: Tuple[str, ...] = ()
    already_applied: Tuple[str, ...] = ()
    schema_issues: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.schema_issues

    def describe(self) -> str:
        if self.applied:
            msg = f"Applied {len(self.applied)} migration(s): {', '.join(self.applied)}"
        else:
            msg = "No pending migrations"
        if self.schema_issues:
            msg += "; schema issues: " + "; ".join(self.schema_issues)
        return msg


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    if not directory.exists():
        return []
    out: List[Migration] = []
    for p in sorted(directory.glob("*.sql")):
        raw = p.read_bytes()
        out.append(
            Migration(
                version=p.name.split("_")[0],
                path=p,
                checksum=hashlib.sha256(raw).hexdigest(),
                sql=raw.decode("utf-8"),
            )
        )
    versions = [m.version for m in out]
    if len(set(versions)) != len(versions):
        raise MigrationError(f"Duplicate migration versions in {directory}: {versions}")
    return out


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


@contextmanager
def _advisory_lock(conn: Any) -> Iterator[None]:
    conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
    try:
        yield
    finally:
        conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))


def _applied_checksums(conn: Any) -> dict:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version text PRIMARY KEY,
          checksum text NOT NULL,
          applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall()
    return {str(r[0]): str(r[1]) for r in rows}


def immutability_trigger_name(table: str) -> str:
    return f"{table}_immutable"


def verify_schema(conn: Any) -> List[str]:
    """Catalog checks for the insert-only triggers and the one-snapshot-per-execution key."""
    issues: List[str] = []

    rows = conn.execute(
        """
        SELECT c.relname, t.tgname
        FROM pg_trigger t
        JOIN pg_class c ON c.oid = t.tgrelid
        WHERE NOT t.tgisinternal AND t.tgenabled <> 'D' AND c.relname = ANY(%s);
        """,
        (list(IMMUTABLE_TABLES),),
    ).fetchall()
    present = {(str(r[0]), str(r[1])) for r in rows}
    for table in IMMUTABLE_TABLES:
        if (table, immutability_trigger_name(table)) not in present:
            issues.append(f"{table}: immutability trigger missing or disabled")

    unique = conn.execute(
        """
        SELECT 1
        FROM pg_index i
        JOIN pg_class c ON c.oid = i.indrelid
        JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = i.indkey[0]
        WHERE c.relname = 'execution_snapshots' AND i.indisunique AND i.indnatts = 1
          AND a.attname = 'execution_id'
        LIMIT 1;
        """
    ).fetchone()
    if not unique:
        issues.append("execution_snapshots: no unique key on execution_id")
    return issues


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
    verify: bool = True,
) -> MigrationReport:
    """
    Apply pending migrations, then verify the schema.

    Raises MigrationError when an applied migration's file changed (checksum drift) or when the
    verified schema is missing a guarantee.
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    applied: List[str] = []
    skipped: List[str] = []
    issues: List[str] = []

    with _connect(dsn) as conn:
        with _advisory_lock(conn):
            known = _applied_checksums(conn)
            for m in migs:
                prev = known.get(m.version)
                if prev is not None:
                    if prev != m.checksum:
                        raise MigrationError(
                            f"Migration {m.version} was edited after it was applied: db={prev[:12]} file={m.checksum[:12]}"
                        )
                    skipped.append(m.version)
                    continue
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations(version, checksum) VALUES (%s, %s);",
                        (m.version, m.checksum),
                    )
                logger.info("Applied migration %s (%s)", m.version, m.path.name)
                applied.append(m.version)

            if verify:
                issues = verify_schema(conn)

    report = MigrationReport(applied=tuple(applied), already_applied=tuple(skipped), schema_issues=tuple(issues))
    if not report.ok:
        raise MigrationError(report.describe())
    return report


def verify_database(dsn: str) -> List[str]:
    with _connect(dsn) as conn:
        return verify_schema(conn)


def maybe_auto_migrate(cfg: Optional[StorageConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Returns (did_attempt, message). Never raises.
    """
    cfg = cfg or load_storage_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        return True, apply_migrations(dsn=dsn).describe()
    except Exception as e:
        logger.error("Migration failed: %s", e)
        return True, f"Migration failed: {e}"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Apply and verify verdict store migrations")
    parser.add_argument("--verify-only", action="store_true", help="Check the schema without applying anything")
    args = parser.parse_args(argv)

    dsn = build_postgres_dsn(load_storage_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2

    if args.verify_only:
        issues = verify_database(dsn)
        for issue in issues:
            print(f"schema issue: {issue}")
        if not issues:
            print("Schema OK.")
        return 1 if issues else 0

    try:
        report = apply_migrations(dsn=dsn)
    except MigrationError as e:
        print(f"Migration failed: {e}")
        return 1
    print(report.describe() + ".")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
