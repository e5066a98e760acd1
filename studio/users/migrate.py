"""
Schema migrations for the user store.

Plain `.sql` files under `migrations/` are applied in filename order, each in its own
transaction, and recorded in `schema_migrations` with a checksum so an edited file that
was already applied is reported instead of silently skipped.

    python main.py --migrate
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from studio.users.config import DatabaseConfig, build_postgres_dsn, load_database_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# pg advisory lock id; serializes replicas that start at the same time.
MIGRATION_LOCK_KEY = 7346150021

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version    text PRIMARY KEY,
  checksum   text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
);
"""


@dataclass(frozen=True)
class Migration:
    version: str  # file stem, e.g. "0001_users"
    sql: str
    checksum: str


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    if not directory.is_dir():
        return []
    out = []
    for path in sorted(directory.glob("*.sql")):
        raw = path.read_bytes()
        out.append(Migration(version=path.stem, sql=raw.decode("utf-8"), checksum=hashlib.sha256(raw).hexdigest()))
    return out


def _applied(conn) -> Dict[str, str]:
    rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
    return {str(version): str(checksum) for version, checksum in rows}


def _pending(migrations: Sequence[Migration], applied: Dict[str, str]) -> List[Migration]:
    pending = []
    for m in migrations:
        recorded = applied.get(m.version)
        if recorded is None:
            pending.append(m)
        elif recorded != m.checksum:
            raise RuntimeError(f"{m.version} was edited after it was applied (db={recorded[:12]} file={m.checksum[:12]})")
    return pending


def apply_migrations(*, dsn: str, migrations: Optional[Sequence[Migration]] = None) -> Tuple[int, List[str]]:
    """
    Apply every migration not yet recorded in the database.

    Returns: (applied_count, applied_versions)
    """
    import psycopg

    migrations = load_migrations() if migrations is None else migrations
    done: List[str] = []
    with psycopg.connect(dsn) as conn:
        conn.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_KEY,))
        try:
            conn.execute(_CREATE_LEDGER)
            for m in _pending(migrations, _applied(conn)):
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s)", (m.version, m.checksum)
                    )
                logger.info("Applied migration %s", m.version)
                done.append(m.version)
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_KEY,))
    return len(done), done


def maybe_auto_migrate(cfg: Optional[DatabaseConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Never raises. Returns: (did_attempt, message)
    """
    cfg = cfg or load_database_config()
    if not cfg.auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        n, versions = apply_migrations(dsn=dsn)
    except Exception as e:
        return True, f"Migration failed: {e}"
    return True, (f"Applied {n} migration(s): {', '.join(versions)}" if n else "No pending migrations")


def main() -> int:
    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    n, versions = apply_migrations(dsn=dsn)
    print(f"Applied {n} migration(s): {', '.join(versions)}" if n else "No pending migrations.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
