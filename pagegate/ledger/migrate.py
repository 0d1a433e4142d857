"""
Schema migrations for the ledger database.

Bundled `NNNN_name.sql` files are applied in version order, each in its own transaction,
while a Postgres advisory lock keeps concurrent instances from racing. Every applied
version is recorded with the sha256 of its file; editing an applied file is an error.
"""

from __future__ import annotations

import hashlib
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from pagegate.errors import ConfigurationError, MigrationError, StoreError
from pagegate.ledger.config import StoreConfig, build_postgres_dsn, load_store_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_LOCK_KEY = 470119283310  # bigint

_FILENAME_RE = re.compile(r"^(\d{4})_([a-z0-9_]+)\.sql$")

_SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  name text NOT NULL,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
);
"""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    checksum: str
    sql: str

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        m = _FILENAME_RE.match(path.name)
        if not m:
            raise MigrationError("Bad migration file name", path.name)
        raw = path.read_bytes()
        return cls(
            version=m.group(1),
            name=m.group(2),
            checksum=hashlib.sha256(raw).hexdigest(),
            sql=raw.decode("utf-8"),
        )


def bundled_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    migrations = [Migration.from_file(p) for p in sorted(directory.glob("*.sql"))]
    versions = [m.version for m in migrations]
    dupes = sorted({v for v in versions if versions.count(v) > 1})
    if dupes:
        raise MigrationError("Duplicate migration version", dupes)
    return migrations


def pending_migrations(recorded: Dict[str, str], migrations: Sequence[Migration]) -> List[Migration]:
    """
    Return the migrations whose version is not in `recorded` (version -> checksum).

    Raises MigrationError when a recorded checksum differs from the bundled file.
    """
    pending: List[Migration] = []
    for m in migrations:
        checksum = recorded.get(m.version)
        if checksum is None:
            pending.append(m)
        elif checksum != m.checksum:
            raise MigrationError(
                "Migration checksum mismatch",
                {"version": m.version, "recorded": checksum[:12], "bundled": m.checksum[:12]},
            )
    return pending


def _connect(dsn: str, timeout: int):
    import psycopg

    # Autocommit so each `conn.transaction()` below is a real transaction of its own.
    return psycopg.connect(dsn, connect_timeout=timeout, autocommit=True)


@contextmanager
def _locked_connection(dsn: str, timeout: int) -> Iterator[Any]:
    import psycopg

    try:
        with _connect(dsn, timeout) as conn:
            conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
            try:
                conn.execute(_SCHEMA_MIGRATIONS_DDL)
                yield conn
            finally:
                conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))
    except psycopg.Error as e:
        logger.warning("Migration run failed: %s", type(e).__name__)
        raise StoreError("Database error", str(e)) from e


def _recorded(conn) -> Dict[str, str]:
    rows = conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall()
    return {str(r[0]): str(r[1]) for r in rows}


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
    connect_timeout: int = 10,
    dry_run: bool = False,
) -> List[Migration]:
    """Apply pending migrations in version order and return them. `dry_run` only reports."""
    bundle = list(migrations) if migrations is not None else bundled_migrations()
    with _locked_connection(dsn, connect_timeout) as conn:
        pending = pending_migrations(_recorded(conn), bundle)
        if dry_run:
            return pending
        for m in pending:
            with conn.transaction():
                conn.execute(m.sql)
                conn.execute(
                    "INSERT INTO schema_migrations(version, name, checksum) VALUES (%s, %s, %s);",
                    (m.version, m.name, m.checksum),
                )
            logger.info("Applied migration %s", m.label)
    return pending


def migrate(cfg: Optional[StoreConfig] = None, *, dry_run: bool = False) -> List[Migration]:
    cfg = cfg or load_store_config()
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        raise ConfigurationError(["POSTGRES_DSN"])
    return apply_migrations(dsn=dsn, connect_timeout=cfg.connect_timeout_seconds, dry_run=dry_run)


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Migrate on startup when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Returns: (did_attempt, message)
    """
    cfg = cfg or load_store_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    if not build_postgres_dsn(cfg):
        return False, "Postgres DSN not configured"
    try:
        applied = migrate(cfg)
    except StoreError as e:
        detail = e.details.get("detail")
        return True, f"Migration failed: {e.message}" + (f" ({detail})" if detail else "")
    if applied:
        return True, f"Applied {len(applied)} migration(s): {', '.join(m.label for m in applied)}"
    return True, "No pending migrations"
