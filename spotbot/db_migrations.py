"""Versioned schema for the SQLite store.

Each migration is a list of statements plus the statements that undo it.
Applied versions are recorded in ``schema_migrations`` so that opening an
existing database only runs what is new.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .logging_setup import logger


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: Sequence[str]
    down: Sequence[str] = ()


# Trades and settings are stored as JSON documents next to the columns the
# store filters on.
_SCHEMA = [
    Migration(
        1,
        "trades, settings singleton, balance history",
        up=[
            """
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                asset TEXT NOT NULL,
                status TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at INTEGER
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS balance_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                balance TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """,
        ],
        down=[
            "DROP TABLE IF EXISTS balance_history",
            "DROP TABLE IF EXISTS settings",
            "DROP TABLE IF EXISTS trades",
        ],
    ),
    Migration(
        2,
        "indexes for the per-tick open trade scan",
        up=[
            "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)",
            "CREATE INDEX IF NOT EXISTS idx_trades_asset ON trades(asset)",
        ],
        down=[
            "DROP INDEX IF EXISTS idx_trades_status",
            "DROP INDEX IF EXISTS idx_trades_asset",
        ],
    ),
    Migration(
        3,
        "index balance snapshots by time",
        up=["CREATE INDEX IF NOT EXISTS idx_balance_history_ts ON balance_history(timestamp)"],
        down=["DROP INDEX IF EXISTS idx_balance_history_ts"],
    ),
]

MIGRATIONS: Dict[int, Migration] = {m.version: m for m in _SCHEMA}


def _ensure_version_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> List[int]:
    _ensure_version_table(conn)
    return [row[0] for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]


def _run(conn, statements: Sequence[str], bookkeeping: str, params: tuple) -> None:
    conn.execute("BEGIN IMMEDIATE")
    try:
        for statement in statements:
            conn.execute(statement)
        conn.execute(bookkeeping, params)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def apply_migrations(conn) -> List[int]:
    """Apply every pending migration in version order.

    Returns:
        The versions applied by this call (empty when already up to date)
    """
    done = set(applied_versions(conn))
    applied_now = []
    for version in sorted(v for v in MIGRATIONS if v not in done):
        migration = MIGRATIONS[version]
        _run(
            conn,
            migration.up,
            "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        )
        logger.info(f"Applied schema migration {version}: {migration.description}")
        applied_now.append(version)
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Undo one migration.

    Raises:
        RuntimeError: If the version is unknown or has no down statements
    """
    migration = MIGRATIONS.get(version)
    if migration is None or not migration.down:
        raise RuntimeError(f"No down migration registered for version {version}")
    _run(conn, migration.down, "DELETE FROM schema_migrations WHERE version = ?", (version,))
    logger.warning(f"Rolled back schema migration {version}")


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns the version or None."""
    versions = applied_versions(conn)
    if not versions:
        return None
    rollback_migration(conn, versions[-1])
    return versions[-1]
