"""Explicit, versioned ledger schema migrations.

Each step upgrades the schema from ``version - 1`` to ``version`` and must be
idempotent so it can run against a store that ``create_all`` already shaped.
The applied version is stored in ``ledger_meta`` under ``schema_version``.
"""

from sqlalchemy import Connection, text

from ralloc.db.models import LEDGER_SCHEMA_VERSION
from ralloc.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION_KEY = "schema_version"

MIGRATIONS: dict[int, list[str]] = {
    1: [],
    2: [
        "CREATE INDEX IF NOT EXISTS ix_allocations_resource_window "
        "ON allocations (resource_id, start_at, end_at)",
        "UPDATE allocations SET schema_version = 2 WHERE schema_version < 2",
    ],
    3: [
        "CREATE TABLE IF NOT EXISTS resource_capacity ("
        "resource_id VARCHAR NOT NULL PRIMARY KEY, capacity_version INTEGER NOT NULL)",
        "INSERT OR IGNORE INTO resource_capacity (resource_id, capacity_version) "
        "SELECT DISTINCT resource_id, 0 FROM allocations",
        "UPDATE allocations SET schema_version = 3 WHERE schema_version < 3",
    ],
}


def read_schema_version(conn: Connection) -> int:
    """Return the stored schema version, 0 for a store never migrated."""
    row = conn.execute(
        text("SELECT value FROM ledger_meta WHERE key = :key"),
        {"key": SCHEMA_VERSION_KEY},
    ).first()
    return int(row[0]) if row else 0


def write_schema_version(conn: Connection, version: int) -> None:
    """Record ``version`` as the applied schema version."""
    updated = conn.execute(
        text("UPDATE ledger_meta SET value = :value WHERE key = :key"),
        {"key": SCHEMA_VERSION_KEY, "value": str(version)},
    )
    if updated.rowcount == 0:
        conn.execute(
            text("INSERT INTO ledger_meta (key, value) VALUES (:key, :value)"),
            {"key": SCHEMA_VERSION_KEY, "value": str(version)},
        )


def migrate_ledger(conn: Connection, target: int = LEDGER_SCHEMA_VERSION) -> int:
    """Apply every migration step newer than the stored version, up to ``target``."""
    current = read_schema_version(conn)
    if current > target:
        raise RuntimeError(
            f"ledger schema version {current} is newer than this build supports ({target})"
        )
    for version in range(current + 1, target + 1):
        for statement in MIGRATIONS[version]:
            conn.execute(text(statement))
        logger.info("ledger_migrated", from_version=version - 1, to_version=version)
    if current != target:
        write_schema_version(conn, target)
    return target
