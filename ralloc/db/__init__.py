"""Database module for ledger persistence."""

from ralloc.db.engine import create_db_engine, create_session_factory, init_db, session_scope
from ralloc.db.models import (
    AllocationRecord,
    AllocationState,
    AllocationTransition,
    LedgerMeta,
    ResourceCapacity,
)

__all__ = [
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
    "AllocationRecord",
    "AllocationState",
    "AllocationTransition",
    "LedgerMeta",
    "ResourceCapacity",
]
