"""Database models for the allocation ledger.

All models use SQLModel for Pydantic + SQLAlchemy integration.
These models support:
- The allocation ledger (single source of truth for commitments)
- The append-only transition journal (audit trail and snapshot versions)
- Per-resource capacity rows serialising committing writes across replicas
- Ledger metadata (schema version for explicit migrations)
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer
from sqlmodel import JSON, Column, Field, SQLModel

from ralloc.timeutil import utc_now

# Bumped together with a new step in ralloc.db.migrations
LEDGER_SCHEMA_VERSION = 3


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


class AllocationState(str, Enum):
    """Lifecycle state of an allocation record."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AllocationRecord(SQLModel, table=True):
    """A commitment of a share of one resource to one project over ``[start_at, end_at)``."""

    __tablename__ = "allocations"
    __table_args__ = (
        Index("ix_allocations_resource_window", "resource_id", "start_at", "end_at"),
        {"extend_existing": True},
    )

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    resource_id: str = Field(index=True)
    project_id: str = Field(index=True)
    start_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    percentage: int
    state: AllocationState = Field(default=AllocationState.PENDING, index=True)

    created_by: str
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_by: str
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    version: int = Field(default=1)
    schema_version: int = Field(default=LEDGER_SCHEMA_VERSION)

    # Soft-mode conflict summaries attached at propose/amend time
    warnings: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    # Rejection or cancellation reason
    note: str | None = Field(default=None)


class AllocationTransition(SQLModel, table=True):
    """Append-only journal row written with every ledger change.

    ``seq`` is ledger-wide and monotonically increasing; it doubles as the
    snapshot version used by ``query(as_of=...)``.
    """

    __tablename__ = "allocation_transitions"
    __table_args__ = {"extend_existing": True}

    seq: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    allocation_id: str = Field(index=True)
    resource_id: str = Field(index=True)
    project_id: str = Field(index=True)
    from_state: AllocationState | None = Field(default=None)
    to_state: AllocationState
    start_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    percentage: int
    version: int
    actor: str
    reason: str | None = Field(default=None)
    recorded_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class LedgerMeta(SQLModel, table=True):
    """Key/value metadata about the ledger store itself."""

    __tablename__ = "ledger_meta"
    __table_args__ = {"extend_existing": True}

    key: str = Field(primary_key=True)
    value: str


class ResourceCapacity(SQLModel, table=True):
    """One row per resource, written first by every capacity-committing change.

    Writing the row takes the resource's write lock for the rest of the
    transaction, so engines sharing a ledger check and commit one at a time.
    ``capacity_version`` counts those committing changes.
    """

    __tablename__ = "resource_capacity"
    __table_args__ = {"extend_existing": True}

    resource_id: str = Field(primary_key=True)
    capacity_version: int = Field(default=0)
