"""Allocation ledger: the durable store of allocation records.

Every write goes through one database transaction that changes the
``allocations`` row and appends one ``allocation_transitions`` row. Updates
are conditional on the version the caller read (``UPDATE ... WHERE version =
:expected``), so replicas sharing one ledger cannot overwrite each other.

Changes that commit capacity go through ``update_checked``: it writes the
resource's ``resource_capacity`` row first, which holds the resource's write
lock until commit, then reads the committed records and runs the caller's
capacity check inside the same transaction. Two replicas approving different
records on one resource therefore check and commit strictly one after the
other.

Records handed out are detached from their session and carry UTC-aware
instants.
"""

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from sqlalchemy import Select, and_, func, or_, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from ralloc.db.engine import session_scope
from ralloc.db.models import (
    AllocationRecord,
    AllocationState,
    AllocationTransition,
    ResourceCapacity,
)
from ralloc.errors import StaleVersionError
from ralloc.logging import get_logger
from ralloc.timeutil import to_utc

logger = get_logger(__name__)

# Attempts at reading rows and snapshot version without a write landing in between
SNAPSHOT_READ_ATTEMPTS = 5

_MUTABLE_FIELDS = (
    "start_at",
    "end_at",
    "percentage",
    "state",
    "updated_by",
    "updated_at",
    "version",
    "warnings",
    "note",
)

# States whose journal reason is carried onto the record as its note
_NOTED_STATES = frozenset({AllocationState.REJECTED, AllocationState.CANCELLED})


def _normalise(record: AllocationRecord) -> AllocationRecord:
    record.start_at = to_utc(record.start_at)
    record.end_at = to_utc(record.end_at)
    record.created_at = to_utc(record.created_at)
    record.updated_at = to_utc(record.updated_at)
    return record


def _normalise_transition(row: AllocationTransition) -> AllocationTransition:
    row.start_at = to_utc(row.start_at)
    row.end_at = to_utc(row.end_at)
    row.recorded_at = to_utc(row.recorded_at)
    return row


def _journal_row(
    record: AllocationRecord,
    from_state: AllocationState | None,
    actor: str,
    reason: str | None,
) -> AllocationTransition:
    return AllocationTransition(
        allocation_id=record.id,
        resource_id=record.resource_id,
        project_id=record.project_id,
        from_state=from_state,
        to_state=record.state,
        start_at=record.start_at,
        end_at=record.end_at,
        percentage=record.percentage,
        version=record.version,
        actor=actor,
        reason=reason,
        recorded_at=record.updated_at,
    )


def _records_query(
    resource_id: str | None = None,
    project_id: str | None = None,
    states: Iterable[AllocationState] | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    exclude_id: str | None = None,
) -> Select:
    query = select(AllocationRecord)
    if resource_id is not None:
        query = query.where(AllocationRecord.resource_id == resource_id)
    if project_id is not None:
        query = query.where(AllocationRecord.project_id == project_id)
    if states is not None:
        query = query.where(AllocationRecord.state.in_(list(states)))
    if end is not None:
        query = query.where(AllocationRecord.start_at < end)
    if start is not None:
        query = query.where(AllocationRecord.end_at > start)
    if exclude_id is not None:
        query = query.where(AllocationRecord.id != exclude_id)
    return query.order_by(AllocationRecord.start_at, AllocationRecord.id)


class AllocationLedger:
    """Persistence adapter over an async SQLModel session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(
        self,
        record: AllocationRecord,
        actor: str,
        reason: str | None = None,
    ) -> AllocationRecord:
        """Persist a new record together with its creation journal row."""
        async with session_scope(self._session_factory) as session:
            session.add(record)
            session.add(_journal_row(record, None, actor, reason))
        return _normalise(record)

    async def update(
        self,
        record: AllocationRecord,
        expected_version: int,
        from_state: AllocationState,
        actor: str,
        reason: str | None = None,
    ) -> AllocationRecord:
        """Write ``record`` back if the stored version is still ``expected_version``.

        Raises:
            StaleVersionError: another writer changed the row first.
        """
        async with session_scope(self._session_factory) as session:
            await self._write(session, record, expected_version, from_state, actor, reason)
        return record

    async def update_checked(
        self,
        record: AllocationRecord,
        expected_version: int,
        from_state: AllocationState,
        actor: str,
        reason: str | None = None,
        *,
        states: Iterable[AllocationState] | None,
        check: Callable[[list[AllocationRecord]], None],
    ) -> AllocationRecord:
        """Conditional update under the resource's write lock, after a capacity check.

        ``check`` receives the other records of the resource in ``states``
        that overlap ``record``'s window, read inside the locked transaction,
        and raises to abort. ``states=None`` skips the read (the caller has
        already proven the write safe) but still takes the lock.

        Raises:
            StaleVersionError: another writer changed the row first.
            Whatever ``check`` raises; nothing is written in that case.
        """
        async with session_scope(self._session_factory) as session:
            await self._lock_resource(session, record.resource_id)
            committed: list[AllocationRecord] = []
            if states is not None:
                result = await session.execute(
                    _records_query(
                        resource_id=record.resource_id,
                        states=states,
                        start=record.start_at,
                        end=record.end_at,
                        exclude_id=record.id,
                    )
                )
                committed = list(result.scalars().all())
                for row in committed:
                    session.expunge(row)
            check([_normalise(r) for r in committed])
            await self._write(session, record, expected_version, from_state, actor, reason)
        return record

    async def _lock_resource(self, session: AsyncSession, resource_id: str) -> None:
        """Write the resource's capacity row; the write lock is held until commit."""
        await session.execute(
            sqlite_insert(ResourceCapacity)
            .values(resource_id=resource_id, capacity_version=0)
            .on_conflict_do_nothing(index_elements=["resource_id"])
        )
        await session.execute(
            update(ResourceCapacity)
            .where(ResourceCapacity.resource_id == resource_id)
            .values(capacity_version=ResourceCapacity.capacity_version + 1)
            .execution_options(synchronize_session=False)
        )

    async def _write(
        self,
        session: AsyncSession,
        record: AllocationRecord,
        expected_version: int,
        from_state: AllocationState,
        actor: str,
        reason: str | None,
    ) -> None:
        statement = (
            update(AllocationRecord)
            .where(AllocationRecord.id == record.id)
            .where(AllocationRecord.version == expected_version)
            .values({name: getattr(record, name) for name in _MUTABLE_FIELDS})
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(statement)
        if result.rowcount != 1:
            current = await session.execute(
                select(AllocationRecord.version).where(AllocationRecord.id == record.id)
            )
            raise StaleVersionError(record.id, expected_version, current.scalar_one_or_none())
        session.add(_journal_row(record, from_state, actor, reason))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, allocation_id: str) -> AllocationRecord | None:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(AllocationRecord).where(AllocationRecord.id == allocation_id)
            )
            record = result.scalar_one_or_none()
        return _normalise(record) if record is not None else None

    async def list_records(
        self,
        resource_id: str | None = None,
        project_id: str | None = None,
        states: Iterable[AllocationState] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AllocationRecord]:
        """Records matching every given filter, ordered by start then id.

        ``start``/``end`` select records whose interval overlaps ``[start, end)``.
        """
        query = _records_query(resource_id, project_id, states, start, end)
        async with session_scope(self._session_factory) as session:
            records = await self._fetch_records(session, query)
        return [_normalise(r) for r in records]

    async def snapshot(
        self,
        resource_id: str | None = None,
        project_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[int, list[AllocationRecord]]:
        """Latest records together with the snapshot version they reflect.

        The version is read before and after the rows; every write bumps it,
        so equal readings mean no write landed in between. Otherwise the read
        is retried, and after ``SNAPSHOT_READ_ATTEMPTS`` the records are
        rebuilt from the journal at the last version seen.
        """
        query = _records_query(resource_id, project_id, None, start, end)
        version = 0
        consistent: list[AllocationRecord] | None = None
        async with session_scope(self._session_factory) as session:
            for attempt in range(1, SNAPSHOT_READ_ATTEMPTS + 1):
                version = await self._max_seq(session)
                records = await self._fetch_records(session, query)
                if await self._max_seq(session) == version:
                    consistent = records
                    break
                logger.debug("ledger_snapshot_retry", attempt=attempt, version=version)
            session.expunge_all()
        if consistent is not None:
            return version, [_normalise(r) for r in consistent]

        records = await self.records_as_of(version, resource_id, project_id)
        return version, [
            r
            for r in records
            if (end is None or r.start_at < end) and (start is None or r.end_at > start)
        ]

    async def _fetch_records(self, session: AsyncSession, query: Select) -> list[AllocationRecord]:
        # populate_existing: a retried read must not reuse rows loaded by the first pass
        result = await session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def due_for_advance(self, now: datetime) -> list[AllocationRecord]:
        """APPROVED records that have started and ACTIVE records that have ended."""
        query = (
            select(AllocationRecord)
            .where(
                or_(
                    and_(
                        AllocationRecord.state == AllocationState.APPROVED,
                        AllocationRecord.start_at <= now,
                    ),
                    and_(
                        AllocationRecord.state == AllocationState.ACTIVE,
                        AllocationRecord.end_at <= now,
                    ),
                )
            )
            .order_by(AllocationRecord.start_at, AllocationRecord.id)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(query)
            records = result.scalars().all()
        return [_normalise(r) for r in records]

    async def history(self, allocation_id: str) -> list[AllocationTransition]:
        """Journal rows for one record, oldest first."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(AllocationTransition)
                .where(AllocationTransition.allocation_id == allocation_id)
                .order_by(AllocationTransition.seq)
            )
            rows = result.scalars().all()
        return [_normalise_transition(r) for r in rows]

    async def current_version(self) -> int:
        """Ledger snapshot version: the highest journal sequence number."""
        async with session_scope(self._session_factory) as session:
            return await self._max_seq(session)

    async def _max_seq(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.max(AllocationTransition.seq)))
        return result.scalar_one_or_none() or 0

    async def capacity_version(self, resource_id: str) -> int:
        """Number of capacity-committing changes written for ``resource_id``."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(ResourceCapacity.capacity_version).where(
                    ResourceCapacity.resource_id == resource_id
                )
            )
            return result.scalar_one_or_none() or 0

    async def records_as_of(
        self,
        version: int,
        resource_id: str | None = None,
        project_id: str | None = None,
    ) -> list[AllocationRecord]:
        """Rebuild records as they stood at snapshot ``version`` from the journal."""
        query = select(AllocationTransition).where(AllocationTransition.seq <= version)
        if resource_id is not None:
            query = query.where(AllocationTransition.resource_id == resource_id)
        if project_id is not None:
            query = query.where(AllocationTransition.project_id == project_id)
        query = query.order_by(AllocationTransition.seq)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(query)
            rows: Sequence[AllocationTransition] = result.scalars().all()

        records: dict[str, AllocationRecord] = {}
        for row in map(_normalise_transition, rows):
            existing = records.get(row.allocation_id)
            records[row.allocation_id] = AllocationRecord(
                id=row.allocation_id,
                resource_id=row.resource_id,
                project_id=row.project_id,
                start_at=row.start_at,
                end_at=row.end_at,
                percentage=row.percentage,
                state=row.to_state,
                created_by=existing.created_by if existing else row.actor,
                created_at=existing.created_at if existing else row.recorded_at,
                updated_by=row.actor,
                updated_at=row.recorded_at,
                version=row.version,
                note=row.reason if row.to_state in _NOTED_STATES else None,
            )
        return sorted(records.values(), key=lambda r: (r.start_at, r.id))
