"""Allocation engine: the public operations over ledger, index and detector.

Concurrency model:
- Every operation that changes a record runs inside the exclusive lock of
  its resource, so the read-check-write sequence over ledger and capacity
  index is atomic per resource. Unrelated resources never wait on each other.
- Catalog lookups happen before the lock is taken and events are published
  after it is released; the lock is never held across either.
- Callers may pass ``expected_version`` to detect stale reads. The ledger
  additionally makes every update conditional on the version read under the
  lock, which catches writers in other processes.
- The capacity index is only touched after the ledger transaction commits, so
  a failed operation leaves both exactly as they were.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any

from ralloc.capacity_index import CapacityIndex
from ralloc.catalog import CachedCatalog, ProjectDemand, Resource
from ralloc.db.models import AllocationRecord, AllocationState, AllocationTransition
from ralloc.detector import (
    Commitment,
    DetectionMode,
    detect,
    select_for_mode,
    sweep,
)
from ralloc.errors import (
    AllocationError,
    ConflictError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from ralloc.events import AllocationEvent, EventPublisher, EventType
from ralloc.ledger import AllocationLedger
from ralloc.logging import get_logger, operation_context
from ralloc.metrics import record_conflict, record_transition
from ralloc.timeutil import to_utc, utc_now
from ralloc.workflow import (
    COMMITTED_STATES,
    Transition,
    apply_transition,
    check_amendable,
    check_transition,
)

logger = get_logger(__name__)

MIN_PERCENTAGE = 1
MAX_PERCENTAGE = 100


@dataclass(frozen=True)
class Availability:
    """Read-only capacity view of one resource over a span."""

    resource: Resource
    start: datetime
    end: datetime
    peak_committed: int
    peak_start: datetime
    peak_end: datetime
    catalog_stale: bool

    @property
    def available(self) -> int:
        return max(0, self.resource.base_capacity - self.peak_committed)


@dataclass(frozen=True)
class Candidate:
    """A resource able to take a project demand without overcommitting."""

    resource: Resource
    peak_committed: int

    @property
    def headroom(self) -> int:
        return self.resource.base_capacity - self.peak_committed


@dataclass(frozen=True)
class DemandPlan:
    """Tentative placement of one demand. ``resource`` is None when nothing fits."""

    demand: ProjectDemand
    resource: Resource | None = None
    peak_committed: int = 0

    @property
    def matched(self) -> bool:
        return self.resource is not None


@dataclass(frozen=True)
class AdvanceReport:
    """Outcome of one time-driven activate/complete sweep."""

    activated: tuple[str, ...] = ()
    completed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()


class ResourceLocks:
    """One lazily created ``asyncio.Lock`` per resource id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = self._locks[resource_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


@contextmanager
def _observe(operation: str, **context: Any) -> Iterator[None]:
    """Time and count ``operation``; ``context`` is bound into its log entries."""
    start = time.perf_counter()
    with operation_context(operation, **context):
        try:
            yield
        except AllocationError as exc:
            record_transition(operation, exc.code, time.perf_counter() - start)
            raise
    record_transition(operation, "ok", time.perf_counter() - start)


def validate_window(start: datetime, end: datetime, percentage: int) -> tuple[datetime, datetime]:
    """Normalise and check a candidate interval and percentage.

    Raises:
        ValidationError: ``start >= end`` or percentage outside 1..100.
    """
    start, end = to_utc(start), to_utc(end)
    if start >= end:
        raise ValidationError(f"start {start.isoformat()} must be before end {end.isoformat()}")
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise ValidationError(f"percentage must be an integer, got {percentage!r}")
    if not MIN_PERCENTAGE <= percentage <= MAX_PERCENTAGE:
        raise ValidationError(
            f"percentage must be between {MIN_PERCENTAGE} and {MAX_PERCENTAGE}, got {percentage}"
        )
    return start, end


class AllocationEngine:
    """Orchestrates propose/approve/reject/amend/cancel/activate/complete and queries."""

    def __init__(
        self,
        ledger: AllocationLedger,
        catalog: CachedCatalog,
        index: CapacityIndex,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = utc_now,
        use_index_precheck: bool = True,
    ) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self.index = index
        self.publisher = publisher
        self._clock = clock
        self.use_index_precheck = use_index_precheck
        self.locks = ResourceLocks()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return to_utc(self._clock())

    async def _require_resource(self, resource_id: str) -> Resource:
        resource = await self.catalog.get_resource(resource_id)
        if resource is None:
            raise ValidationError(f"unknown resource {resource_id}")
        if not resource.active:
            raise ValidationError(f"resource {resource_id} is inactive")
        return resource

    async def _require_record(self, allocation_id: str) -> AllocationRecord:
        record = await self.ledger.get(allocation_id)
        if record is None:
            raise NotFoundError(f"allocation {allocation_id} not found")
        return record

    @staticmethod
    def _check_expected(record: AllocationRecord, expected_version: int | None) -> None:
        if expected_version is not None and record.version != expected_version:
            raise StaleVersionError(record.id, expected_version, record.version)

    def _check_committed(
        self,
        resource: Resource,
        candidate: Commitment,
        committed: list[AllocationRecord],
    ) -> None:
        """Hard check of ``candidate`` against APPROVED/ACTIVE records read by the ledger."""
        conflict = detect(
            resource.id,
            resource.base_capacity,
            candidate,
            select_for_mode(committed, DetectionMode.HARD, exclude_id=candidate.allocation_id),
        )
        if conflict is None:
            return
        record_conflict(DetectionMode.HARD.value)
        logger.info(
            "allocation_conflict",
            allocation_id=candidate.allocation_id,
            resource_id=resource.id,
            peak_percentage=conflict.peak_percentage,
            overcommit=conflict.overcommit,
            overlapping=[c.allocation_id for c in conflict.overlapping],
        )
        raise ConflictError(conflict)

    async def _write_committed(
        self,
        resource: Resource,
        record: AllocationRecord,
        expected_version: int,
        from_state: AllocationState,
        actor: str,
        reason: str | None = None,
    ) -> None:
        """Persist a change that leaves ``record`` committed, checking capacity atomically.

        The check runs inside the ledger transaction that holds the resource's
        write lock. When the index bound already proves the window fits, the
        ledger skips the read but still takes the lock.
        """
        candidate = Commitment.from_record(record)
        states: frozenset[AllocationState] | None = COMMITTED_STATES
        if self.use_index_precheck:
            bound = self.index.range_max(resource.id, candidate.start, candidate.end)
            if bound + candidate.percentage <= resource.base_capacity:
                states = None
        await self.ledger.update_checked(
            record,
            expected_version,
            from_state,
            actor,
            reason,
            states=states,
            check=partial(self._check_committed, resource, candidate),
        )

    async def _soft_warnings(self, resource: Resource, candidate: Commitment) -> list[dict[str, Any]]:
        records = await self.ledger.list_records(
            resource_id=resource.id,
            states=DetectionMode.SOFT.states,
            start=candidate.start,
            end=candidate.end,
        )
        conflict = detect(
            resource.id,
            resource.base_capacity,
            candidate,
            select_for_mode(records, DetectionMode.SOFT, exclude_id=candidate.allocation_id),
        )
        if conflict is None:
            return []
        record_conflict(DetectionMode.SOFT.value)
        logger.info(
            "allocation_soft_conflict",
            allocation_id=candidate.allocation_id,
            resource_id=resource.id,
            peak_percentage=conflict.peak_percentage,
        )
        return [conflict.to_dict()]

    def _event(
        self,
        record: AllocationRecord,
        event_type: EventType,
        actor: str,
        prior_state: AllocationState | None = None,
        reversal: bool = False,
    ) -> AllocationEvent:
        return AllocationEvent(
            event_type=event_type,
            allocation_id=record.id,
            resource_id=record.resource_id,
            project_id=record.project_id,
            timestamp=record.updated_at,
            actor=actor,
            state=record.state,
            prior_state=prior_state,
            reversal=reversal,
            version=record.version,
        )

    async def _emit(self, event: AllocationEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception as exc:
            # The ledger is already committed; delivery is the publisher's problem
            logger.error(
                "event_publish_failed",
                event_type=event.event_type.value,
                allocation_id=event.allocation_id,
                error=str(exc),
            )

    async def _commit_transition(
        self,
        record: AllocationRecord,
        target: AllocationState,
        actor: str,
        reason: str | None = None,
    ) -> Transition:
        """Apply, persist and index one state change. Caller holds the resource lock."""
        prior_version = record.version
        transition = apply_transition(record, target, actor, self._now())
        if reason is not None:
            record.note = reason
        await self.ledger.update(record, prior_version, transition.from_state, actor, reason)
        self.index.apply(record)
        return transition

    async def _simple_transition(
        self,
        allocation_id: str,
        target: AllocationState,
        event_type: EventType,
        actor: str,
        expected_version: int | None,
        reason: str | None = None,
    ) -> AllocationRecord:
        record = await self._require_record(allocation_id)
        self._check_expected(record, expected_version)
        check_transition(record, target)

        async with self.locks(record.resource_id):
            record = await self._require_record(allocation_id)
            self._check_expected(record, expected_version)
            transition = await self._commit_transition(record, target, actor, reason)

        logger.info(
            "allocation_transitioned",
            allocation_id=record.id,
            resource_id=record.resource_id,
            from_state=transition.from_state.value,
            to_state=transition.to_state.value,
            actor=actor,
            reversal=transition.is_reversal,
        )
        await self._emit(
            self._event(
                record,
                event_type,
                actor,
                prior_state=transition.from_state,
                reversal=transition.is_reversal,
            )
        )
        return record

    # ------------------------------------------------------------------
    # Committing operations
    # ------------------------------------------------------------------

    async def propose(
        self,
        resource_id: str,
        project_id: str,
        start: datetime,
        end: datetime,
        percentage: int,
        requested_by: str,
    ) -> AllocationRecord:
        """Create a PENDING allocation, with soft-mode warnings attached.

        Raises:
            ValidationError: bad window/percentage, unknown or inactive resource.
            CatalogUnavailableError: the catalog cannot confirm the resource.
        """
        with _observe("propose", resource_id=resource_id, actor=requested_by):
            start, end = validate_window(start, end, percentage)
            resource = await self._require_resource(resource_id)
            now = self._now()
            record = AllocationRecord(
                resource_id=resource_id,
                project_id=project_id,
                start_at=start,
                end_at=end,
                percentage=percentage,
                state=AllocationState.PENDING,
                created_by=requested_by,
                created_at=now,
                updated_by=requested_by,
                updated_at=now,
            )
            record.warnings = await self._soft_warnings(resource, Commitment.from_record(record))
            record = await self.ledger.insert(record, requested_by)

        logger.info(
            "allocation_proposed",
            allocation_id=record.id,
            resource_id=resource_id,
            project_id=project_id,
            percentage=percentage,
            warnings=len(record.warnings),
        )
        await self._emit(self._event(record, EventType.PROPOSED, requested_by))
        return record

    async def approve(
        self,
        allocation_id: str,
        approved_by: str,
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """PENDING -> APPROVED after a hard check against APPROVED/ACTIVE records.

        Raises:
            ConflictError: approving would overcommit the resource.
            InvalidTransitionError: the record is not PENDING.
            StaleVersionError: ``expected_version`` no longer matches.
        """
        with _observe("approve", allocation_id=allocation_id, actor=approved_by):
            record = await self._require_record(allocation_id)
            self._check_expected(record, expected_version)
            check_transition(record, AllocationState.APPROVED)
            resource = await self._require_resource(record.resource_id)

            async with self.locks(record.resource_id):
                record = await self._require_record(allocation_id)
                self._check_expected(record, expected_version)
                prior_version = record.version
                transition = apply_transition(
                    record, AllocationState.APPROVED, approved_by, self._now()
                )
                await self._write_committed(
                    resource, record, prior_version, transition.from_state, approved_by
                )
                self.index.apply(record)

        logger.info(
            "allocation_approved",
            allocation_id=record.id,
            resource_id=record.resource_id,
            percentage=record.percentage,
            actor=approved_by,
        )
        await self._emit(
            self._event(record, EventType.APPROVED, approved_by, transition.from_state)
        )
        return record

    async def reject(
        self,
        allocation_id: str,
        reason: str,
        rejected_by: str = "system",
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """PENDING -> REJECTED. No capacity effect."""
        with _observe("reject", allocation_id=allocation_id, actor=rejected_by):
            return await self._simple_transition(
                allocation_id,
                AllocationState.REJECTED,
                EventType.REJECTED,
                rejected_by,
                expected_version,
                reason=reason,
            )

    async def amend(
        self,
        allocation_id: str,
        new_start: datetime,
        new_end: datetime,
        new_percentage: int,
        amended_by: str = "system",
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """Replace the window/percentage of a PENDING or APPROVED record.

        Release of the old commitment and check of the new one happen under a
        single lock acquisition and, for an APPROVED record, inside one ledger
        transaction that hard-checks the new window against everything except
        the record itself. On failure nothing changes.
        """
        with _observe("amend", allocation_id=allocation_id, actor=amended_by):
            new_start, new_end = validate_window(new_start, new_end, new_percentage)
            record = await self._require_record(allocation_id)
            self._check_expected(record, expected_version)
            check_amendable(record)
            resource = await self._require_resource(record.resource_id)

            async with self.locks(record.resource_id):
                record = await self._require_record(allocation_id)
                self._check_expected(record, expected_version)
                check_amendable(record)

                committed = record.state in COMMITTED_STATES
                warnings: list[dict[str, Any]] = []
                if not committed:
                    candidate = Commitment(
                        allocation_id=record.id,
                        start=new_start,
                        end=new_end,
                        percentage=new_percentage,
                        project_id=record.project_id,
                        state=record.state,
                    )
                    warnings = await self._soft_warnings(resource, candidate)

                prior_version = record.version
                record.start_at = new_start
                record.end_at = new_end
                record.percentage = new_percentage
                record.warnings = warnings
                record.updated_by = amended_by
                record.updated_at = self._now()
                record.version += 1
                if committed:
                    await self._write_committed(
                        resource, record, prior_version, record.state, amended_by, "amended"
                    )
                else:
                    await self.ledger.update(
                        record, prior_version, record.state, amended_by, reason="amended"
                    )
                self.index.apply(record)

        logger.info(
            "allocation_amended",
            allocation_id=record.id,
            resource_id=record.resource_id,
            state=record.state.value,
            percentage=new_percentage,
            actor=amended_by,
        )
        await self._emit(self._event(record, EventType.AMENDED, amended_by, record.state))
        return record

    async def cancel(
        self,
        allocation_id: str,
        cancelled_by: str = "system",
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """APPROVED/ACTIVE -> CANCELLED, releasing the commitment.

        Cancelling an ACTIVE record is published with ``reversal=True``.
        """
        with _observe("cancel", allocation_id=allocation_id, actor=cancelled_by):
            return await self._simple_transition(
                allocation_id,
                AllocationState.CANCELLED,
                EventType.CANCELLED,
                cancelled_by,
                expected_version,
                reason=reason,
            )

    async def activate(
        self,
        allocation_id: str,
        actor: str = "system",
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """APPROVED -> ACTIVE."""
        with _observe("activate", allocation_id=allocation_id, actor=actor):
            return await self._simple_transition(
                allocation_id,
                AllocationState.ACTIVE,
                EventType.ACTIVATED,
                actor,
                expected_version,
            )

    async def complete(
        self,
        allocation_id: str,
        actor: str = "system",
        expected_version: int | None = None,
    ) -> AllocationRecord:
        """ACTIVE -> COMPLETED. The record stays queryable but no longer counts."""
        with _observe("complete", allocation_id=allocation_id, actor=actor):
            return await self._simple_transition(
                allocation_id,
                AllocationState.COMPLETED,
                EventType.COMPLETED,
                actor,
                expected_version,
            )

    async def advance(self, now: datetime | None = None, actor: str = "scheduler") -> AdvanceReport:
        """Activate started APPROVED records and complete ended ACTIVE ones."""
        now = to_utc(now) if now is not None else self._now()
        activated: list[str] = []
        completed: list[str] = []
        skipped: list[str] = []

        for record in await self.ledger.due_for_advance(now):
            try:
                if record.state is AllocationState.APPROVED:
                    record = await self.activate(record.id, actor, expected_version=record.version)
                    activated.append(record.id)
                if record.end_at <= now:
                    await self.complete(record.id, actor, expected_version=record.version)
                    completed.append(record.id)
            except (StaleVersionError, NotFoundError) as exc:
                # Another writer moved the record first; the next sweep sees its new state
                logger.info("advance_skipped", allocation_id=record.id, reason=exc.code)
                skipped.append(record.id)

        if activated or completed:
            logger.info(
                "allocations_advanced",
                activated=len(activated),
                completed=len(completed),
                skipped=len(skipped),
            )
        return AdvanceReport(tuple(activated), tuple(completed), tuple(skipped))

    # ------------------------------------------------------------------
    # Demands
    # ------------------------------------------------------------------

    async def propose_for_demand(
        self,
        demand: ProjectDemand,
        resource_id: str,
        requested_by: str,
    ) -> AllocationRecord:
        """Propose ``resource_id`` for a project demand of a matching category."""
        resource = await self._require_resource(resource_id)
        if resource.category != demand.category:
            raise ValidationError(
                f"resource {resource_id} is {resource.category!r}, "
                f"demand {demand.id} needs {demand.category!r}"
            )
        return await self.propose(
            resource_id,
            demand.id,
            demand.start,
            demand.end,
            demand.percentage,
            requested_by,
        )

    async def find_candidates(self, demand: ProjectDemand) -> list[Candidate]:
        """Active resources of the demand's category with room for it.

        Ordered by headroom (largest first), then resource id.
        """
        validate_window(demand.start, demand.end, demand.percentage)
        return await self._candidates(demand, {})

    async def plan_demands(self, demands: list[ProjectDemand]) -> list[DemandPlan]:
        """Place competing demands on resources, highest priority first.

        Demands are taken by descending ``priority``, then start, then id. Each
        one goes to its best candidate, and that placement counts against the
        resource for every demand planned after it. Nothing is written: the
        plan is advice for a later ``propose_for_demand``.
        """
        for demand in demands:
            validate_window(demand.start, demand.end, demand.percentage)

        tentative: dict[str, list[Commitment]] = {}
        plans: list[DemandPlan] = []
        for demand in sorted(demands, key=lambda d: (-d.priority, d.start, d.id)):
            found = await self._candidates(demand, tentative)
            if not found:
                logger.info("demand_unplaced", demand_id=demand.id, priority=demand.priority)
                plans.append(DemandPlan(demand))
                continue
            best = found[0]
            tentative.setdefault(best.resource.id, []).append(
                Commitment(
                    allocation_id=f"plan:{demand.id}",
                    start=demand.start,
                    end=demand.end,
                    percentage=demand.percentage,
                    project_id=demand.id,
                )
            )
            plans.append(DemandPlan(demand, best.resource, best.peak_committed))
        logger.info(
            "demands_planned",
            demands=len(plans),
            placed=sum(1 for p in plans if p.matched),
        )
        return plans

    async def _candidates(
        self,
        demand: ProjectDemand,
        tentative: dict[str, list[Commitment]],
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        for resource in await self.catalog.list_resources(demand.category):
            if not resource.active:
                continue
            records = await self.ledger.list_records(
                resource_id=resource.id,
                states=COMMITTED_STATES,
                start=demand.start,
                end=demand.end,
            )
            commitments = select_for_mode(records, DetectionMode.HARD)
            commitments.extend(tentative.get(resource.id, ()))
            peak = sweep(demand.start, demand.end, commitments).peak
            if peak + demand.percentage <= resource.base_capacity:
                candidates.append(Candidate(resource=resource, peak_committed=peak))
        candidates.sort(key=lambda c: (-c.headroom, c.resource.id))
        return candidates

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, allocation_id: str) -> AllocationRecord:
        return await self._require_record(allocation_id)

    async def history(self, allocation_id: str) -> list[AllocationTransition]:
        """Audit trail of one record: actor, timestamp and prior state per change."""
        rows = await self.ledger.history(allocation_id)
        if not rows:
            raise NotFoundError(f"allocation {allocation_id} not found")
        return rows

    async def ledger_version(self) -> int:
        return await self.ledger.current_version()

    async def query(
        self,
        resource_id: str | None = None,
        project_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        as_of: int | None = None,
    ) -> list[AllocationRecord]:
        """Records of a resource or project overlapping ``[start, end)``.

        ``as_of`` pins the answer to a ledger snapshot version; ``None`` reads
        the latest state.
        """
        _, records = await self.query_with_version(resource_id, project_id, start, end, as_of)
        return records

    async def query_with_version(
        self,
        resource_id: str | None = None,
        project_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        as_of: int | None = None,
    ) -> tuple[int, list[AllocationRecord]]:
        """Like ``query``, plus the snapshot version the records reflect."""
        if resource_id is None and project_id is None:
            raise ValidationError("query needs a resource_id or a project_id")
        start = to_utc(start) if start is not None else None
        end = to_utc(end) if end is not None else None
        if start is not None and end is not None and start >= end:
            raise ValidationError("query window start must be before its end")

        if as_of is None:
            return await self.ledger.snapshot(
                resource_id=resource_id, project_id=project_id, start=start, end=end
            )

        if as_of < 0 or as_of > await self.ledger.current_version():
            raise ValidationError(f"unknown ledger snapshot version {as_of}")
        records = await self.ledger.records_as_of(as_of, resource_id, project_id)
        return as_of, [
            r
            for r in records
            if (end is None or r.start_at < end) and (start is None or r.end_at > start)
        ]

    async def availability(self, resource_id: str, start: datetime, end: datetime) -> Availability:
        """Committed peak and headroom of a resource over ``[start, end)``.

        Served from the last-known catalog snapshot (flagged stale) when the
        catalog is unreachable.
        """
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise ValidationError("availability window start must be before its end")
        resource, stale = await self.catalog.lookup(resource_id)
        if resource is None:
            raise ValidationError(f"unknown resource {resource_id}")

        records = await self.ledger.list_records(
            resource_id=resource_id, states=COMMITTED_STATES, start=start, end=end
        )
        result = sweep(start, end, select_for_mode(records, DetectionMode.HARD))
        return Availability(
            resource=resource,
            start=start,
            end=end,
            peak_committed=result.peak,
            peak_start=result.peak_start,
            peak_end=result.peak_end,
            catalog_stale=stale,
        )

    async def refresh_catalog(self, resource_id: str | None = None) -> int:
        """Reload the catalog snapshot, or one resource of it.

        Raises:
            CatalogUnavailableError: the source could not be reached; the
                previous snapshot stays in place.
        """
        with _observe("refresh_catalog", resource_id=resource_id):
            return await self.catalog.refresh(resource_id)

    async def rebuild_index(self) -> int:
        """Rebuild the capacity index from the ledger."""
        self.index.begin_rebuild()
        records = await self.ledger.list_records(states=COMMITTED_STATES)
        return self.index.rebuild(records)
