"""Request and response schemas for the allocation HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ralloc.catalog import ProjectDemand
from ralloc.db.models import AllocationRecord, AllocationState, AllocationTransition
from ralloc.engine import Availability, Candidate, DemandPlan


class ProposeRequest(BaseModel):
    """Request to propose a new allocation."""

    resource_id: str = Field(..., description="Catalog id of the resource")
    project_id: str = Field(..., description="Project / statement of work id")
    start: datetime = Field(..., description="Inclusive start instant")
    end: datetime = Field(..., description="Exclusive end instant")
    percentage: int = Field(..., description="Share of base capacity, 1-100")
    requested_by: str = Field(..., description="Actor proposing the allocation")


class ActorRequest(BaseModel):
    """Common body of lifecycle transitions."""

    actor: str = Field(default="system", description="Who performs the transition")
    expected_version: int | None = Field(
        default=None,
        description="Version the caller last read; mismatch fails with 412",
    )


class RejectRequest(ActorRequest):
    reason: str = Field(..., description="Why the allocation is rejected")


class CancelRequest(ActorRequest):
    reason: str | None = Field(default=None, description="Why the allocation is cancelled")


class AmendRequest(ActorRequest):
    start: datetime
    end: datetime
    percentage: int


class AllocationResponse(BaseModel):
    """An allocation record as exposed to clients."""

    id: str
    resource_id: str
    project_id: str
    start: datetime
    end: datetime
    percentage: int
    state: AllocationState
    created_by: str
    created_at: datetime
    updated_by: str
    updated_at: datetime
    version: int
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    note: str | None = None

    @classmethod
    def from_record(cls, record: AllocationRecord) -> AllocationResponse:
        return cls(
            id=record.id,
            resource_id=record.resource_id,
            project_id=record.project_id,
            start=record.start_at,
            end=record.end_at,
            percentage=record.percentage,
            state=record.state,
            created_by=record.created_by,
            created_at=record.created_at,
            updated_by=record.updated_by,
            updated_at=record.updated_at,
            version=record.version,
            warnings=list(record.warnings or []),
            note=record.note,
        )


class AllocationListResponse(BaseModel):
    allocations: list[AllocationResponse]
    count: int
    snapshot_version: int


class TransitionResponse(BaseModel):
    """One journal row of an allocation's audit trail."""

    seq: int
    from_state: AllocationState | None
    to_state: AllocationState
    start: datetime
    end: datetime
    percentage: int
    version: int
    actor: str
    reason: str | None
    recorded_at: datetime

    @classmethod
    def from_row(cls, row: AllocationTransition) -> TransitionResponse:
        return cls(
            seq=row.seq,
            from_state=row.from_state,
            to_state=row.to_state,
            start=row.start_at,
            end=row.end_at,
            percentage=row.percentage,
            version=row.version,
            actor=row.actor,
            reason=row.reason,
            recorded_at=row.recorded_at,
        )


class HistoryResponse(BaseModel):
    allocation_id: str
    transitions: list[TransitionResponse]


class AvailabilityResponse(BaseModel):
    resource_id: str
    category: str
    base_capacity: int
    start: datetime
    end: datetime
    peak_committed: int
    peak_start: datetime
    peak_end: datetime
    available: int
    catalog_stale: bool

    @classmethod
    def from_availability(cls, view: Availability) -> AvailabilityResponse:
        return cls(
            resource_id=view.resource.id,
            category=view.resource.category,
            base_capacity=view.resource.base_capacity,
            start=view.start,
            end=view.end,
            peak_committed=view.peak_committed,
            peak_start=view.peak_start,
            peak_end=view.peak_end,
            available=view.available,
            catalog_stale=view.catalog_stale,
        )


class DemandRequest(BaseModel):
    """A project demand taken from a statement of work."""

    id: str
    category: str
    percentage: int
    start: datetime
    end: datetime
    priority: int = 0

    def to_demand(self) -> ProjectDemand:
        return ProjectDemand(
            id=self.id,
            category=self.category,
            percentage=self.percentage,
            start=self.start,
            end=self.end,
            priority=self.priority,
        )


class DemandProposeRequest(BaseModel):
    demand: DemandRequest
    resource_id: str
    requested_by: str


class CandidateResponse(BaseModel):
    resource_id: str
    base_capacity: int
    peak_committed: int
    headroom: int

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> CandidateResponse:
        return cls(
            resource_id=candidate.resource.id,
            base_capacity=candidate.resource.base_capacity,
            peak_committed=candidate.peak_committed,
            headroom=candidate.headroom,
        )


class CandidateListResponse(BaseModel):
    demand_id: str
    candidates: list[CandidateResponse]


class DemandPlanRequest(BaseModel):
    """Competing demands to place, highest ``priority`` first."""

    demands: list[DemandRequest] = Field(..., min_length=1)


class DemandPlanEntry(BaseModel):
    demand_id: str
    priority: int
    resource_id: str | None
    peak_committed: int

    @classmethod
    def from_plan(cls, plan: DemandPlan) -> DemandPlanEntry:
        return cls(
            demand_id=plan.demand.id,
            priority=plan.demand.priority,
            resource_id=plan.resource.id if plan.resource is not None else None,
            peak_committed=plan.peak_committed,
        )


class DemandPlanResponse(BaseModel):
    plans: list[DemandPlanEntry]
    unplaced: list[str]


class RebuildResponse(BaseModel):
    entries: int


class LedgerVersionResponse(BaseModel):
    version: int


class CatalogRefreshRequest(BaseModel):
    resource_id: str | None = Field(
        default=None, description="Reload only this resource; omit for the whole catalog"
    )


class CatalogRefreshResponse(BaseModel):
    resources: int
    snapshot_version: int
    refreshed_at: datetime | None
