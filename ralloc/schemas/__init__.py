"""HTTP schemas for the allocation service."""

from ralloc.schemas.api import (
    ActorRequest,
    AllocationListResponse,
    AllocationResponse,
    AmendRequest,
    AvailabilityResponse,
    CancelRequest,
    CandidateListResponse,
    CandidateResponse,
    CatalogRefreshRequest,
    CatalogRefreshResponse,
    DemandPlanEntry,
    DemandPlanRequest,
    DemandPlanResponse,
    DemandProposeRequest,
    DemandRequest,
    HistoryResponse,
    LedgerVersionResponse,
    ProposeRequest,
    RebuildResponse,
    RejectRequest,
    TransitionResponse,
)

__all__ = [
    "ActorRequest",
    "AllocationListResponse",
    "AllocationResponse",
    "AmendRequest",
    "AvailabilityResponse",
    "CancelRequest",
    "CandidateListResponse",
    "CandidateResponse",
    "CatalogRefreshRequest",
    "CatalogRefreshResponse",
    "DemandPlanEntry",
    "DemandPlanRequest",
    "DemandPlanResponse",
    "DemandProposeRequest",
    "DemandRequest",
    "HistoryResponse",
    "LedgerVersionResponse",
    "ProposeRequest",
    "RebuildResponse",
    "RejectRequest",
    "TransitionResponse",
]
