"""Conflict detection by boundary sweep.

Commitment on a resource is piecewise constant between interval boundaries,
so the peak over a candidate's span is found by visiting only the start/end
points of the records that overlap it. All intervals are half-open
``[start, end)``: back-to-back bookings never overlap.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ralloc.db.models import AllocationRecord, AllocationState
from ralloc.workflow import COMMITTED_STATES, SOFT_STATES


class DetectionMode(str, Enum):
    """Which records a check counts, and whether a violation is fatal."""

    SOFT = "soft"
    HARD = "hard"

    @property
    def states(self) -> frozenset[AllocationState]:
        return SOFT_STATES if self is DetectionMode.SOFT else COMMITTED_STATES


@dataclass(frozen=True)
class Commitment:
    """The capacity-relevant part of an allocation."""

    allocation_id: str
    start: datetime
    end: datetime
    percentage: int
    project_id: str | None = None
    state: AllocationState | None = None

    @classmethod
    def from_record(cls, record: AllocationRecord) -> Commitment:
        return cls(
            allocation_id=record.id,
            start=record.start_at,
            end=record.end_at,
            percentage=record.percentage,
            project_id=record.project_id,
            state=record.state,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "project_id": self.project_id,
            "state": self.state.value if self.state else None,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class Conflict:
    """A capacity violation found for a candidate commitment."""

    resource_id: str
    base_capacity: int
    peak_percentage: int
    violating_start: datetime
    violating_end: datetime
    overlapping: tuple[Commitment, ...] = field(default_factory=tuple)

    @property
    def overcommit(self) -> int:
        return self.peak_percentage - self.base_capacity

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "base_capacity": self.base_capacity,
            "peak_percentage": self.peak_percentage,
            "overcommit": self.overcommit,
            "violating_interval": {
                "start": self.violating_start.isoformat(),
                "end": self.violating_end.isoformat(),
            },
            "overlapping": [c.to_dict() for c in self.overlapping],
        }


@dataclass(frozen=True)
class SweepResult:
    """Peak load over a span and the first segment where it occurs."""

    peak: int
    peak_start: datetime
    peak_end: datetime


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap."""
    return a_start < b_end and b_start < a_end


def find_overlapping(
    start: datetime,
    end: datetime,
    existing: Iterable[Commitment],
) -> list[Commitment]:
    return [c for c in existing if overlaps(start, end, c.start, c.end)]


def sweep(start: datetime, end: datetime, commitments: Iterable[Commitment]) -> SweepResult:
    """Peak cumulative percentage inside ``[start, end)``.

    Every commitment is clipped to the span. Deltas at the same instant are
    applied together, so an end and a start on the same boundary never stack.
    """
    deltas: dict[datetime, int] = defaultdict(int)
    deltas.setdefault(start, 0)
    for c in commitments:
        lo = max(c.start, start)
        hi = min(c.end, end)
        if lo >= hi:
            continue
        deltas[lo] += c.percentage
        deltas[hi] -= c.percentage

    points = sorted(deltas)
    load = 0
    best = SweepResult(peak=0, peak_start=start, peak_end=end)
    for i, point in enumerate(points):
        if point >= end:
            break
        load += deltas[point]
        segment_end = points[i + 1] if i + 1 < len(points) else end
        if load > best.peak:
            best = SweepResult(peak=load, peak_start=point, peak_end=segment_end)
    return best


def detect(
    resource_id: str,
    base_capacity: int,
    candidate: Commitment,
    existing: Iterable[Commitment],
) -> Conflict | None:
    """Check ``candidate`` against ``existing`` commitments of one resource.

    ``existing`` must already be filtered to the states of the detection mode
    and must not contain the candidate itself. Returns ``None`` when the peak
    stays within ``base_capacity``.
    """
    overlapping = find_overlapping(
        candidate.start,
        candidate.end,
        (c for c in existing if c.allocation_id != candidate.allocation_id),
    )
    result = sweep(candidate.start, candidate.end, [*overlapping, candidate])
    if result.peak <= base_capacity:
        return None

    culprits = tuple(
        sorted(
            (
                c
                for c in overlapping
                if overlaps(result.peak_start, result.peak_end, c.start, c.end)
            ),
            key=lambda c: (c.start, c.allocation_id),
        )
    )
    return Conflict(
        resource_id=resource_id,
        base_capacity=base_capacity,
        peak_percentage=result.peak,
        violating_start=result.peak_start,
        violating_end=result.peak_end,
        overlapping=culprits,
    )


def select_for_mode(
    records: Iterable[AllocationRecord],
    mode: DetectionMode,
    exclude_id: str | None = None,
) -> list[Commitment]:
    """Commitments counted by ``mode``, leaving out the record being re-checked."""
    states = mode.states
    return [
        Commitment.from_record(r)
        for r in records
        if r.state in states and r.id != exclude_id
    ]
