"""Tests for the boundary-sweep conflict detector."""

from datetime import timedelta

from conftest import FRI, MON, THU, WED, at

from ralloc.db.models import AllocationRecord, AllocationState
from ralloc.detector import (
    Commitment,
    DetectionMode,
    detect,
    find_overlapping,
    overlaps,
    select_for_mode,
    sweep,
)


def commit(allocation_id, start, end, percentage):
    return Commitment(allocation_id=allocation_id, start=start, end=end, percentage=percentage)


def record(allocation_id, state, percentage=50):
    return AllocationRecord(
        id=allocation_id,
        resource_id="X",
        project_id="P",
        start_at=MON,
        end_at=FRI,
        percentage=percentage,
        state=state,
        created_by="t",
        updated_by="t",
    )


class TestOverlap:
    """Half-open interval overlap."""

    def test_touching_intervals_do_not_overlap(self):
        assert not overlaps(at(9), at(10), at(10), at(11))
        assert not overlaps(at(10), at(11), at(9), at(10))

    def test_partial_overlap(self):
        assert overlaps(at(9), at(10, 30), at(10), at(11))

    def test_containment_overlaps(self):
        assert overlaps(MON, FRI, WED, THU)
        assert overlaps(WED, THU, MON, FRI)

    def test_find_overlapping_filters(self):
        existing = [
            commit("a", at(8), at(9), 10),
            commit("b", at(9), at(12), 10),
            commit("c", at(12), at(13), 10),
        ]
        found = find_overlapping(at(10), at(12), existing)
        assert [c.allocation_id for c in found] == ["b"]


class TestSweep:
    """Peak load computation over boundary points."""

    def test_empty_span_has_zero_peak(self):
        result = sweep(MON, FRI, [])
        assert result.peak == 0

    def test_peak_segment_is_reported(self):
        result = sweep(
            at(9),
            at(11),
            [commit("a", at(9), at(10, 30), 60), commit("b", at(10), at(11), 60)],
        )
        assert result.peak == 120
        assert result.peak_start == at(10)
        assert result.peak_end == at(10, 30)

    def test_end_and_start_on_same_instant_do_not_stack(self):
        result = sweep(
            at(9),
            at(11),
            [commit("a", at(9), at(10), 100), commit("b", at(10), at(11), 100)],
        )
        assert result.peak == 100

    def test_commitments_are_clipped_to_span(self):
        result = sweep(
            WED,
            THU,
            [commit("a", MON, FRI, 60), commit("b", FRI, FRI + timedelta(days=1), 90)],
        )
        assert result.peak == 60
        assert result.peak_start == WED
        assert result.peak_end == THU


class TestDetect:
    """Conflict reports."""

    def test_boundary_touching_full_allocations_do_not_conflict(self):
        existing = [commit("a", at(9), at(10), 100)]
        assert detect("X", 100, commit("b", at(10), at(11), 100), existing) is None

    def test_partial_overlap_over_capacity_conflicts(self):
        existing = [commit("a", at(9), at(10, 30), 60)]
        conflict = detect("X", 100, commit("b", at(10), at(11), 60), existing)

        assert conflict is not None
        assert conflict.peak_percentage == 120
        assert conflict.overcommit == 20
        assert conflict.violating_start == at(10)
        assert conflict.violating_end == at(10, 30)
        assert [c.allocation_id for c in conflict.overlapping] == ["a"]

    def test_exactly_at_capacity_is_allowed(self):
        existing = [commit("a", MON, FRI, 60)]
        assert detect("X", 100, commit("b", WED, THU, 40), existing) is None

    def test_lower_base_capacity(self):
        existing = [commit("a", MON, FRI, 30)]
        conflict = detect("Y", 50, commit("b", WED, THU, 30), existing)
        assert conflict is not None
        assert conflict.base_capacity == 50
        assert conflict.peak_percentage == 60

    def test_candidate_itself_is_ignored_in_existing(self):
        existing = [commit("a", MON, FRI, 80)]
        assert detect("X", 100, commit("a", MON, FRI, 90), existing) is None

    def test_overlapping_lists_only_records_in_violating_interval(self):
        existing = [
            commit("early", MON, WED, 50),
            commit("late", WED, FRI, 80),
        ]
        conflict = detect("X", 100, commit("c", MON, FRI, 30), existing)
        assert conflict is not None
        assert conflict.peak_percentage == 110
        assert [c.allocation_id for c in conflict.overlapping] == ["late"]

    def test_to_dict_is_json_ready(self):
        conflict = detect("X", 100, commit("b", WED, THU, 50), [commit("a", MON, FRI, 60)])
        data = conflict.to_dict()
        assert data["peak_percentage"] == 110
        assert data["overcommit"] == 10
        assert data["violating_interval"] == {
            "start": WED.isoformat(),
            "end": THU.isoformat(),
        }
        assert data["overlapping"][0]["allocation_id"] == "a"


class TestModes:
    """Record selection per detection mode."""

    def test_hard_mode_counts_only_committed_states(self):
        records = [
            record("p", AllocationState.PENDING),
            record("a", AllocationState.APPROVED),
            record("act", AllocationState.ACTIVE),
            record("done", AllocationState.COMPLETED),
            record("x", AllocationState.CANCELLED),
        ]
        selected = select_for_mode(records, DetectionMode.HARD)
        assert {c.allocation_id for c in selected} == {"a", "act"}

    def test_soft_mode_adds_pending(self):
        records = [
            record("p", AllocationState.PENDING),
            record("a", AllocationState.APPROVED),
            record("r", AllocationState.REJECTED),
        ]
        selected = select_for_mode(records, DetectionMode.SOFT)
        assert {c.allocation_id for c in selected} == {"p", "a"}

    def test_excluded_record_is_left_out(self):
        records = [record("a", AllocationState.APPROVED), record("b", AllocationState.APPROVED)]
        selected = select_for_mode(records, DetectionMode.HARD, exclude_id="a")
        assert [c.allocation_id for c in selected] == ["b"]
