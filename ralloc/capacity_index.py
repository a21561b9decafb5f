"""Time-bucketed cache of committed capacity per resource.

Derived from the ledger, never authoritative. A record counts its full
percentage in every bucket it touches, so a bucket sum is an upper bound on
the exact load anywhere inside that bucket. That makes ``range_max`` a safe
pre-check: if the bound plus the candidate fits, the exact sweep can be
skipped.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from threading import RLock

from ralloc.db.models import AllocationRecord
from ralloc.logging import get_logger
from ralloc.workflow import COMMITTED_STATES

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class CapacityIndex:
    """(resource id, bucket) -> committed percentage sum for APPROVED/ACTIVE records."""

    def __init__(self, granularity: timedelta = timedelta(days=1)) -> None:
        if granularity <= timedelta(0):
            raise ValueError("bucket granularity must be positive")
        self.granularity = granularity
        self._lock = RLock()
        self._buckets: dict[str, dict[int, int]] = defaultdict(dict)
        # allocation id -> (resource id, first bucket, last bucket, percentage)
        self._entries: dict[str, tuple[str, int, int, int]] = {}
        # records applied while a rebuild reads the ledger, replayed on swap
        self._replay: list[AllocationRecord] | None = None

    def bucket_of(self, instant: datetime) -> int:
        return (instant - EPOCH) // self.granularity

    def bucket_span(self, start: datetime, end: datetime) -> tuple[int, int]:
        """Inclusive bucket range covered by ``[start, end)``."""
        first = self.bucket_of(start)
        # ceil of the end offset, minus one: an end on a bucket edge excludes that bucket
        last = -((EPOCH - end) // self.granularity) - 1
        return first, max(first, last)

    def bucket_start(self, bucket: int) -> datetime:
        return EPOCH + bucket * self.granularity

    def __contains__(self, allocation_id: str) -> bool:
        return allocation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, record: AllocationRecord) -> None:
        """Count a committed record. Re-adding the same id replaces it."""
        with self._lock:
            self.remove(record.id)
            first, last = self.bucket_span(record.start_at, record.end_at)
            buckets = self._buckets[record.resource_id]
            for bucket in range(first, last + 1):
                buckets[bucket] = buckets.get(bucket, 0) + record.percentage
            self._entries[record.id] = (record.resource_id, first, last, record.percentage)

    def remove(self, allocation_id: str) -> bool:
        """Stop counting a record. Returns False when it was not indexed."""
        with self._lock:
            entry = self._entries.pop(allocation_id, None)
            if entry is None:
                return False
            resource_id, first, last, percentage = entry
            buckets = self._buckets[resource_id]
            for bucket in range(first, last + 1):
                remaining = buckets.get(bucket, 0) - percentage
                if remaining > 0:
                    buckets[bucket] = remaining
                else:
                    buckets.pop(bucket, None)
            if not buckets:
                del self._buckets[resource_id]
            return True

    def apply(self, record: AllocationRecord) -> None:
        """Sync the index with a record's committed state after a ledger write."""
        with self._lock:
            if self._replay is not None:
                self._replay.append(record)
            if record.state in COMMITTED_STATES:
                self.add(record)
            else:
                self.remove(record.id)

    def point(self, resource_id: str, instant: datetime) -> int:
        """Committed sum of the bucket containing ``instant``."""
        with self._lock:
            return self._buckets.get(resource_id, {}).get(self.bucket_of(instant), 0)

    def range_max(self, resource_id: str, start: datetime, end: datetime) -> int:
        """Largest bucket sum over the buckets touched by ``[start, end)``."""
        first, last = self.bucket_span(start, end)
        with self._lock:
            buckets = self._buckets.get(resource_id)
            if not buckets:
                return 0
            if last - first + 1 <= len(buckets):
                return max((buckets.get(b, 0) for b in range(first, last + 1)), default=0)
            return max((v for b, v in buckets.items() if first <= b <= last), default=0)

    def begin_rebuild(self) -> None:
        """Start capturing ``apply`` calls; call before reading the ledger."""
        with self._lock:
            self._replay = []

    def rebuild(self, records: Iterable[AllocationRecord]) -> int:
        """Replace the whole index from ledger records. Returns the entry count.

        Records applied since ``begin_rebuild`` are re-applied on top, so a
        commit that landed after the ledger read is not lost.
        """
        with self._lock:
            replay, self._replay = self._replay or [], None
            self._buckets.clear()
            self._entries.clear()
            for record in records:
                if record.state in COMMITTED_STATES:
                    self.add(record)
            for record in replay:
                self.apply(record)
            count = len(self._entries)
        logger.info(
            "capacity_index_rebuilt",
            entries=count,
            granularity_seconds=int(self.granularity.total_seconds()),
        )
        return count

    def snapshot(self) -> dict[str, dict[int, int]]:
        """Copy of the bucket sums, for comparison and diagnostics."""
        with self._lock:
            return {rid: dict(buckets) for rid, buckets in self._buckets.items()}
