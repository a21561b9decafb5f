"""Approval workflow state machine for allocation records.

    PENDING  -> APPROVED | REJECTED
    APPROVED -> ACTIVE | CANCELLED
    ACTIVE   -> COMPLETED | CANCELLED

REJECTED, COMPLETED and CANCELLED are terminal. Amendment keeps the state and
is allowed from PENDING and APPROVED only.
"""

from dataclasses import dataclass
from datetime import datetime

from ralloc.db.models import AllocationRecord, AllocationState
from ralloc.errors import InvalidTransitionError

TRANSITIONS: dict[AllocationState, frozenset[AllocationState]] = {
    AllocationState.PENDING: frozenset({AllocationState.APPROVED, AllocationState.REJECTED}),
    AllocationState.APPROVED: frozenset({AllocationState.ACTIVE, AllocationState.CANCELLED}),
    AllocationState.ACTIVE: frozenset({AllocationState.COMPLETED, AllocationState.CANCELLED}),
    AllocationState.REJECTED: frozenset(),
    AllocationState.COMPLETED: frozenset(),
    AllocationState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

# States counted by the hard capacity invariant
COMMITTED_STATES = frozenset({AllocationState.APPROVED, AllocationState.ACTIVE})

# States checked (as warnings only) when proposing
SOFT_STATES = COMMITTED_STATES | {AllocationState.PENDING}

AMENDABLE_STATES = frozenset({AllocationState.PENDING, AllocationState.APPROVED})


@dataclass(frozen=True)
class Transition:
    """Audit facts for one applied state change."""

    allocation_id: str
    from_state: AllocationState
    to_state: AllocationState
    actor: str
    at: datetime

    @property
    def releases_capacity(self) -> bool:
        return self.from_state in COMMITTED_STATES and self.to_state not in COMMITTED_STATES

    @property
    def commits_capacity(self) -> bool:
        return self.from_state not in COMMITTED_STATES and self.to_state in COMMITTED_STATES

    @property
    def is_reversal(self) -> bool:
        """Cancelling work that had already started."""
        return (
            self.from_state is AllocationState.ACTIVE
            and self.to_state is AllocationState.CANCELLED
        )


def can_transition(current: AllocationState, target: AllocationState) -> bool:
    return target in TRANSITIONS[current]


def check_transition(record: AllocationRecord, target: AllocationState) -> None:
    """Raise ``InvalidTransitionError`` unless ``record`` may move to ``target``."""
    if not can_transition(record.state, target):
        raise InvalidTransitionError(record.id, record.state.value, target.value)


def check_amendable(record: AllocationRecord) -> None:
    if record.state not in AMENDABLE_STATES:
        raise InvalidTransitionError(record.id, record.state.value, "amended")


def apply_transition(
    record: AllocationRecord,
    target: AllocationState,
    actor: str,
    at: datetime,
) -> Transition:
    """Move ``record`` to ``target`` in place, bumping its version.

    The record is a detached copy; nothing is written until the ledger
    persists it.
    """
    check_transition(record, target)
    transition = Transition(
        allocation_id=record.id,
        from_state=record.state,
        to_state=target,
        actor=actor,
        at=at,
    )
    record.state = target
    record.updated_by = actor
    record.updated_at = at
    record.version += 1
    return transition
