"""Error taxonomy for the allocation engine.

Every error carries a stable ``code`` and a JSON-ready ``details()`` mapping so
the HTTP layer can render it without knowing the concrete class.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ralloc.detector import Conflict


class AllocationError(Exception):
    """Base class for all engine errors."""

    code = "allocation_error"

    def details(self) -> dict[str, Any]:
        return {}


class ValidationError(AllocationError):
    """Malformed interval/percentage or unknown/inactive resource. Not retried."""

    code = "validation_error"


class NotFoundError(ValidationError):
    """Unknown allocation id."""

    code = "not_found"


class ConflictError(AllocationError):
    """Committing the candidate would violate the capacity invariant."""

    code = "capacity_conflict"

    def __init__(self, conflict: Conflict, message: str | None = None):
        self.conflict = conflict
        super().__init__(
            message
            or (
                f"resource {conflict.resource_id} would be committed to "
                f"{conflict.peak_percentage}% (capacity {conflict.base_capacity}%)"
            )
        )

    def details(self) -> dict[str, Any]:
        return {"conflict": self.conflict.to_dict()}


class StateError(AllocationError):
    """The record is not in a state that allows the operation."""

    code = "state_error"


class InvalidTransitionError(StateError):
    """Lifecycle transition not permitted by the approval workflow."""

    code = "invalid_transition"

    def __init__(self, allocation_id: str, current: str, target: str):
        self.allocation_id = allocation_id
        self.current = current
        self.target = target
        super().__init__(
            f"allocation {allocation_id} cannot move from {current} to {target}"
        )

    def details(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "current_state": self.current,
            "target_state": self.target,
        }


class StaleVersionError(AllocationError):
    """Optimistic concurrency failure. Re-read the record and retry."""

    code = "stale_version"

    def __init__(self, allocation_id: str, expected: int, actual: int | None = None):
        self.allocation_id = allocation_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"allocation {allocation_id} is no longer at version {expected}"
            + (f" (now {actual})" if actual is not None else "")
        )

    def details(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "expected_version": self.expected,
            "actual_version": self.actual,
        }


class CatalogUnavailableError(AllocationError):
    """The resource catalog could not be reached and no fresh snapshot exists."""

    code = "catalog_unavailable"


# Mapping of engine errors to HTTP status codes, most specific first
ERROR_STATUS_CODES: dict[type[AllocationError], int] = {
    NotFoundError: 404,
    ValidationError: 422,
    ConflictError: 409,
    InvalidTransitionError: 409,
    StateError: 409,
    StaleVersionError: 412,
    CatalogUnavailableError: 503,
}


def status_code_for(error: AllocationError) -> int:
    """Resolve the HTTP status for an engine error."""
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return 500
