"""Typed failure results shared by the store, the booking protocol and the HTTP layer."""

import enum
from typing import Any, Dict, Tuple

Result = Tuple[bool, Any]


class ErrorKind(str, enum.Enum):
    """Every way an engine operation can fail.

    BUSY is the only kind worth retrying automatically; the rest need new
    input from the user or are simply surfaced.
    """
    CONFLICT = 'conflict'
    EXPIRED = 'expired'
    INACTIVE = 'inactive'
    NOT_FOUND = 'not_found'
    INVALID_STATE = 'invalid_state'
    BUSY = 'busy'
    VALIDATION_ERROR = 'validation_error'


HTTP_STATUS = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.EXPIRED: 410,
    ErrorKind.INACTIVE: 422,
    ErrorKind.BUSY: 503,
}


class ResourceBusy(Exception):
    """Raised internally when the per-resource lock cannot be acquired in time."""

    def __init__(self, resource_id):
        super().__init__(f"resource {resource_id} is busy")
        self.resource_id = resource_id


def failure(kind: ErrorKind, message: str, **details: Any) -> Result:
    """Build the uniform failure tuple: (False, {"error": kind, "message": ..., **details})."""
    payload: Dict[str, Any] = {"error": kind.value, "message": message}
    payload.update(details)
    return False, payload
