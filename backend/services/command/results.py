"""
Outcome types for command operations.

Business-rule rejections (quota exceeded, wrong owner, duplicate request...)
are ordinary outcomes, not exceptions: every operation returns a Result and
every caller checks `result.ok` before using `result.value`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid-argument"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    FAILED_PRECONDITION = "failed-precondition"
    ALREADY_EXISTS = "already-exists"
    ABORTED = "aborted"      # contention persisted past the retry budget
    INTERNAL = "internal"    # configuration fault (e.g. tenant quota missing)


# HTTP status per error kind, used by the routers
HTTP_STATUS = {
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FAILED_PRECONDITION: 400,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.ABORTED: 409,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class Result:
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    # Snapshots to publish on the change feed once the transaction committed
    changes: Tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls, value: Any = None, changes=()) -> "Result":
        return cls(ok=True, value=value, changes=tuple(changes))

    @classmethod
    def failure(cls, error: ErrorKind, message: str, changes=()) -> "Result":
        return cls(ok=False, error=error, message=message, changes=tuple(changes))

    def to_response(self) -> dict:
        if self.ok:
            return {"success": True, "data": self.value}
        return {"success": False, "code": self.error.value, "message": self.message}

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS[self.error]


def invalid_argument(message: str) -> Result:
    return Result.failure(ErrorKind.INVALID_ARGUMENT, message)


def permission_denied(message: str) -> Result:
    return Result.failure(ErrorKind.PERMISSION_DENIED, message)


def not_found(message: str) -> Result:
    return Result.failure(ErrorKind.NOT_FOUND, message)


def failed_precondition(message: str) -> Result:
    return Result.failure(ErrorKind.FAILED_PRECONDITION, message)


def require_fields(**fields) -> Optional[Result]:
    """Return an invalid-argument Result naming the first blank field, or None."""
    for name, value in fields.items():
        if value is None or (isinstance(value, str) and value.strip() == ""):
            return invalid_argument(f"{name} is required.")
    return None
