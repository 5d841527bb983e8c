"""Typed failures raised by the grid engine.

Every error carries a machine-readable ``code`` (stable, for automated clients)
separate from the human-readable ``message``. Routers translate them into HTTP
responses; services never raise ``HTTPException`` directly.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import status


class GridError(Exception):
    """Base class for all engine failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "GRID_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(GridError):
    """Unknown/inactive procedure or database, unsupported companion procedure."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class ForbiddenError(GridError):
    """Caller roles do not intersect the procedure's allowed roles."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class GridValidationError(GridError):
    """Malformed paging, filter operand, drill-down chain or identifier."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"


class ConflictError(GridError):
    """A mutation affected zero rows (row no longer exists / was changed)."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"

    def __init__(self, message: str, code: Optional[str] = None, rows_affected: int = 0, **details: Any):
        super().__init__(message, code, **details)
        self.rows_affected = rows_affected


class DatabaseError(GridError):
    """Connection, timeout or procedure-level failure."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "DB_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message, code, **details)
        if self.code in ("DB_TIMEOUT", "DB_UNAVAILABLE"):
            self.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
