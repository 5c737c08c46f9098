"""
exceptions.py: Error taxonomy for the travel cost engine.

Every error carries a stable `code`, an HTTP `status_code` used by the
exception handler in main.py, and `details` echoing the offending input.

These deliberately do NOT subclass ValueError: pydantic wraps ValueError
raised inside validators into a ValidationError, and GeoPoint / CalculationInput
must surface InvalidCoordinate / InvalidFrequency as-is.
"""
from __future__ import annotations

from typing import Any, Optional


class CalculationError(Exception):
    """Base class: never raised directly."""

    code: str = "CALCULATION_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidCoordinate(CalculationError):
    """Latitude/longitude outside WGS84 bounds or not a finite number. Caller bug."""

    code = "INVALID_COORDINATE"
    status_code = 422

    def __init__(self, latitude: Any, longitude: Any) -> None:
        super().__init__(
            f"Coordinate ({latitude}, {longitude}) is outside latitude [-90, 90] "
            "/ longitude [-180, 180]",
            {"latitude": latitude, "longitude": longitude},
        )


class InvalidFrequency(CalculationError):
    """days_per_week (or days) outside the accepted range."""

    code = "INVALID_FREQUENCY"
    status_code = 422

    def __init__(self, field: str, value: Any, minimum: int, maximum: int) -> None:
        super().__init__(
            f"{field} must be between {minimum} and {maximum}, got {value}",
            {field: value, "minimum": minimum, "maximum": maximum},
        )


class InvalidAmount(CalculationError):
    """Negative distance or rate handed to the allowance calculator."""

    code = "INVALID_AMOUNT"
    status_code = 422

    def __init__(self, field: str, value: Any) -> None:
        super().__init__(f"{field} must not be negative, got {value}", {field: str(value)})


class EmployeeNotFound(CalculationError):
    code = "EMPLOYEE_NOT_FOUND"
    status_code = 404

    def __init__(self, employee_id: str) -> None:
        super().__init__(
            f"Employee '{employee_id}' not found or has no home location",
            {"employee_id": employee_id},
        )


class SubprojectNotFound(CalculationError):
    code = "SUBPROJECT_NOT_FOUND"
    status_code = 404

    def __init__(self, subproject_id: str) -> None:
        super().__init__(
            f"Subproject '{subproject_id}' not found or inactive",
            {"subproject_id": subproject_id},
        )


class RateNotFound(CalculationError):
    """Neither the subproject nor its project yields a cost per km. Not retried."""

    code = "RATE_NOT_FOUND"
    status_code = 409

    def __init__(self, subproject_id: str, project_id: Optional[str] = None) -> None:
        super().__init__(
            f"No cost per km resolvable for subproject '{subproject_id}'",
            {"subproject_id": subproject_id, "project_id": project_id},
        )


class LookupUnavailable(CalculationError):
    """A collaborator lookup did not answer within its timeout."""

    code = "LOOKUP_UNAVAILABLE"
    status_code = 503

    def __init__(self, lookup: str, identifier: str, timeout: float) -> None:
        super().__init__(
            f"{lookup} lookup for '{identifier}' timed out after {timeout}s",
            {"lookup": lookup, "id": identifier, "timeout_seconds": timeout},
        )


class CacheUnavailable(CalculationError):
    """Cache backend failure. The calculation path degrades instead of failing."""

    code = "CACHE_UNAVAILABLE"
    status_code = 503

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            f"Calculation cache unavailable during {operation}: {reason}",
            {"operation": operation},
        )


class AuditWriteFailed(CalculationError):
    """The ledger could not durably append a record. Aborts calculate_and_audit."""

    code = "AUDIT_WRITE_FAILED"
    status_code = 500

    def __init__(self, travel_request_id: str, reason: str) -> None:
        super().__init__(
            f"Audit record for travel request '{travel_request_id}' could not be written: {reason}",
            {"travel_request_id": travel_request_id},
        )


class AuditRecordImmutable(CalculationError):
    """Raised when application code tries to update or delete an audit row."""

    code = "AUDIT_RECORD_IMMUTABLE"
    status_code = 500

    def __init__(self, record_id: Any, operation: str) -> None:
        super().__init__(
            f"Audit record '{record_id}' is append-only; {operation} is not permitted",
            {"record_id": str(record_id), "operation": operation},
        )


__all__ = [
    "CalculationError",
    "InvalidCoordinate",
    "InvalidFrequency",
    "InvalidAmount",
    "EmployeeNotFound",
    "SubprojectNotFound",
    "RateNotFound",
    "LookupUnavailable",
    "CacheUnavailable",
    "AuditWriteFailed",
    "AuditRecordImmutable",
]
