"""
schemas.py: Travel cost engine Pydantic v2 data contracts.

Defines:
  - GeoPoint               (immutable WGS84 coordinate pair)
  - CalculationInput       (semantic key: employee, subproject, days per week)
  - SubprojectSite         (what the subproject/project lookup returns)
  - CalculationResult      (immutable allowance figures, fixed-point decimals)
  - CalculationCacheEntry  (owned exclusively by the calculation cache)
  - AuditInputSnapshot, CalculationAuditRecord, AuditQuery  (audit ledger)
  - Request/response bodies for routes.py and the standard error envelope

Numeric boundary rule: distances are Decimal with 3 places, money is Decimal
with 2 places. model_dump(mode="json") renders both as strings so audited
values never pass through binary floating point.
"""
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from travelcost.calculation.exceptions import InvalidCoordinate, InvalidFrequency

MIN_DAYS_PER_WEEK = 1
MAX_DAYS_PER_WEEK = 7


def check_coordinates(latitude: float, longitude: float) -> None:
    """Raise InvalidCoordinate unless both values are finite and within WGS84 bounds."""
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise InvalidCoordinate(latitude, longitude)
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise InvalidCoordinate(latitude, longitude)


def check_days_per_week(days_per_week: int, field: str = "days_per_week") -> int:
    if not MIN_DAYS_PER_WEEK <= days_per_week <= MAX_DAYS_PER_WEEK:
        raise InvalidFrequency(field, days_per_week, MIN_DAYS_PER_WEEK, MAX_DAYS_PER_WEEK)
    return days_per_week


# ---------------------------------------------------------------------------
# GeoPoint: immutable value type
# ---------------------------------------------------------------------------

class GeoPoint(BaseModel):
    """WGS84 coordinate pair. Construction fails with InvalidCoordinate when out of range."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    latitude: float
    longitude: float

    @model_validator(mode="after")
    def _within_bounds(self) -> "GeoPoint":
        check_coordinates(self.latitude, self.longitude)
        return self


# ---------------------------------------------------------------------------
# CalculationInput: what callers ask for
# ---------------------------------------------------------------------------

class CalculationInput(BaseModel):
    """
    The semantic key of a calculation. NOT the cache key: the same input maps
    to a different fingerprint once the home address or the rate changes.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    employee_id: str = Field(min_length=1)
    subproject_id: str = Field(min_length=1)
    days_per_week: int

    @field_validator("days_per_week")
    @classmethod
    def _days_in_range(cls, value: int) -> int:
        return check_days_per_week(value)


class AuditedCalculationRequest(BaseModel):
    """Body of POST /api/calculations/travel-requests/{travel_request_id}."""
    model_config = ConfigDict(extra="forbid")

    employee_id: str = Field(min_length=1)
    subproject_id: str = Field(min_length=1)
    days_per_week: int
    requested_by: Optional[str] = None   # user id of the submitter/approver, kept in request_context
    reason: Literal["submission", "approval"] = "submission"


# ---------------------------------------------------------------------------
# Collaborator shapes
# ---------------------------------------------------------------------------

class SubprojectSite(BaseModel):
    """
    Location and rate data for one subproject.

    cost_per_km:                 subproject override, None when not set.
    project_default_cost_per_km: None when the parent project is inactive/deleted.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    subproject_id: str
    project_id: Optional[str] = None
    location: GeoPoint
    cost_per_km: Optional[Decimal] = None
    project_default_cost_per_km: Optional[Decimal] = None


class ResolvedRate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cost_per_km: Decimal
    source: Literal["subproject", "project"]


# ---------------------------------------------------------------------------
# CalculationResult: immutable once produced
# ---------------------------------------------------------------------------

class CalculationResult(BaseModel):
    """
    Output of one travel cost calculation.

    Computation sequence (fixed by RULE_VERSION in allowance.py):
      1. distance_km       = geodesic(home, site) rounded to 3 places
      2. daily_allowance   = round(distance_km * cost_per_km * 2, 2)   ← round trip
      3. weekly_allowance  = round(daily_allowance * days_per_week, 2)
      4. monthly_allowance = round(weekly_allowance * 52 / 12, 2)
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    distance_km: Decimal
    daily_allowance: Decimal
    weekly_allowance: Decimal
    monthly_allowance: Decimal
    cost_per_km_used: Decimal
    computed_at: datetime


class CalculationCacheEntry(BaseModel):
    """
    One cached result. Created on a miss, read-only afterwards, destroyed by
    expiry or invalidation. index_keys lists the reverse-index sets the
    fingerprint was registered in when the entry was stored.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    fingerprint: str
    result: CalculationResult
    created_at: datetime
    expires_at: datetime
    index_keys: tuple[str, ...] = ()

    def is_expired(self, now: datetime) -> bool:
        """A read at or after expires_at is a miss."""
        return now >= self.expires_at


# ---------------------------------------------------------------------------
# Audit ledger
# ---------------------------------------------------------------------------

class AuditInputSnapshot(BaseModel):
    """Physical inputs as they were when the audited calculation ran."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    employee_id: str
    subproject_id: str
    project_id: Optional[str] = None
    days_per_week: int
    employee_location: GeoPoint
    subproject_location: GeoPoint
    cost_per_km: Decimal
    rate_source: Literal["subproject", "project"]
    fingerprint: str


class CalculationAuditRecord(BaseModel):
    """
    Append-only compliance record. sequence is assigned by the ledger and is
    the authoritative creation order within and across travel requests.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    sequence: int
    travel_request_id: str
    employee_id: str
    subproject_id: str
    input_snapshot: AuditInputSnapshot
    result_snapshot: CalculationResult
    rule_version: str
    request_context: Optional[dict[str, Any]] = None
    computed_at: datetime


class AuditQuery(BaseModel):
    """Filters for the reporting surface. Results come back newest first."""
    model_config = ConfigDict(extra="forbid")

    employee_id: Optional[str] = None
    subproject_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=1000)


# ---------------------------------------------------------------------------
# Standalone calculators
# ---------------------------------------------------------------------------

class DistanceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    origin: GeoPoint
    destination: GeoPoint


class DistanceResult(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    distance_km: Decimal
    computed_at: datetime


class AllowanceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    distance_km: Decimal
    cost_per_km: Decimal
    days: int = 1


class AllowanceQuote(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    distance_km: Decimal
    cost_per_km: Decimal
    days: int
    allowance: Decimal
    rule_version: str


# ---------------------------------------------------------------------------
# Cache maintenance
# ---------------------------------------------------------------------------

class InvalidateCacheRequest(BaseModel):
    """All fields optional; an empty body is a valid no-op."""
    model_config = ConfigDict(extra="forbid")

    employee_id: Optional[str] = None
    subproject_id: Optional[str] = None
    project_id: Optional[str] = None
    location: Optional[GeoPoint] = None


class RateChangedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subproject_id: Optional[str] = None
    project_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self) -> "RateChangedEvent":
        if self.subproject_id is None and self.project_id is None:
            raise ValueError("rate-changed event needs subproject_id or project_id")
        return self


class EvictionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    evicted_count: int
    message: str


class CacheStats(BaseModel):
    """Counters kept by CalculationCache since process start."""
    model_config = ConfigDict(extra="forbid")

    hits: int = 0
    misses: int = 0
    computations: int = 0
    shared_waits: int = 0        # callers that joined an in-flight computation
    expired_reads: int = 0       # lazy expiry at read time
    bypasses: int = 0            # backend unavailable → computed without the cache
    evictions: int = 0


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single field-level error."""
    model_config = ConfigDict(extra="forbid")

    field: Optional[str] = None
    issue: str


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str                                      # VALIDATION_ERROR, RATE_NOT_FOUND, etc.
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error format: {"error": {"code": "...", "message": "...", "details": [...]}}"""
    model_config = ConfigDict(extra="forbid")

    error: ErrorBody


__all__ = [
    "MIN_DAYS_PER_WEEK",
    "MAX_DAYS_PER_WEEK",
    "check_coordinates",
    "check_days_per_week",
    "GeoPoint",
    "CalculationInput",
    "AuditedCalculationRequest",
    "SubprojectSite",
    "ResolvedRate",
    "CalculationResult",
    "CalculationCacheEntry",
    "AuditInputSnapshot",
    "CalculationAuditRecord",
    "AuditQuery",
    "DistanceRequest",
    "DistanceResult",
    "AllowanceRequest",
    "AllowanceQuote",
    "InvalidateCacheRequest",
    "RateChangedEvent",
    "EvictionResult",
    "CacheStats",
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
]
