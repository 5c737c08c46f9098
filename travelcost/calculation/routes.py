"""
Calculation HTTP routes: thin glue over TravelCostService.

  POST /api/calculations/preview                          preview (cached, not audited)
  POST /api/calculations/travel-requests/{id}             calculate and audit
  GET  /api/calculations/travel-requests/{id}/audit       audit trail, creation order
  GET  /api/calculations/audit                            audit search, newest first
  POST /api/calculations/distance                         standalone distance
  POST /api/calculations/allowance                        standalone allowance quote
  POST /api/calculations/cache/invalidate                 admin invalidation
  POST /api/calculations/cache/cleanup                    admin sweep
  GET  /api/calculations/cache/stats                      cache counters

  POST /api/events/address-changed/{employee_id}          change notifications
  POST /api/events/rate-changed

Engine errors (CalculationError) are turned into the standard error envelope
by the exception handler registered in main.py.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from travelcost.calculation.schemas import (
    AllowanceRequest,
    AuditedCalculationRequest,
    AuditQuery,
    CalculationInput,
    DistanceRequest,
    EvictionResult,
    InvalidateCacheRequest,
    RateChangedEvent,
)
from travelcost.calculation.service import TravelCostService

router = APIRouter(prefix="/api/calculations", tags=["calculations"])
events_router = APIRouter(prefix="/api/events", tags=["change_events"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------

def get_service(request: Request) -> TravelCostService:
    """The service is built once in lifespan and stored on app.state."""
    service = getattr(request.app.state, "travel_cost_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Calculation engine not initialized")
    return service


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------

@router.post("/preview")
async def preview_calculation(
    body: CalculationInput,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    result = await service.preview_calculation(
        body.employee_id, body.subproject_id, body.days_per_week
    )
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/travel-requests/{travel_request_id}")
async def calculate_and_audit(
    travel_request_id: str,
    body: AuditedCalculationRequest,
    request: Request,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    """
    Called by the travel-request workflow at submission and again at approval.
    A 500 AUDIT_WRITE_FAILED means the submission must not be reported as successful.
    """
    request_context = {
        "request_id": request.headers.get("x-request-id") or str(uuid.uuid4()),
        "requested_by": body.requested_by,
        "reason": body.reason,
    }
    result = await service.calculate_and_audit(
        travel_request_id,
        body.employee_id,
        body.subproject_id,
        body.days_per_week,
        request_context=request_context,
    )
    logger.info(
        "Audited calculation travel_request_id=%s reason=%s",
        travel_request_id,
        body.reason,
    )
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.get("/travel-requests/{travel_request_id}/audit")
async def get_audit_trail(
    travel_request_id: str,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    records = await service.get_audit_trail(travel_request_id)
    if not records:
        raise HTTPException(
            status_code=404,
            detail=f"No audited calculation found for travel request '{travel_request_id}'",
        )
    return JSONResponse(
        status_code=200,
        content=[record.model_dump(mode="json") for record in records],
    )


@router.get("/audit")
async def search_audit(
    employee_id: Optional[str] = None,
    subproject_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    query = AuditQuery(
        employee_id=employee_id,
        subproject_id=subproject_id,
        start=start,
        end=end,
        limit=limit,
    )
    records = await service.query_audit(query)
    return JSONResponse(
        status_code=200,
        content={
            "audit_records": [record.model_dump(mode="json") for record in records],
            "filters": query.model_dump(mode="json"),
        },
    )


# ---------------------------------------------------------------------------
# Standalone calculators
# ---------------------------------------------------------------------------

@router.post("/distance")
async def calculate_distance(
    body: DistanceRequest,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    result = service.calculate_distance(body.origin, body.destination)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/allowance")
async def calculate_allowance(
    body: AllowanceRequest,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    quote = service.calculate_allowance(body.distance_km, body.cost_per_km, body.days)
    return JSONResponse(status_code=200, content=quote.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Cache maintenance
# ---------------------------------------------------------------------------

@router.post("/cache/invalidate")
async def invalidate_cache(
    body: InvalidateCacheRequest,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    evicted = await service.invalidate_cache(
        employee_id=body.employee_id,
        subproject_id=body.subproject_id,
        project_id=body.project_id,
        location=body.location,
    )
    result = EvictionResult(
        evicted_count=evicted,
        message=f"Invalidated {evicted} cache entries",
    )
    return JSONResponse(status_code=200, content=result.model_dump())


@router.post("/cache/cleanup")
async def cleanup_expired(
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    evicted = await service.cleanup_expired()
    result = EvictionResult(
        evicted_count=evicted,
        message=f"Cleaned up {evicted} expired cache entries",
    )
    return JSONResponse(status_code=200, content=result.model_dump())


@router.get("/cache/stats")
async def cache_stats(
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    return JSONResponse(status_code=200, content=service.cache_stats().model_dump())


# ---------------------------------------------------------------------------
# Change notifications
# ---------------------------------------------------------------------------

@events_router.post("/address-changed/{employee_id}")
async def address_changed(
    employee_id: str,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    evicted = await service.invalidation.on_address_changed(employee_id)
    result = EvictionResult(
        evicted_count=evicted,
        message=f"Invalidated {evicted} cache entries for employee '{employee_id}'",
    )
    return JSONResponse(status_code=200, content=result.model_dump())


@events_router.post("/rate-changed")
async def rate_changed(
    body: RateChangedEvent,
    service: TravelCostService = Depends(get_service),
) -> JSONResponse:
    evicted = await service.invalidation.on_rate_changed(
        subproject_id=body.subproject_id,
        project_id=body.project_id,
    )
    result = EvictionResult(
        evicted_count=evicted,
        message=f"Invalidated {evicted} cache entries after rate change",
    )
    return JSONResponse(status_code=200, content=result.model_dump())
