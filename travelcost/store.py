"""
store.py: Data access facade for the travel cost engine.

The only module that issues SQL. Lookups and the audit ledger call these
functions; nothing else touches SQLAlchemy directly.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM-only queries
  - Logs ids only: never home coordinates
  - Returns domain Pydantic objects (not ORM instances) so callers are persistence-agnostic
  - Audit rows are only ever INSERTed; there is deliberately no update/delete helper
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from travelcost.calculation.schemas import (
    AuditQuery,
    CalculationAuditRecord,
    GeoPoint,
    SubprojectSite,
)
from travelcost.models.calculation_audit import CalculationAuditORM
from travelcost.models.employee import EmployeeORM
from travelcost.models.project import ProjectORM, SubprojectORM

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_home_location(
    db: AsyncSession,
    employee_id: str,
) -> Optional[GeoPoint]:
    """
    Return an active employee's home location.
    Returns None if the employee is unknown or inactive (caller raises EmployeeNotFound).
    """
    result = await db.execute(
        select(EmployeeORM.home_latitude, EmployeeORM.home_longitude).where(
            EmployeeORM.id == employee_id,
            EmployeeORM.is_active.is_(True),
        )
    )
    row = result.one_or_none()
    if row is None:
        return None
    return GeoPoint(latitude=row.home_latitude, longitude=row.home_longitude)


async def get_subproject_site(
    db: AsyncSession,
    subproject_id: str,
) -> Optional[SubprojectSite]:
    """
    Return an active subproject's location, its rate override and the parent
    project's default rate. An inactive parent project yields
    project_default_cost_per_km=None so the resolver can report RateNotFound.
    """
    result = await db.execute(
        select(
            SubprojectORM.id,
            SubprojectORM.project_id,
            SubprojectORM.latitude,
            SubprojectORM.longitude,
            SubprojectORM.cost_per_km,
            ProjectORM.default_cost_per_km,
            ProjectORM.is_active.label("project_active"),
        )
        .outerjoin(ProjectORM, ProjectORM.id == SubprojectORM.project_id)
        .where(SubprojectORM.id == subproject_id, SubprojectORM.is_active.is_(True))
    )
    row = result.one_or_none()
    if row is None:
        return None
    return SubprojectSite(
        subproject_id=str(row.id),
        project_id=str(row.project_id) if row.project_id is not None else None,
        location=GeoPoint(latitude=row.latitude, longitude=row.longitude),
        cost_per_km=row.cost_per_km,
        project_default_cost_per_km=row.default_cost_per_km if row.project_active else None,
    )


# ---------------------------------------------------------------------------
# Audit ledger
# ---------------------------------------------------------------------------

def _to_record(orm: CalculationAuditORM) -> CalculationAuditRecord:
    return CalculationAuditRecord(
        id=str(orm.id),
        sequence=orm.sequence,
        travel_request_id=orm.travel_request_id,
        employee_id=orm.employee_id,
        subproject_id=orm.subproject_id,
        input_snapshot=orm.input_snapshot,
        result_snapshot=orm.result_snapshot,
        rule_version=orm.rule_version,
        request_context=orm.request_context,
        computed_at=orm.computed_at,
    )


async def insert_audit_record(
    db: AsyncSession,
    draft: dict[str, Any],
) -> CalculationAuditRecord:
    """
    INSERT one calculation_audit row and return it with its assigned sequence.
    Uses flush() (not commit()): the ledger commits its own transaction.
    """
    orm = CalculationAuditORM(
        id=draft["id"],
        travel_request_id=draft["travel_request_id"],
        employee_id=draft["employee_id"],
        subproject_id=draft["subproject_id"],
        input_snapshot=draft["input_snapshot"].model_dump(mode="json"),
        result_snapshot=draft["result_snapshot"].model_dump(mode="json"),
        rule_version=draft["rule_version"],
        request_context=draft["request_context"],
        computed_at=draft["computed_at"],
    )
    db.add(orm)
    await db.flush()
    await db.refresh(orm, attribute_names=["sequence"])
    logger.info(
        "Inserted audit row travel_request_id=%s sequence=%s",
        orm.travel_request_id,
        orm.sequence,
    )
    return _to_record(orm)


async def list_audit_records(
    db: AsyncSession,
    travel_request_id: str,
) -> list[CalculationAuditRecord]:
    """All records of one travel request, ordered by sequence ascending (creation order)."""
    result = await db.execute(
        select(CalculationAuditORM)
        .where(CalculationAuditORM.travel_request_id == travel_request_id)
        .order_by(CalculationAuditORM.sequence.asc())
    )
    return [_to_record(row) for row in result.scalars().all()]


async def query_audit_records(
    db: AsyncSession,
    query: AuditQuery,
) -> list[CalculationAuditRecord]:
    """Reporting search, newest first."""
    stmt = select(CalculationAuditORM)
    if query.employee_id is not None:
        stmt = stmt.where(CalculationAuditORM.employee_id == query.employee_id)
    if query.subproject_id is not None:
        stmt = stmt.where(CalculationAuditORM.subproject_id == query.subproject_id)
    if query.start is not None:
        stmt = stmt.where(CalculationAuditORM.computed_at >= query.start)
    if query.end is not None:
        stmt = stmt.where(CalculationAuditORM.computed_at <= query.end)
    stmt = stmt.order_by(CalculationAuditORM.sequence.desc()).limit(query.limit)
    result = await db.execute(stmt)
    return [_to_record(row) for row in result.scalars().all()]
