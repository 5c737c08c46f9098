"""
audit.py: Append-only audit ledger.

One record per request-bound calculation: at submission, and again at every
approval-time re-verification. Records are never updated or deleted by
application code; retention deletes are an administrative database operation.

A record's rule_version names the allowance policy that produced it, so an
old record stays interpretable after the policy changes.

record() must be durable before it returns: the SQL ledger commits its own
short transaction and turns any database failure into AuditWriteFailed.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from travelcost import store
from travelcost.cache import utcnow
from travelcost.calculation.exceptions import AuditWriteFailed
from travelcost.calculation.schemas import (
    AuditInputSnapshot,
    AuditQuery,
    CalculationAuditRecord,
    CalculationResult,
)

logger = logging.getLogger(__name__)


class AuditLedger(ABC):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    async def record(
        self,
        travel_request_id: str,
        snapshot: AuditInputSnapshot,
        result: CalculationResult,
        rule_version: str,
        request_context: Optional[dict[str, Any]] = None,
    ) -> CalculationAuditRecord:
        """Append one record. Raises AuditWriteFailed when it could not be persisted."""
        draft = {
            "id": str(uuid.uuid4()),
            "travel_request_id": travel_request_id,
            "employee_id": snapshot.employee_id,
            "subproject_id": snapshot.subproject_id,
            "input_snapshot": snapshot,
            "result_snapshot": result,
            "rule_version": rule_version,
            "request_context": request_context,
            "computed_at": self._clock(),
        }
        stored = await self._append(draft)
        logger.info(
            "Audit record written travel_request_id=%s record_id=%s sequence=%d rule_version=%s",
            travel_request_id,
            stored.id,
            stored.sequence,
            rule_version,
        )
        return stored

    @abstractmethod
    async def _append(self, draft: dict[str, Any]) -> CalculationAuditRecord:
        """Persist draft, assign sequence, return the stored record."""

    @abstractmethod
    async def get_audit_trail(self, travel_request_id: str) -> list[CalculationAuditRecord]:
        """Records for one travel request in creation order (oldest first)."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> list[CalculationAuditRecord]:
        """Filtered records, newest first, at most query.limit."""


class InMemoryAuditLedger(AuditLedger):
    """Process-local ledger for tests and single-node previews of the workflow."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock)
        self._records: list[CalculationAuditRecord] = []
        self._lock = asyncio.Lock()

    async def _append(self, draft: dict[str, Any]) -> CalculationAuditRecord:
        async with self._lock:
            stored = CalculationAuditRecord(sequence=len(self._records) + 1, **draft)
            self._records.append(stored)
        return stored

    async def get_audit_trail(self, travel_request_id: str) -> list[CalculationAuditRecord]:
        return [r for r in self._records if r.travel_request_id == travel_request_id]

    async def query(self, query: AuditQuery) -> list[CalculationAuditRecord]:
        matches = [
            r for r in reversed(self._records)
            if (query.employee_id is None or r.employee_id == query.employee_id)
            and (query.subproject_id is None or r.subproject_id == query.subproject_id)
            and (query.start is None or r.computed_at >= query.start)
            and (query.end is None or r.computed_at <= query.end)
        ]
        return matches[: query.limit]


class SqlAuditLedger(AuditLedger):
    """PostgreSQL ledger (calculation_audit table). Each append commits on its own."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(clock)
        self._session_factory = session_factory

    async def _append(self, draft: dict[str, Any]) -> CalculationAuditRecord:
        try:
            async with self._session_factory() as db:
                stored = await store.insert_audit_record(db, draft)
                await db.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "Audit write failed travel_request_id=%s",
                draft["travel_request_id"],
                exc_info=True,
            )
            raise AuditWriteFailed(draft["travel_request_id"], type(exc).__name__) from exc
        return stored

    async def get_audit_trail(self, travel_request_id: str) -> list[CalculationAuditRecord]:
        async with self._session_factory() as db:
            return await store.list_audit_records(db, travel_request_id)

    async def query(self, query: AuditQuery) -> list[CalculationAuditRecord]:
        async with self._session_factory() as db:
            return await store.query_audit_records(db, query)
