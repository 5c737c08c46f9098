"""
service.py: TravelCostService, the engine's single entry point.

Data flow for one calculation:
  employee lookup ─┐
                   ├─ fingerprint(home, site, rate, days) ─ cache.get_or_compute
  rate resolver  ──┘                                         └─ on miss: distance → allowance
  (+ audit ledger append when the calculation is bound to a travel request)

Collaborators are injected; nothing here reaches for module-level state.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from travelcost.calculation import allowance
from travelcost.calculation.audit import AuditLedger
from travelcost.calculation.calculation_cache import CalculationCache
from travelcost.calculation.fingerprint import canonical_location, canonical_rate, travel_fingerprint
from travelcost.calculation.geo import distance_km
from travelcost.calculation.invalidation import InvalidationCoordinator, index_keys_for
from travelcost.calculation.janitor import CacheJanitor
from travelcost.calculation.lookups import EmployeeLookup, SubprojectLookup, bounded
from travelcost.calculation.rates import RateResolver
from travelcost.calculation.schemas import (
    AllowanceQuote,
    AuditInputSnapshot,
    AuditQuery,
    CacheStats,
    CalculationAuditRecord,
    CalculationInput,
    CalculationResult,
    DistanceResult,
    GeoPoint,
)

logger = logging.getLogger(__name__)


class TravelCostService:
    def __init__(
        self,
        employees: EmployeeLookup,
        subprojects: SubprojectLookup,
        cache: CalculationCache,
        ledger: AuditLedger,
        lookup_timeout: float = 0.5,
        janitor_interval_seconds: float = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._employees = employees
        self._lookup_timeout = lookup_timeout
        self._clock = clock or cache.clock
        self.cache = cache
        self.ledger = ledger
        self.rates = RateResolver(subprojects, lookup_timeout)
        self.invalidation = InvalidationCoordinator(cache)
        self.janitor = CacheJanitor(cache, janitor_interval_seconds)

    # ------------------------------------------------------------------
    # Core calculation
    # ------------------------------------------------------------------

    def _compute(self, home: GeoPoint, site: GeoPoint, cost_per_km: Decimal, days_per_week: int):
        async def compute() -> CalculationResult:
            distance = distance_km(home, site)
            amounts = allowance.calculate(distance, cost_per_km, days_per_week)
            return CalculationResult(
                distance_km=distance,
                daily_allowance=amounts.daily_allowance,
                weekly_allowance=amounts.weekly_allowance,
                monthly_allowance=amounts.monthly_allowance,
                cost_per_km_used=cost_per_km,
                computed_at=self._clock(),
            )
        return compute

    async def _calculate(
        self, calc_input: CalculationInput
    ) -> tuple[CalculationResult, AuditInputSnapshot]:
        home, (site, rate) = await asyncio.gather(
            bounded(
                self._employees.get_home_location(calc_input.employee_id),
                self._lookup_timeout,
                "employee",
                calc_input.employee_id,
            ),
            self.rates.resolve(calc_input.subproject_id),
        )
        fingerprint = travel_fingerprint(
            home, site.location, rate.cost_per_km, calc_input.days_per_week
        )
        # compute on the values the fingerprint was built from
        home = canonical_location(home)
        site_location = canonical_location(site.location)
        cost_per_km = canonical_rate(rate.cost_per_km)
        result = await self.cache.get_or_compute(
            fingerprint,
            self._compute(home, site_location, cost_per_km, calc_input.days_per_week),
            index_keys_for(calc_input.employee_id, home, site),
        )
        snapshot = AuditInputSnapshot(
            employee_id=calc_input.employee_id,
            subproject_id=calc_input.subproject_id,
            project_id=site.project_id,
            days_per_week=calc_input.days_per_week,
            employee_location=home,
            subproject_location=site_location,
            cost_per_km=cost_per_km,
            rate_source=rate.source,
            fingerprint=fingerprint,
        )
        return result, snapshot

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    async def preview_calculation(
        self, employee_id: str, subproject_id: str, days_per_week: int
    ) -> CalculationResult:
        """Cache-backed, never audited, never fails on audit issues."""
        calc_input = CalculationInput(
            employee_id=employee_id, subproject_id=subproject_id, days_per_week=days_per_week
        )
        result, _ = await self._calculate(calc_input)
        logger.info(
            "Preview calculated employee_id=%s subproject_id=%s days_per_week=%d",
            employee_id,
            subproject_id,
            days_per_week,
        )
        return result

    async def calculate_and_audit(
        self,
        travel_request_id: str,
        employee_id: str,
        subproject_id: str,
        days_per_week: int,
        request_context: Optional[dict[str, Any]] = None,
    ) -> CalculationResult:
        """
        Cache-backed calculation plus one durable audit record.
        AuditWriteFailed propagates: an unaudited request-bound calculation must
        fail the caller's submission/approval.
        """
        calc_input = CalculationInput(
            employee_id=employee_id, subproject_id=subproject_id, days_per_week=days_per_week
        )
        result, snapshot = await self._calculate(calc_input)
        await self.ledger.record(
            travel_request_id,
            snapshot,
            result,
            allowance.RULE_VERSION,
            request_context,
        )
        return result

    async def get_audit_trail(self, travel_request_id: str) -> list[CalculationAuditRecord]:
        return await self.ledger.get_audit_trail(travel_request_id)

    async def query_audit(self, query: AuditQuery) -> list[CalculationAuditRecord]:
        return await self.ledger.query(query)

    async def invalidate_cache(
        self,
        employee_id: Optional[str] = None,
        subproject_id: Optional[str] = None,
        project_id: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> int:
        return await self.invalidation.invalidate(
            employee_id=employee_id,
            subproject_id=subproject_id,
            project_id=project_id,
            location=location,
        )

    async def cleanup_expired(self) -> int:
        return await self.janitor.evict_expired()

    def cache_stats(self) -> CacheStats:
        return self.cache.stats.model_copy()

    # ------------------------------------------------------------------
    # Standalone calculators (uncached, pure)
    # ------------------------------------------------------------------

    def calculate_distance(self, origin: GeoPoint, destination: GeoPoint) -> DistanceResult:
        return DistanceResult(distance_km=distance_km(origin, destination), computed_at=self._clock())

    def calculate_allowance(
        self, distance: Decimal, cost_per_km: Decimal, days: int = 1
    ) -> AllowanceQuote:
        amount = allowance.calculate_allowance(distance, cost_per_km, days)
        return AllowanceQuote(
            distance_km=distance,
            cost_per_km=cost_per_km,
            days=days,
            allowance=amount,
            rule_version=allowance.RULE_VERSION,
        )
