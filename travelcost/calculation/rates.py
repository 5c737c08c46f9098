"""
rates.py: Rate resolver.

The applicable cost per km is the subproject's own rate when set, otherwise the
parent project's default. Neither being available is a data-integrity gap
(RateNotFound) and is never retried.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from travelcost.calculation.allowance import round_money
from travelcost.calculation.exceptions import RateNotFound
from travelcost.calculation.lookups import SubprojectLookup, bounded
from travelcost.calculation.schemas import ResolvedRate, SubprojectSite

logger = logging.getLogger(__name__)


def resolve_site_rate(site: SubprojectSite) -> ResolvedRate:
    """Pure resolution step: override first, project default second."""
    if site.cost_per_km is not None:
        return ResolvedRate(cost_per_km=round_money(site.cost_per_km), source="subproject")
    if site.project_default_cost_per_km is not None:
        return ResolvedRate(
            cost_per_km=round_money(site.project_default_cost_per_km),
            source="project",
        )
    raise RateNotFound(site.subproject_id, site.project_id)


class RateResolver:
    def __init__(self, subprojects: SubprojectLookup, timeout: float) -> None:
        self._subprojects = subprojects
        self._timeout = timeout

    async def resolve(self, subproject_id: str) -> tuple[SubprojectSite, ResolvedRate]:
        """Fetch the subproject once and return it with its resolved rate."""
        site = await bounded(
            self._subprojects.get_subproject_location_and_rate(subproject_id),
            self._timeout,
            "subproject",
            subproject_id,
        )
        try:
            rate = resolve_site_rate(site)
        except RateNotFound:
            logger.error(
                "No rate resolvable subproject_id=%s project_id=%s",
                subproject_id,
                site.project_id,
            )
            raise
        logger.debug(
            "Rate resolved subproject_id=%s source=%s cost_per_km=%s",
            subproject_id,
            rate.source,
            rate.cost_per_km,
        )
        return site, rate

    async def resolve_rate(self, subproject_id: str) -> Decimal:
        """resolveRate(subprojectId) -> costPerKm"""
        _, rate = await self.resolve(subproject_id)
        return rate.cost_per_km
