"""
invalidation.py: Invalidation coordinator.

Fingerprints hash values, so a changed address or rate can never produce a
stale hit. Eviction on change events is a freshness/size optimisation only:
it drops entries nobody will ask for again instead of waiting for their TTL.

Reverse index (registered by the cache atomically with each entry):
  employee:{employee_id}       every fingerprint computed for that employee
  subproject:{subproject_id}   every fingerprint computed for that subproject
  project:{project_id}         every fingerprint computed under that project's rate
  location:{lat,lon}           every fingerprint whose home or site was that point

Failures here are logged and reported as 0 evictions, never raised: if the
index or the backend is gone, entries age out through TTL.
"""
from __future__ import annotations

import logging
from typing import Optional

from travelcost.calculation.calculation_cache import CalculationCache
from travelcost.calculation.exceptions import CacheUnavailable
from travelcost.calculation.fingerprint import canonical_point
from travelcost.calculation.schemas import GeoPoint, SubprojectSite

logger = logging.getLogger(__name__)


def employee_index_key(employee_id: str) -> str:
    return f"employee:{employee_id}"


def subproject_index_key(subproject_id: str) -> str:
    return f"subproject:{subproject_id}"


def project_index_key(project_id: str) -> str:
    return f"project:{project_id}"


def location_index_key(point: GeoPoint) -> str:
    return f"location:{canonical_point(point)}"


def index_keys_for(employee_id: str, home: GeoPoint, site: SubprojectSite) -> tuple[str, ...]:
    """All reverse-index sets a travel fingerprint must be registered in."""
    keys = [
        employee_index_key(employee_id),
        subproject_index_key(site.subproject_id),
        location_index_key(home),
        location_index_key(site.location),
    ]
    if site.project_id is not None:
        keys.append(project_index_key(site.project_id))
    return tuple(dict.fromkeys(keys))


class InvalidationCoordinator:
    def __init__(self, cache: CalculationCache) -> None:
        self._cache = cache

    async def _evict(self, index_key: str) -> int:
        try:
            evicted = await self._cache.evict_index(index_key)
        except CacheUnavailable as exc:
            logger.warning("Invalidation skipped index=%s: %s", index_key.split(":")[0], exc.message)
            return 0
        logger.info("Invalidated %d cache entries index=%s", evicted, index_key.split(":")[0])
        return evicted

    async def on_address_changed(self, employee_id: str) -> int:
        """Employee home location edited."""
        logger.info("Address changed employee_id=%s", employee_id)
        return await self._evict(employee_index_key(employee_id))

    async def on_rate_changed(
        self,
        subproject_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> int:
        """
        Subproject override or project default rate edited. A project-level
        change evicts everything computed for any of its subprojects.
        Also fired when a subproject's location is edited.
        """
        if subproject_id is None and project_id is None:
            raise ValueError("on_rate_changed needs subproject_id or project_id")
        logger.info("Rate changed subproject_id=%s project_id=%s", subproject_id, project_id)
        evicted = 0
        if subproject_id is not None:
            evicted += await self._evict(subproject_index_key(subproject_id))
        if project_id is not None:
            evicted += await self._evict(project_index_key(project_id))
        return evicted

    async def on_location_changed(self, point: GeoPoint) -> int:
        """Drop every entry that used this exact point as home or site."""
        return await self._evict(location_index_key(point))

    async def invalidate(
        self,
        employee_id: Optional[str] = None,
        subproject_id: Optional[str] = None,
        project_id: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> int:
        """Administrative trigger. Idempotent; no arguments is a no-op."""
        evicted = 0
        if employee_id is not None:
            evicted += await self.on_address_changed(employee_id)
        if subproject_id is not None or project_id is not None:
            evicted += await self.on_rate_changed(subproject_id=subproject_id, project_id=project_id)
        if location is not None:
            evicted += await self.on_location_changed(location)
        return evicted
