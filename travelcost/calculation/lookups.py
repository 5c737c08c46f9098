"""
lookups.py: Collaborator contracts for employee and subproject data.

The engine never owns employee or project data; it asks two lookups:
  EmployeeLookup.get_home_location(employee_id) -> GeoPoint
  SubprojectLookup.get_subproject_location_and_rate(subproject_id) -> SubprojectSite

The SQL-backed implementations below read through store.py. Tests substitute
in-memory fakes. Every call goes through `bounded()` so a slow store surfaces
LookupUnavailable instead of blocking a calculation indefinitely.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from travelcost import store
from travelcost.calculation.exceptions import (
    EmployeeNotFound,
    LookupUnavailable,
    SubprojectNotFound,
)
from travelcost.calculation.schemas import GeoPoint, SubprojectSite

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AsyncSession]


class EmployeeLookup(Protocol):
    async def get_home_location(self, employee_id: str) -> GeoPoint:
        """Raise EmployeeNotFound when the employee is unknown."""
        ...


class SubprojectLookup(Protocol):
    async def get_subproject_location_and_rate(self, subproject_id: str) -> SubprojectSite:
        """Raise SubprojectNotFound when the subproject is unknown or inactive."""
        ...


async def bounded(awaitable: Awaitable[T], timeout: float, lookup: str, identifier: str) -> T:
    """Await with a timeout, translating expiry into LookupUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s lookup timed out id=%s timeout=%.3fs", lookup, identifier, timeout)
        raise LookupUnavailable(lookup, identifier, timeout) from None


# ---------------------------------------------------------------------------
# SQL-backed lookups
# ---------------------------------------------------------------------------

class SqlEmployeeLookup:
    """Reads employees.home_latitude/home_longitude, one short session per call."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_home_location(self, employee_id: str) -> GeoPoint:
        async with self._session_factory() as db:
            location = await store.get_home_location(db, employee_id)
        if location is None:
            raise EmployeeNotFound(employee_id)
        return location


class SqlSubprojectLookup:
    """Reads an active subproject joined with its project's default rate."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_subproject_location_and_rate(self, subproject_id: str) -> SubprojectSite:
        async with self._session_factory() as db:
            site = await store.get_subproject_site(db, subproject_id)
        if site is None:
            raise SubprojectNotFound(subproject_id)
        return site
