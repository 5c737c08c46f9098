"""
Test configuration for the travel cost engine.

Every test runs against in-process collaborators: InMemoryCacheBackend,
InMemoryAuditLedger, dict-backed lookups and a manually advanced clock
(see fakes.py). No PostgreSQL or Redis is needed.
"""
from __future__ import annotations

import pytest

from travelcost.cache import InMemoryCacheBackend
from travelcost.calculation.audit import InMemoryAuditLedger
from travelcost.calculation.calculation_cache import CalculationCache
from travelcost.calculation.service import TravelCostService
from travelcost.tests.fakes import (
    BASEL,
    BERN,
    ZURICH_HB,
    FakeClock,
    FakeEmployeeLookup,
    FakeSubprojectLookup,
    make_site,
)

TTL_SECONDS = 86400


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def cache(backend: InMemoryCacheBackend, clock: FakeClock) -> CalculationCache:
    return CalculationCache(
        backend,
        ttl_seconds=TTL_SECONDS,
        read_retries=2,
        retry_backoff_seconds=0,
        clock=clock,
    )


@pytest.fixture
def employees() -> FakeEmployeeLookup:
    return FakeEmployeeLookup({
        "emp-anna": ZURICH_HB,
        "emp-marco": BASEL,
    })


@pytest.fixture
def subprojects() -> FakeSubprojectLookup:
    return FakeSubprojectLookup({
        "sub-bern": make_site("sub-bern", BERN, cost_per_km="0.70"),
        "sub-basel": make_site("sub-basel", BASEL),                    # project default 0.70
        "sub-orphan": make_site("sub-orphan", BERN, project_id="proj-closed", project_default=None),
        "sub-metro": make_site("sub-metro", ZURICH_HB, project_id="proj-metro", project_default="0.55"),
    })


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryAuditLedger:
    return InMemoryAuditLedger(clock=clock)


@pytest.fixture
def service(
    employees: FakeEmployeeLookup,
    subprojects: FakeSubprojectLookup,
    cache: CalculationCache,
    ledger: InMemoryAuditLedger,
) -> TravelCostService:
    return TravelCostService(
        employees=employees,
        subprojects=subprojects,
        cache=cache,
        ledger=ledger,
        lookup_timeout=0.5,
        janitor_interval_seconds=0,
    )
