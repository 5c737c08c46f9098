"""
TravelCostService tests: the exposed operations end to end with in-process
collaborators.

Scenario used throughout: Anna lives near Zürich HB and commutes to the
Bern site (subproject override 0.70 CHF/km) five days a week.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from travelcost.cache import InMemoryCacheBackend
from travelcost.calculation import allowance
from travelcost.calculation.audit import InMemoryAuditLedger
from travelcost.calculation.calculation_cache import CalculationCache
from travelcost.calculation.exceptions import (
    AuditWriteFailed,
    EmployeeNotFound,
    InvalidAmount,
    InvalidFrequency,
    LookupUnavailable,
    RateNotFound,
    SubprojectNotFound,
)
from travelcost.calculation.fingerprint import canonical_location
from travelcost.calculation.geo import distance_km
from travelcost.calculation.schemas import AuditQuery, GeoPoint
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


class FailingLedger(InMemoryAuditLedger):
    async def _append(self, draft):
        raise AuditWriteFailed(draft["travel_request_id"], "OperationalError")


# ===========================================================================
# preview_calculation
# ===========================================================================

@pytest.mark.asyncio
async def test_preview_end_to_end(service: TravelCostService, clock: FakeClock) -> None:
    result = await service.preview_calculation("emp-anna", "sub-bern", 5)

    expected_distance = distance_km(ZURICH_HB, BERN)
    expected = allowance.calculate(expected_distance, Decimal("0.70"), 5)

    assert result.distance_km == expected_distance
    assert result.cost_per_km_used == Decimal("0.70")
    assert result.daily_allowance == expected.daily_allowance
    assert result.weekly_allowance == result.daily_allowance * 5
    assert result.monthly_allowance == expected.monthly_allowance
    assert result.computed_at == clock()


@pytest.mark.asyncio
async def test_preview_uses_project_default_rate(service: TravelCostService) -> None:
    result = await service.preview_calculation("emp-anna", "sub-metro", 5)
    assert result.cost_per_km_used == Decimal("0.55")
    assert result.distance_km == Decimal("0.000")
    assert result.daily_allowance == Decimal("0.00")


@pytest.mark.asyncio
async def test_preview_is_cached_and_not_audited(
    service: TravelCostService, cache: CalculationCache, ledger: InMemoryAuditLedger
) -> None:
    first = await service.preview_calculation("emp-anna", "sub-bern", 5)
    second = await service.preview_calculation("emp-anna", "sub-bern", 5)

    assert first == second
    assert cache.stats.computations == 1
    assert cache.stats.hits == 1
    assert await ledger.query(AuditQuery()) == []


@pytest.mark.asyncio
async def test_preview_survives_audit_outage(
    employees: FakeEmployeeLookup, subprojects: FakeSubprojectLookup, cache: CalculationCache
) -> None:
    service = TravelCostService(employees, subprojects, cache, FailingLedger())
    result = await service.preview_calculation("emp-anna", "sub-bern", 5)
    assert result.daily_allowance > 0


@pytest.mark.asyncio
async def test_concurrent_previews_compute_once(
    service: TravelCostService, cache: CalculationCache
) -> None:
    results = await asyncio.gather(
        *(service.preview_calculation("emp-anna", "sub-bern", 5) for _ in range(20))
    )
    assert cache.stats.computations == 1
    assert cache.stats.hits + cache.stats.shared_waits == 19
    assert len({r.daily_allowance for r in results}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, 8])
async def test_invalid_frequency_rejected_before_lookups(
    service: TravelCostService, employees: FakeEmployeeLookup, days: int
) -> None:
    with pytest.raises(InvalidFrequency):
        await service.preview_calculation("emp-anna", "sub-bern", days)
    assert employees.calls == 0


@pytest.mark.asyncio
async def test_unknown_employee(service: TravelCostService) -> None:
    with pytest.raises(EmployeeNotFound):
        await service.preview_calculation("emp-ghost", "sub-bern", 5)


@pytest.mark.asyncio
async def test_unknown_subproject(service: TravelCostService) -> None:
    with pytest.raises(SubprojectNotFound):
        await service.preview_calculation("emp-anna", "sub-ghost", 5)


@pytest.mark.asyncio
async def test_missing_rate_is_not_cached(
    service: TravelCostService, backend
) -> None:
    with pytest.raises(RateNotFound):
        await service.preview_calculation("emp-anna", "sub-orphan", 5)
    assert len(backend) == 0


@pytest.mark.asyncio
async def test_slow_employee_lookup_times_out(
    subprojects: FakeSubprojectLookup, cache: CalculationCache, ledger: InMemoryAuditLedger
) -> None:
    slow = FakeEmployeeLookup({"emp-anna": ZURICH_HB}, delay=0.5)
    service = TravelCostService(slow, subprojects, cache, ledger, lookup_timeout=0.01)
    with pytest.raises(LookupUnavailable) as exc_info:
        await service.preview_calculation("emp-anna", "sub-bern", 5)
    assert exc_info.value.details["lookup"] == "employee"


# ===========================================================================
# Freshness: values, not ids, key the cache
# ===========================================================================

@pytest.mark.asyncio
async def test_address_change_never_serves_stale_result(
    service: TravelCostService, employees: FakeEmployeeLookup, cache: CalculationCache
) -> None:
    before = await service.preview_calculation("emp-anna", "sub-bern", 5)

    # Address edited, but no invalidation event delivered
    employees.homes["emp-anna"] = BASEL
    after = await service.preview_calculation("emp-anna", "sub-bern", 5)

    assert after.distance_km == distance_km(BASEL, BERN)
    assert after.distance_km != before.distance_km
    assert cache.stats.computations == 2


@pytest.mark.asyncio
async def test_rate_change_never_serves_stale_result(
    service: TravelCostService, subprojects: FakeSubprojectLookup
) -> None:
    before = await service.preview_calculation("emp-anna", "sub-bern", 5)

    site = subprojects.sites["sub-bern"]
    subprojects.sites["sub-bern"] = site.model_copy(update={"cost_per_km": Decimal("0.80")})
    after = await service.preview_calculation("emp-anna", "sub-bern", 5)

    assert after.cost_per_km_used == Decimal("0.80")
    assert after.daily_allowance > before.daily_allowance


@pytest.mark.asyncio
async def test_expired_entry_is_not_served(
    service: TravelCostService, cache: CalculationCache, clock: FakeClock
) -> None:
    first = await service.preview_calculation("emp-anna", "sub-bern", 5)
    clock.advance(86400)
    second = await service.preview_calculation("emp-anna", "sub-bern", 5)

    assert cache.stats.computations == 2
    assert second.computed_at > first.computed_at


# ===========================================================================
# calculate_and_audit / get_audit_trail
# ===========================================================================

@pytest.mark.asyncio
async def test_calculate_and_audit_writes_one_record(
    service: TravelCostService, clock: FakeClock
) -> None:
    context = {"request_id": "req-1", "requested_by": "user-7", "reason": "submission"}
    result = await service.calculate_and_audit("tr-100", "emp-anna", "sub-bern", 5, context)

    trail = await service.get_audit_trail("tr-100")
    assert len(trail) == 1
    record = trail[0]
    assert record.result_snapshot == result
    assert record.rule_version == allowance.RULE_VERSION
    assert record.request_context == context
    assert record.input_snapshot.employee_location == ZURICH_HB
    assert record.input_snapshot.subproject_location == BERN
    assert record.input_snapshot.cost_per_km == Decimal("0.70")
    assert record.input_snapshot.rate_source == "subproject"
    assert record.input_snapshot.project_id == "proj-rail"


@pytest.mark.asyncio
async def test_audit_is_independent_of_cache_hits(
    service: TravelCostService, cache: CalculationCache, clock: FakeClock
) -> None:
    await service.calculate_and_audit("tr-100", "emp-anna", "sub-bern", 5, {"reason": "submission"})
    clock.advance(3600)
    await service.calculate_and_audit("tr-100", "emp-anna", "sub-bern", 5, {"reason": "approval"})

    trail = await service.get_audit_trail("tr-100")
    assert [r.request_context["reason"] for r in trail] == ["submission", "approval"]
    assert trail[0].sequence < trail[1].sequence
    assert cache.stats.computations == 1
    assert trail[0].result_snapshot == trail[1].result_snapshot


@pytest.mark.asyncio
async def test_preview_and_audited_results_agree(service: TravelCostService) -> None:
    preview = await service.preview_calculation("emp-marco", "sub-bern", 3)
    audited = await service.calculate_and_audit("tr-200", "emp-marco", "sub-bern", 3)
    assert preview == audited


@pytest.mark.asyncio
async def test_audit_failure_fails_the_call(
    employees: FakeEmployeeLookup, subprojects: FakeSubprojectLookup, cache: CalculationCache
) -> None:
    service = TravelCostService(employees, subprojects, cache, FailingLedger())
    with pytest.raises(AuditWriteFailed):
        await service.calculate_and_audit("tr-100", "emp-anna", "sub-bern", 5)
    assert await service.get_audit_trail("tr-100") == []


@pytest.mark.asyncio
async def test_query_audit_newest_first(service: TravelCostService, clock: FakeClock) -> None:
    await service.calculate_and_audit("tr-1", "emp-anna", "sub-bern", 5)
    clock.advance(60)
    await service.calculate_and_audit("tr-2", "emp-marco", "sub-bern", 5)
    clock.advance(60)
    await service.calculate_and_audit("tr-3", "emp-anna", "sub-basel", 2)

    records = await service.query_audit(AuditQuery(employee_id="emp-anna"))
    assert [r.travel_request_id for r in records] == ["tr-3", "tr-1"]

    records = await service.query_audit(AuditQuery(subproject_id="sub-bern", limit=1))
    assert [r.travel_request_id for r in records] == ["tr-2"]


# ===========================================================================
# Standalone calculators and stats
# ===========================================================================

def test_standalone_distance_is_uncached(service: TravelCostService, cache: CalculationCache) -> None:
    result = service.calculate_distance(ZURICH_HB, BASEL)
    assert result.distance_km == distance_km(ZURICH_HB, BASEL)
    assert cache.stats.computations == 0


def test_standalone_allowance_quote(service: TravelCostService) -> None:
    quote = service.calculate_allowance(Decimal("12.345"), Decimal("0.70"), days=20)
    assert quote.allowance == Decimal("345.60")
    assert quote.rule_version == "1.0"


def test_standalone_allowance_rejects_negative_distance(service: TravelCostService) -> None:
    with pytest.raises(InvalidAmount):
        service.calculate_allowance(Decimal("-1"), Decimal("0.70"))


@pytest.mark.asyncio
async def test_cache_stats_is_a_snapshot(service: TravelCostService) -> None:
    await service.preview_calculation("emp-anna", "sub-bern", 5)
    stats = service.cache_stats()
    await service.preview_calculation("emp-anna", "sub-bern", 5)

    assert stats.misses == 1
    assert stats.hits == 0
    assert service.cache_stats().hits == 1


def test_geo_point_is_immutable() -> None:
    point = GeoPoint(latitude=47.0, longitude=8.0)
    with pytest.raises(ValidationError):
        point.latitude = 48.0


# ===========================================================================
# Reference commute: Zürich → Bern, 0.70 CHF/km, three days a week
# ===========================================================================

@pytest.mark.asyncio
async def test_reference_commute_then_preview_is_coherent(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    zurich = GeoPoint(latitude=47.3769, longitude=8.5417)
    bern = GeoPoint(latitude=46.9481, longitude=7.4474)
    employees = FakeEmployeeLookup({"emp-ref": zurich})
    subprojects = FakeSubprojectLookup(
        {"sub-ref": make_site("sub-ref", bern, cost_per_km="0.70")}
    )
    cache = CalculationCache(InMemoryCacheBackend(), ttl_seconds=86400, clock=clock)
    service = TravelCostService(employees, subprojects, cache, ledger)

    audited = await service.calculate_and_audit("tr-ref", "emp-ref", "sub-ref", 3)
    preview = await service.preview_calculation("emp-ref", "sub-ref", 3)

    assert Decimal("94") < audited.distance_km < Decimal("97")
    assert audited.daily_allowance == allowance.round_money(audited.distance_km * Decimal("0.70") * 2)
    assert audited.weekly_allowance == audited.daily_allowance * 3
    assert (preview.distance_km, preview.daily_allowance, preview.weekly_allowance) == (
        audited.distance_km,
        audited.daily_allowance,
        audited.weekly_allowance,
    )
    assert len(await service.get_audit_trail("tr-ref")) == 1

    # Address moves: invalidation by employee forces a recompute on next access
    employees.homes["emp-ref"] = BASEL
    assert await service.invalidate_cache(employee_id="emp-ref") == 1
    await service.preview_calculation("emp-ref", "sub-ref", 3)
    assert cache.stats.computations == 2


# ===========================================================================
# Employees whose inputs land on one fingerprint
# ===========================================================================

# Two homes 9 mm apart: both snap to latitude 47.3769086 on the fingerprint grid
HOME_NORTH = GeoPoint(latitude=47.37690864, longitude=8.5417)
HOME_SOUTH = GeoPoint(latitude=47.37690856, longitude=8.5417)
BERN_REF = GeoPoint(latitude=46.9481, longitude=7.4474)


def _service_for(homes: dict[str, GeoPoint], ledger: InMemoryAuditLedger, clock: FakeClock):
    employees = FakeEmployeeLookup(homes)
    subprojects = FakeSubprojectLookup(
        {"sub-ref": make_site("sub-ref", BERN_REF, cost_per_km="0.70")}
    )
    cache = CalculationCache(InMemoryCacheBackend(), ttl_seconds=86400, clock=clock)
    return TravelCostService(employees, subprojects, cache, ledger), cache


@pytest.mark.asyncio
async def test_inputs_sharing_a_fingerprint_get_the_same_result(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    service, cache = _service_for({"emp-north": HOME_NORTH, "emp-south": HOME_SOUTH}, ledger, clock)

    south = await service.preview_calculation("emp-south", "sub-ref", 3)
    north = await service.calculate_and_audit("tr-north", "emp-north", "sub-ref", 3)

    assert cache.stats.computations == 1
    assert north == south

    snapshot = (await service.get_audit_trail("tr-north"))[0].input_snapshot
    assert snapshot.employee_location == canonical_location(HOME_NORTH) == canonical_location(HOME_SOUTH)
    # the audited result is reproducible from the audited inputs
    assert distance_km(snapshot.employee_location, snapshot.subproject_location) == north.distance_km


@pytest.mark.asyncio
async def test_computation_order_does_not_change_audited_distance(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    homes = {"emp-north": HOME_NORTH, "emp-south": HOME_SOUTH}
    first, _ = _service_for(homes, ledger, clock)
    second, _ = _service_for(homes, InMemoryAuditLedger(clock=clock), clock)

    await first.preview_calculation("emp-south", "sub-ref", 3)
    from_shared_entry = await first.calculate_and_audit("tr-1", "emp-north", "sub-ref", 3)
    computed_directly = await second.calculate_and_audit("tr-1", "emp-north", "sub-ref", 3)

    assert from_shared_entry.distance_km == computed_directly.distance_km
    assert from_shared_entry.daily_allowance == computed_directly.daily_allowance


@pytest.mark.asyncio
async def test_invalidating_either_colleague_at_one_home_forces_recompute(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    service, cache = _service_for({"emp-a": ZURICH_HB, "emp-b": ZURICH_HB}, ledger, clock)

    await service.preview_calculation("emp-a", "sub-ref", 3)
    await service.preview_calculation("emp-b", "sub-ref", 3)
    assert cache.stats.computations == 1

    assert await service.invalidate_cache(employee_id="emp-b") == 1
    await service.preview_calculation("emp-b", "sub-ref", 3)
    assert cache.stats.computations == 2

    assert await service.invalidate_cache(employee_id="emp-a") == 1
    await service.preview_calculation("emp-a", "sub-ref", 3)
    assert cache.stats.computations == 3


@pytest.mark.asyncio
async def test_colleague_joining_in_flight_computation_is_indexed(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    service, cache = _service_for({"emp-a": ZURICH_HB, "emp-b": ZURICH_HB}, ledger, clock)

    await asyncio.gather(
        service.preview_calculation("emp-a", "sub-ref", 3),
        service.preview_calculation("emp-b", "sub-ref", 3),
    )
    assert cache.stats.computations == 1

    assert await service.invalidate_cache(employee_id="emp-b") == 1
    await service.preview_calculation("emp-a", "sub-ref", 3)
    assert cache.stats.computations == 2
