"""
Audit ledger tests: append-only ordering, search, and durable-write failure.
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from travelcost.calculation.audit import InMemoryAuditLedger, SqlAuditLedger
from travelcost.calculation.exceptions import AuditRecordImmutable, AuditWriteFailed
from travelcost.calculation.schemas import (
    AuditInputSnapshot,
    AuditQuery,
    CalculationResult,
)
from travelcost.models.calculation_audit import CalculationAuditORM, _refuse_delete, _refuse_update
from travelcost.tests.fakes import BERN, ZURICH_HB, FakeClock


def make_snapshot(employee_id: str = "emp-anna", subproject_id: str = "sub-bern") -> AuditInputSnapshot:
    return AuditInputSnapshot(
        employee_id=employee_id,
        subproject_id=subproject_id,
        project_id="proj-rail",
        days_per_week=5,
        employee_location=ZURICH_HB,
        subproject_location=BERN,
        cost_per_km=Decimal("0.70"),
        rate_source="subproject",
        fingerprint="f" * 64,
    )


def make_result(clock: FakeClock) -> CalculationResult:
    return CalculationResult(
        distance_km=Decimal("96.100"),
        daily_allowance=Decimal("134.54"),
        weekly_allowance=Decimal("672.70"),
        monthly_allowance=Decimal("2915.03"),
        cost_per_km_used=Decimal("0.70"),
        computed_at=clock(),
    )


# ===========================================================================
# In-memory ledger
# ===========================================================================

@pytest.mark.asyncio
async def test_trail_is_in_creation_order(ledger: InMemoryAuditLedger, clock: FakeClock) -> None:
    await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0", {"reason": "submission"})
    clock.advance(60)
    await ledger.record("tr-2", make_snapshot(), make_result(clock), "1.0")
    clock.advance(60)
    await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0", {"reason": "approval"})

    trail = await ledger.get_audit_trail("tr-1")

    assert [r.request_context["reason"] for r in trail] == ["submission", "approval"]
    assert trail[0].sequence < trail[1].sequence
    assert trail[0].computed_at < trail[1].computed_at
    assert len({r.id for r in trail}) == 2


@pytest.mark.asyncio
async def test_unknown_travel_request_has_empty_trail(ledger: InMemoryAuditLedger) -> None:
    assert await ledger.get_audit_trail("tr-none") == []


@pytest.mark.asyncio
async def test_record_keeps_snapshots_and_rule_version(
    ledger: InMemoryAuditLedger, clock: FakeClock
) -> None:
    snapshot = make_snapshot()
    result = make_result(clock)

    stored = await ledger.record("tr-1", snapshot, result, "1.0")

    assert stored.input_snapshot == snapshot
    assert stored.result_snapshot == result
    assert stored.rule_version == "1.0"
    assert stored.employee_id == "emp-anna"
    assert stored.subproject_id == "sub-bern"
    assert stored.computed_at == clock()


@pytest.mark.asyncio
async def test_query_filters_newest_first(ledger: InMemoryAuditLedger, clock: FakeClock) -> None:
    start = clock()
    for i in range(5):
        employee = "emp-anna" if i % 2 == 0 else "emp-marco"
        await ledger.record(f"tr-{i}", make_snapshot(employee_id=employee), make_result(clock), "1.0")
        clock.advance(3600)

    anna = await ledger.query(AuditQuery(employee_id="emp-anna"))
    assert [r.travel_request_id for r in anna] == ["tr-4", "tr-2", "tr-0"]

    window = await ledger.query(AuditQuery(start=start.replace(hour=9), end=start.replace(hour=11)))
    assert [r.travel_request_id for r in window] == ["tr-3", "tr-2", "tr-1"]

    limited = await ledger.query(AuditQuery(limit=2))
    assert [r.travel_request_id for r in limited] == ["tr-4", "tr-3"]

    assert await ledger.query(AuditQuery(subproject_id="sub-unknown")) == []


def test_query_limit_bounds() -> None:
    with pytest.raises(ValueError):
        AuditQuery(limit=0)
    with pytest.raises(ValueError):
        AuditQuery(limit=1001)


# ===========================================================================
# SQL ledger: failure paths with a mocked session
# ===========================================================================

def _session_factory(db: MagicMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = db
    factory.return_value.__aexit__.return_value = False
    return factory


@pytest.mark.asyncio
async def test_sql_ledger_write_failure_raises_audit_write_failed(clock: FakeClock) -> None:
    db = MagicMock()
    db.flush = AsyncMock(side_effect=OperationalError("INSERT INTO calculation_audit", {}, Exception("db down")))
    ledger = SqlAuditLedger(_session_factory(db), clock=clock)

    with pytest.raises(AuditWriteFailed) as exc_info:
        await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0")

    assert exc_info.value.details == {"travel_request_id": "tr-1"}
    assert exc_info.value.status_code == 500
    db.add.assert_called_once()


@pytest.mark.asyncio
async def test_sql_ledger_commit_failure_raises_audit_write_failed(clock: FakeClock) -> None:
    db = MagicMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.commit = AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("connection lost")))
    ledger = SqlAuditLedger(_session_factory(db), clock=clock)

    # refresh() is mocked, so give the pending row the sequence the database would assign
    db.add.side_effect = lambda orm: setattr(orm, "sequence", 1)

    with pytest.raises(AuditWriteFailed):
        await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0")


@pytest.mark.asyncio
async def test_sql_ledger_connection_refused_raises_audit_write_failed(clock: FakeClock) -> None:
    # asyncpg connects lazily on the first flush; a refused socket surfaces as OSError
    db = MagicMock()
    db.flush = AsyncMock(side_effect=ConnectionRefusedError(111, "Connect call failed"))
    ledger = SqlAuditLedger(_session_factory(db), clock=clock)

    with pytest.raises(AuditWriteFailed) as exc_info:
        await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0")

    assert exc_info.value.code == "AUDIT_WRITE_FAILED"
    assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)


@pytest.mark.asyncio
async def test_sql_ledger_persists_json_snapshots(clock: FakeClock) -> None:
    db = MagicMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.commit = AsyncMock()
    added: list[CalculationAuditORM] = []

    def _add(orm: CalculationAuditORM) -> None:
        orm.sequence = 7
        added.append(orm)

    db.add.side_effect = _add
    ledger = SqlAuditLedger(_session_factory(db), clock=clock)

    stored = await ledger.record("tr-1", make_snapshot(), make_result(clock), "1.0", {"request_id": "r-1"})

    assert stored.sequence == 7
    row = added[0]
    assert row.result_snapshot["daily_allowance"] == "134.54"
    assert row.input_snapshot["cost_per_km"] == "0.70"
    assert row.request_context == {"request_id": "r-1"}
    db.commit.assert_awaited_once()


def test_orm_refuses_update_and_delete() -> None:
    target = CalculationAuditORM(id="rec-1")
    with pytest.raises(AuditRecordImmutable):
        _refuse_update(None, None, target)
    with pytest.raises(AuditRecordImmutable):
        _refuse_delete(None, None, target)
