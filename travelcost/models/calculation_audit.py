"""
models/calculation_audit.py: SQLAlchemy ORM model for the audit ledger.

Table: calculation_audit
Append-only: mapper events below refuse UPDATE and DELETE issued through the ORM.
sequence is a database IDENTITY column and the authoritative creation order.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Identity, String, event
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from travelcost.calculation.exceptions import AuditRecordImmutable
from travelcost.database import Base


class CalculationAuditORM(Base):
    """
    input_snapshot:  AuditInputSnapshot as JSONB (locations, rate, rate source, fingerprint).
    result_snapshot: CalculationResult as JSONB, decimals stored as strings.
    employee_id / subproject_id are denormalised for reporting queries.
    """
    __tablename__ = "calculation_audit"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    sequence: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        nullable=False,
        unique=True,
    )
    travel_request_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Travel request this calculation was bound to",
    )
    employee_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subproject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    input_snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    result_snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    rule_version: Mapped[str] = mapped_column(String(20), nullable=False)
    request_context: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )


@event.listens_for(CalculationAuditORM, "before_update")
def _refuse_update(mapper, connection, target: CalculationAuditORM) -> None:
    raise AuditRecordImmutable(target.id, "update")


@event.listens_for(CalculationAuditORM, "before_delete")
def _refuse_delete(mapper, connection, target: CalculationAuditORM) -> None:
    raise AuditRecordImmutable(target.id, "delete")
