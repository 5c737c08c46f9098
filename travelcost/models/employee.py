"""
models/employee.py: Read model of employees for the distance calculation.

Table: employees
Only the columns the engine reads are mapped. The profile service owns the
table and fires an address-changed event after every home location edit.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from travelcost.database import Base


class EmployeeORM(Base):
    """
    home_latitude / home_longitude: geocoded home address (WGS84). Personal
    data: never logged, never echoed in SQL logs.
    """
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    home_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    home_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
