"""
models/project.py: Read models of projects and subprojects.

Tables: projects, subprojects
A subproject's cost_per_km is an optional override of its project's
default_cost_per_km. Both are NUMERIC(10,2) and mapped to Decimal.
"""
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Float, ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from travelcost.database import Base


class ProjectORM(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    default_cost_per_km: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="CHF per km when the subproject has no override",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SubprojectORM(Base):
    __tablename__ = "subprojects"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    cost_per_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        nullable=True,
        comment="Override of projects.default_cost_per_km: NULL means use the default",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
