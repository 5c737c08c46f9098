"""initial_schema

Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-09-14 09:00:00.000000 UTC

Creates the read-side tables the engine looks up:
  - employees     (home location, WGS84)
  - projects      (default cost per km)
  - subprojects   (site location, optional cost per km override)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- employees table ---
    op.create_table(
        "employees",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("home_latitude", sa.Float(), nullable=False, comment="Geocoded home latitude. Personal data, never logged."),
        sa.Column("home_longitude", sa.Float(), nullable=False, comment="Geocoded home longitude. Personal data, never logged."),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("home_latitude BETWEEN -90 AND 90", name="ck_employees_home_latitude"),
        sa.CheckConstraint("home_longitude BETWEEN -180 AND 180", name="ck_employees_home_longitude"),
    )

    # --- projects table ---
    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("default_cost_per_km", sa.Numeric(10, 2), nullable=False, comment="CHF per km when the subproject has no override"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("default_cost_per_km >= 0", name="ck_projects_default_cost_per_km"),
    )

    # --- subprojects table ---
    op.create_table(
        "subprojects",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("cost_per_km", sa.Numeric(10, 2), nullable=True, comment="Override of projects.default_cost_per_km: NULL means use the default"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], name="fk_subprojects_project_id"),
        sa.CheckConstraint("cost_per_km IS NULL OR cost_per_km >= 0", name="ck_subprojects_cost_per_km"),
    )
    op.create_index(op.f("ix_subprojects_project_id"), "subprojects", ["project_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_subprojects_project_id"), table_name="subprojects")
    op.drop_table("subprojects")
    op.drop_table("projects")
    op.drop_table("employees")
