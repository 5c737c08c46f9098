"""add_calculation_audit

Revision ID: 002_add_calculation_audit
Revises: 001_initial_schema
Create Date: 2026-09-14 10:30:00.000000 UTC

Adds the append-only calculation_audit ledger.
sequence is an IDENTITY column: the database assigns creation order.
A trigger rejects UPDATE and DELETE so the ledger stays append-only even
for writes that bypass the ORM.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002_add_calculation_audit"
down_revision: Union[str, None] = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "calculation_audit",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("sequence", sa.BigInteger(), sa.Identity(always=True), nullable=False),
        sa.Column(
            "travel_request_id", sa.String(64), nullable=False,
            comment="Travel request this calculation was bound to",
        ),
        sa.Column("employee_id", sa.String(64), nullable=False),
        sa.Column("subproject_id", sa.String(64), nullable=False),
        sa.Column("input_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("result_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("rule_version", sa.String(20), nullable=False),
        sa.Column("request_context", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sequence", name="uq_calculation_audit_sequence"),
    )
    op.create_index("ix_calculation_audit_travel_request_id", "calculation_audit", ["travel_request_id"], unique=False)
    op.create_index("ix_calculation_audit_employee_id", "calculation_audit", ["employee_id"], unique=False)
    op.create_index("ix_calculation_audit_subproject_id", "calculation_audit", ["subproject_id"], unique=False)
    op.create_index("ix_calculation_audit_computed_at", "calculation_audit", ["computed_at"], unique=False)

    op.execute(
        """
        CREATE FUNCTION calculation_audit_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'calculation_audit is append-only (% rejected)', TG_OP;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_calculation_audit_append_only
        BEFORE UPDATE OR DELETE ON calculation_audit
        FOR EACH ROW EXECUTE FUNCTION calculation_audit_append_only()
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_calculation_audit_append_only ON calculation_audit")
    op.execute("DROP FUNCTION IF EXISTS calculation_audit_append_only()")
    op.drop_index("ix_calculation_audit_computed_at", table_name="calculation_audit")
    op.drop_index("ix_calculation_audit_subproject_id", table_name="calculation_audit")
    op.drop_index("ix_calculation_audit_employee_id", table_name="calculation_audit")
    op.drop_index("ix_calculation_audit_travel_request_id", table_name="calculation_audit")
    op.drop_table("calculation_audit")
