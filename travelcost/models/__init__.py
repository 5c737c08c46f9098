"""
models/__init__.py: imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order matters: subprojects reference projects.
"""
from travelcost.models.employee import EmployeeORM
from travelcost.models.project import ProjectORM, SubprojectORM
from travelcost.models.calculation_audit import CalculationAuditORM

__all__ = ["EmployeeORM", "ProjectORM", "SubprojectORM", "CalculationAuditORM"]
