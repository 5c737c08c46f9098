"""
database.py: async SQLAlchemy engine, session factory and declarative base.

The employee/subproject lookups and the SQL audit ledger each open a short
session per call from AsyncSessionLocal:

    async with AsyncSessionLocal() as session: ...
"""
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from travelcost.config import settings


class Base(DeclarativeBase):
    """Base for every ORM model in travelcost/models/ (kept here so alembic/env.py avoids an import cycle)."""
    pass


async_engine = create_async_engine(
    settings.database_url,
    echo=False,               # statements carry home coordinates
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,   # audit rows are read back after commit
)
