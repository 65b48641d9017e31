"""Database bootstrap helpers for the payments service."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from dealpay.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on PostgreSQL, plain JSON elsewhere (local SQLite runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
