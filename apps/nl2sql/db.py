"""Database session factory and bootstrap."""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from apps.nl2sql.config import get_settings
from apps.nl2sql.models import Base

DATABASE_URL = get_settings().DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    echo=os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes"),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """Provide a transactional scope for DB operations. Always filter by owner in user-facing queries."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ensure_tables(bind=None):
    """Create all tables if they do not exist. Idempotent (checkfirst=True).
    Only runs in tests with TEST_SCHEMA_STRATEGY=ensure_tables, or on non-Postgres URLs; Alembic owns Postgres.
    """
    url = os.environ.get("DATABASE_URL", "")
    is_postgres = url.strip().lower().startswith("postgresql")
    in_test = os.environ.get("ENV") == "test" or os.environ.get("PYTEST_RUNNING") == "1"
    strategy = (os.environ.get("TEST_SCHEMA_STRATEGY") or "alembic").strip().lower()

    if in_test and strategy != "ensure_tables":
        return
    if is_postgres and not (in_test and strategy == "ensure_tables"):
        return
    target = bind if bind is not None else engine
    with target.connect() as conn:
        conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
        conn.commit()
    Base.metadata.create_all(bind=target, checkfirst=True)
