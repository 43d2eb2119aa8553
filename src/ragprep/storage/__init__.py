"""Storage layer for ragprep job tracking.

Provides the job-store contract plus a SQLAlchemy implementation
(SQLite by default) and an in-memory one.
"""

from .database import (
    Base,
    close_db,
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from .orm_models import JobLogORM, JobORM, JobPhaseORM
from .repositories import JobRepository, JobStore, MemoryJobStore, SqlJobStore

__all__ = [
    # Database
    "Base",
    "create_db_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    # ORM Models
    "JobORM",
    "JobPhaseORM",
    "JobLogORM",
    # Repositories
    "JobRepository",
    "JobStore",
    "MemoryJobStore",
    "SqlJobStore",
    "open_job_store",
]


def open_job_store(database_url: str, echo: bool = False) -> SqlJobStore:
    """Create tables if needed and return a store bound to ``database_url``."""
    engine = create_db_engine(database_url, echo=echo)
    init_db(engine)
    return SqlJobStore(create_session_factory(engine))
