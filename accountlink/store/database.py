"""
Account Store - Database Configuration
PostgreSQL connection using SQLAlchemy (SQLite accepted for local runs and tests)
"""
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from accountlink.settings import settings

# Base class for ORM models
Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **kwargs):
    """Create an engine; SQLite connections get FK enforcement switched on."""
    engine = create_engine(url, echo=settings.DATABASE_ECHO, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def build_session_factory(engine):
    # Objects handed back to the coordinator outlive their session.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(session_factory=None):
    """Unit of work: commit on success, roll back on any error."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database - create all tables."""
    # Models must be imported so they register on Base.metadata
    from accountlink.store import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
