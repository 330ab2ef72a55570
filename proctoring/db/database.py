"""
SQLAlchemy engine and session factory.

The engine is built on first use from settings so the detection side of the
service (and its tests) can run without a database. Tests bind their own
engine through configure_engine().
"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from proctoring.config import get_settings

logger = logging.getLogger(__name__)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

_engine: Engine | None = None


class Base(DeclarativeBase):
    pass


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,       # detect stale connections
            pool_recycle=3600,        # recycle connections after 1 hour
            echo=False,
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def configure_engine(url: str, **kwargs) -> Engine:
    """Replace the module engine (tests use in-memory SQLite)."""
    global _engine
    _engine = create_engine(url, **kwargs)
    SessionLocal.configure(bind=_engine)
    return _engine


@contextmanager
def get_db(factory: sessionmaker | None = None):
    """Provide a transactional DB session. Rolls back on exception."""
    if factory is None:
        get_engine()
        factory = SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_db_connection(engine: Engine | None = None) -> bool:
    """Returns True if the DB is reachable."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.warning("DB connectivity check failed: %s", exc)
        return False


def create_schema(engine: Engine | None = None) -> None:
    """Create all proctoring tables that do not exist yet."""
    from proctoring.db import models  # noqa: F401  (registers the tables)

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Proctoring schema ensured")
