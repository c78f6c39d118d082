"""Engine, schema creation and transaction scope.

SQLite is used for local development and tests; PostgreSQL (psycopg2) is
used when ``DATABASE_URL`` points at one.  All queue state lives in the
database, so the only concurrency control is what the store gives us:

* SQLite transactions start with ``BEGIN IMMEDIATE``.  Writers queue up on
  the database lock for ``DB_BUSY_TIMEOUT`` seconds instead of failing with
  "database is locked" half way through a read-then-write.
* On PostgreSQL the default READ COMMITTED isolation is kept; the queue
  operations order their statements so that row locks do the work.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

import config
from errors import StoreUnavailable
from models import ClinicSettings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def normalise_url(url: str) -> str:
    """Accept bare SQLite paths and ``postgres://`` URLs."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    if "://" not in url:
        return f"sqlite:///{url}"
    return url


def _serialise_sqlite_writes(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy instead of pysqlite.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str) -> Engine:
    url = normalise_url(url)
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": config.DB_BUSY_TIMEOUT},
        )
        _serialise_sqlite_writes(engine)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    return engine


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = make_engine(config.DATABASE_URL)
        logger.info("Database engine created for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Create tables if they do not exist and seed the settings row."""
    engine = engine or get_engine()
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.get(ClinicSettings, 1) is None:
            session.add(ClinicSettings(id=1))
            try:
                session.commit()
                logger.info("Default clinic settings created")
            except IntegrityError:
                # Another process seeded it first.
                session.rollback()


def get_session(engine: Optional[Engine] = None) -> Session:
    # Records stay readable after commit; every operation commits.
    return Session(engine or get_engine(), expire_on_commit=False)


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request, always closed."""
    session = get_session()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction(session: Session, operation: str) -> Iterator[Session]:
    """Commit on success, roll back on any failure.

    Storage errors are re-raised as ``StoreUnavailable``; queue errors pass
    through unchanged.  No retry happens here.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("%s failed: %s", operation, exc)
        raise StoreUnavailable(f"{operation} failed") from exc
    except Exception:
        session.rollback()
        raise


def execute(session: Session, statement: Any):
    """Run a Core UPDATE/DELETE inside the session's current transaction."""
    return session.connection().execute(statement)
