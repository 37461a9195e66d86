"""
Engine and session handling for the fulfillment tracker.

Every service operation is one unit of work run inside session_scope().
Order items, inventory items and the round-robin cursor are versioned
rows; when a flush finds a row changed since it was read, the unit of
work is rolled back and ConcurrentUpdateError is raised instead of
SQLAlchemy's StaleDataError.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from ..utils.config import get_config
from ..models.base import Base
from .exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)

# Tables whose absence means the schema was never created
_CORE_TABLES = ("orders", "order_items", "packets", "production_tasks")

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Turn on foreign key enforcement for SQLite connections."""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for ``database_url`` (default: the configured URL).

    In-memory SQLite shares a single connection so every session sees the
    same schema. File-backed SQLite gets its directory created and the
    configured busy timeout.
    """
    config = get_config()
    database_url = database_url or config.database_url
    logger.info(f"Creating database engine: {database_url}")

    if database_url.startswith("sqlite") and (
        ":memory:" in database_url or "mode=memory" in database_url
    ):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        config.ensure_directories()
        return create_engine(database_url, echo=echo, connect_args=config.db_connect_args)
    return create_engine(database_url, echo=echo)


def get_engine(force_recreate: bool = False) -> Engine:
    """Process-wide engine, created on first use."""
    global _engine

    if _engine is None or force_recreate:
        _engine = create_database_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Process-wide session factory.

    Sessions keep loaded attributes after commit so services can return
    the objects they changed.
    """
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope():
    """
    Run a block as one transaction.

    Commits when the block finishes, rolls back on any exception and
    always closes the session.

    Raises:
        ConcurrentUpdateError: If a versioned row was changed by another
            unit of work; nothing from the block is kept.

    Example:
        with session_scope() as session:
            item = session.get(OrderItem, 12)
            item.is_ready_stock = True
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConcurrentUpdateError(str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _create_tables(engine: Engine) -> None:
    # Importing the package registers every model on Base.metadata
    import src.models  # noqa: F401

    Base.metadata.create_all(engine)


def init_database(engine: Optional[Engine] = None) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    engine = engine or get_engine()
    logger.info("Initializing database tables")
    _create_tables(engine)


def verify_database() -> bool:
    """True when the workflow tables exist in the configured database."""
    try:
        tables = set(inspect(get_engine()).get_table_names())
    except SQLAlchemyError as e:
        logger.error(f"Database verification failed: {e}")
        return False
    return all(table in tables for table in _CORE_TABLES)


def reset_database(confirm: bool = False) -> None:
    """
    Drop and recreate every table.

    Raises:
        ValueError: Unless called with confirm=True
    """
    if not confirm:
        raise ValueError("reset_database deletes all orders; pass confirm=True")

    logger.warning("Resetting database: dropping all tables")
    engine = get_engine()
    import src.models  # noqa: F401

    Base.metadata.drop_all(engine)
    _create_tables(engine)


def close_connections() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _SessionFactory

    _SessionFactory = None
    if _engine is not None:
        _engine.dispose()
        _engine = None
    logger.info("Database connections closed")


def initialize_app_database() -> None:
    """Create the configured database and its tables if needed, then verify them."""
    config = get_config()
    state = "existing" if config.database_exists() else "new"
    logger.info(f"Using {state} database at: {config.database_path}")

    init_database(get_engine())
    if not verify_database():
        logger.warning("Database verification failed - workflow tables are missing")
