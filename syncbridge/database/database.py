"""Database engine and session management."""

import os
import logging
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from syncbridge.config import settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000

_url = make_url(settings.database_url)
_is_sqlite = _url.get_backend_name() == "sqlite"
_is_file_sqlite = _is_sqlite and _url.database not in (None, "", ":memory:")

if _is_file_sqlite:
    directory = os.path.dirname(_url.database)
    if directory:
        os.makedirs(directory, exist_ok=True)

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # Queue claims and named locks contend on the same file from several workers
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        if _is_file_sqlite:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create missing sync tables and bring older schemas up to date.

    Safe to call on every startup.
    """
    # Models must be imported so they are registered on Base
    from syncbridge.models import SyncJob, EntityMapping, CircuitState, SyncLock
    from syncbridge.database.migrations import migrate_database

    existing_tables = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)

    missing = sorted(set(Base.metadata.tables) - existing_tables)
    if missing:
        logger.info(f"Created tables: {', '.join(missing)}")

    if existing_tables:
        db = SessionLocal()
        try:
            migrate_database(db)
        finally:
            db.close()

    logger.info(f"Database ready at {_url.render_as_string(hide_password=True)}")
