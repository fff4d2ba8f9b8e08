"""Artifact catalog database.

The catalog is the only persisted state: build jobs live in memory, while
stored ISOs and uploaded source images are recorded here so the retention
sweep can find them after a restart. Worker threads write to the catalog
while request threads read it, so SQLite connections are shared across
threads and run in WAL mode.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Seconds a writer waits for a locked SQLite database
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _enable_wal(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def get_engine(db_url: str) -> Engine:
    """Create a SQLAlchemy engine for the catalog.

    For file-backed SQLite the parent directory is created and connections
    are switched to WAL mode.

    Args:
        db_url: Database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    connect_args: dict[str, Any] = {}
    sqlite_file: str | None = None
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        path = db_url.removeprefix("sqlite:///")
        if path != db_url and path and path != ":memory:":
            sqlite_file = path

    if sqlite_file is not None:
        Path(sqlite_file).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, connect_args=connect_args, echo=False)
    if sqlite_file is not None:
        event.listen(engine, "connect", _enable_wal)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to an engine.

    Sessions keep loaded attributes after commit so records can be read
    once the session is closed.
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_all_tables(engine: Engine) -> None:
    """Create the catalog tables if they do not exist."""
    # Register models with the mapper before creating tables
    from ubuntu_autoinstaller.artifacts import models as artifact_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_catalog(db_url: str) -> tuple[Engine, sessionmaker[Session]]:
    """Open the catalog, creating its tables on first use.

    Returns:
        The engine (dispose it on shutdown) and a session factory.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return engine, get_session_factory(engine)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits on success and rolls back if the block raises.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "SQLITE_BUSY_TIMEOUT",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_catalog",
]
