"""
Database engine and session handling.

One engine per process, created by init_db(). Background comparison runs and
API requests share it through a thread-scoped session registry.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from sitecompare.config import get_config
from sitecompare.db.models import Base

engine: Optional[Engine] = None
_sessions: Optional[scoped_session] = None


def _is_memory_database(url: URL) -> bool:
    return url.database in (None, "", ":memory:")


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    """Let the scheduler thread write while API requests read."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def _engine_options(url: URL) -> Dict[str, Any]:
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30.0}}
    # An in-memory database only exists on the connection that created it
    if _is_memory_database(url):
        options["poolclass"] = StaticPool
    return options


def init_db(db_url: Optional[str] = None) -> Engine:
    """
    Create the engine and any missing tables.

    Args:
        db_url: SQLAlchemy URL; defaults to DATABASE_URL from the service config

    Returns:
        The new engine
    """
    global engine, _sessions

    url = make_url(db_url or get_config().database_url)
    is_file_sqlite = url.get_backend_name() == "sqlite" and not _is_memory_database(url)
    if is_file_sqlite:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=False, **_engine_options(url))
    if is_file_sqlite:
        event.listen(engine, "connect", _set_sqlite_pragmas)

    _sessions = scoped_session(
        sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    )
    Base.metadata.create_all(bind=engine)
    return engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Session that commits on success and rolls back on error."""
    if _sessions is None:
        init_db()
    session = _sessions()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_db() -> None:
    """Dispose of the engine and forget the session registry."""
    global engine, _sessions
    if _sessions is not None:
        _sessions.remove()
    if engine is not None:
        engine.dispose()
    engine = None
    _sessions = None
