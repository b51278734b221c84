"""Database engine setup for the Flowsmith audit store.

Engines are created lazily from Settings.audit_db_url, one per URL, so
builders pointed at different storage dirs write to their own database.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

if TYPE_CHECKING:
    from flowsmith.config import Settings

_audit_engines: dict[str, Engine] = {}
_audit_session_factories: dict[str, sessionmaker[Session]] = {}


def _enable_foreign_keys(dbapi_conn: object, connection_record: object) -> None:
    """Enable foreign key constraints for SQLite connections."""
    cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_audit_engine(db_url: str) -> Engine:
    """Create an engine; SQLite URLs get foreign keys and cross-thread access."""
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, echo=False, pool_pre_ping=True, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def _resolve(settings: "Settings | None") -> "Settings":
    if settings is None:
        from flowsmith.config import get_settings

        settings = get_settings()
    return settings


def get_audit_engine(settings: "Settings | None" = None) -> Engine:
    """Get or create the audit engine for the settings' database URL."""
    settings = _resolve(settings)
    url = settings.audit_db_url
    if url not in _audit_engines:
        settings.ensure_storage_dir()
        _audit_engines[url] = create_audit_engine(url)
    return _audit_engines[url]


def get_audit_session_factory(settings: "Settings | None" = None) -> sessionmaker[Session]:
    settings = _resolve(settings)
    url = settings.audit_db_url
    if url not in _audit_session_factories:
        _audit_session_factories[url] = sessionmaker(bind=get_audit_engine(settings), expire_on_commit=False)
    return _audit_session_factories[url]


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_audit_session(settings: "Settings | None" = None) -> Generator[Session, None, None]:
    """Yield an audit database session."""
    with session_scope(get_audit_session_factory(settings)) as session:
        yield session


def init_audit_db(engine: Engine) -> None:
    """Create the audit tables if they do not exist."""
    from flowsmith.db.audit import AuditBase

    AuditBase.metadata.create_all(engine)


def reset_engines() -> None:
    """Reset engine caches (useful for testing)."""
    for engine in _audit_engines.values():
        engine.dispose()
    _audit_engines.clear()
    _audit_session_factories.clear()
