import threading

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 15}

    engine = create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=not database_url.startswith("sqlite"),
    )

    # WAL lets availability reads run while a booking transaction writes
    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


_engine: Engine | None = None
_session_local: sessionmaker | None = None
_init_lock = threading.Lock()


def get_engine() -> Engine:
    """Process-wide engine, created on first use and shared by every request."""
    global _engine, _session_local
    if _engine is not None:
        return _engine
    with _init_lock:
        if _engine is None:
            _engine = build_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
            _session_local = build_session_factory(_engine)
        return _engine


def get_session_local() -> sessionmaker:
    if _session_local is None:
        get_engine()
    return _session_local


def init_db(engine: Engine | None = None) -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine or get_engine())


def get_db():
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()
