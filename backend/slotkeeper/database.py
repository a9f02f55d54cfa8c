from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import settings


def make_engine(url: str, timeout: float = settings.operation_timeout_seconds):
    """
    Build an engine for the authoritative store.

    SQLite gets check_same_thread=False (FastAPI runs sync endpoints in a
    threadpool) and a busy timeout so a locked database surfaces as an
    OperationalError instead of blocking forever.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}

    engine = create_engine(url, connect_args=connect_args)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def enable_sqlite_fk(dbapi_connection, _):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


engine = make_engine(settings.resolved_database_url)

# SessionLocal: main way to talk to the store
SessionLocal = make_session_factory(engine)


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
