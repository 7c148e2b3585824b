"""Database engine and session factory.

The API handlers and the dispatch scheduler share this engine. Request
handlers get a session per request through ``get_db``; the scheduler opens
one session per delivery it touches from ``SessionLocal``.
"""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings

_is_sqlite = settings.database_url.startswith("sqlite")

if _is_sqlite:
    # Webhook handlers run in the threadpool while the scheduler runs on the loop
    connect_args = {"check_same_thread": False}
    pool_config = {"pool_pre_ping": True}
else:
    # Every in-flight provider call can hold a session; leave headroom for requests
    connect_args = {}
    pool_config = {
        "pool_size": max(settings.db_pool_size, settings.max_concurrent_provider_calls + 2),
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }

engine = create_engine(settings.database_url, connect_args=connect_args, echo=False, **pool_config)


if _is_sqlite:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)}")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
