from sqlmodel import create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine

from comfy_batch.core.config import settings


def build_engine(url: str) -> Engine:
    """Create an engine; SQLite connections are shared between the API and the queue thread."""
    connect_args = {}
    if url.startswith("sqlite"):
        # check_same_thread=False lets request handlers and the queue worker
        # thread share the same SQLite file.
        connect_args = {"check_same_thread": False, "timeout": 5.0}

    new_engine = create_engine(url, echo=False, connect_args=connect_args)

    if url.startswith("sqlite") and ":memory:" not in url and url != "sqlite://":
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return new_engine


engine = build_engine(settings.DATABASE_URL)
