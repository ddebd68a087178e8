from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _db_models  # noqa: F401 - ensure models register with metadata
from .config import get_settings

SessionFactory = Callable[[], Session]


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two settlements
    # read the same contest status. Take the database write lock up front instead.
    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": get_settings().sqlite_busy_timeout,
        }
    new_engine = create_engine(database_url, echo=False, connect_args=connect_args)
    if new_engine.dialect.name == "sqlite":
        _serialize_sqlite_writers(new_engine)
    return new_engine


settings = get_settings()
engine = create_engine_for_url(settings.database_url)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def open_session() -> Session:
    return Session(engine)


def get_session_factory() -> SessionFactory:
    return open_session


def set_engine(new_engine: Engine) -> None:
    global engine
    engine = new_engine


def begin_serializable(session: Session) -> None:
    """Start the session's transaction at SERIALIZABLE isolation.

    Must run before the first statement of the unit of work. SQLite engines
    built by create_engine_for_url already open every transaction with
    BEGIN IMMEDIATE, so only the connection is procured there.
    """
    if session.get_bind().dialect.name == "sqlite":
        session.connection()
    else:
        session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
